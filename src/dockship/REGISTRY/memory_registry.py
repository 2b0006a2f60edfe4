"""
An in-process registry with the same interface as RegistryClient.
Used for dry runs and tests.
"""
import threading
from typing import Dict, List, Optional, Tuple

from .credential_broker import Credential
from .registry_client import build_payload
from ..errors import RegistryError
from ..MODELS.container_image import ContainerImage


class InMemoryRegistry:
    """
    Stores manifests and blobs in dictionaries.

    ``fail_next`` queues exceptions that the next push attempts raise,
    which is how transient network failures are simulated.
    """

    def __init__(self, require_auth: bool = False):
        self.require_auth = require_auth
        self.blobs: Dict[str, bytes] = {}
        self.manifests: Dict[str, bytes] = {}
        self.tags: Dict[Tuple[str, str, str], str] = {}
        self.push_attempts = 0
        self.pushes: List[Tuple[str, str, str]] = []
        self._failures: List[Exception] = []
        self._lock = threading.Lock()

    def fail_next(self, *errors: Exception) -> None:
        with self._lock:
            self._failures.extend(errors)

    def lookup(self, registry: str, repository: str, tag: str,
               credential: Optional[Credential] = None) -> Optional[str]:
        with self._lock:
            return self.tags.get((registry, repository, tag))

    def push(self, image: ContainerImage, registry: str, repository: str, tag: str,
             credential: Credential) -> str:
        with self._lock:
            self.push_attempts += 1
            if self._failures:
                raise self._failures.pop(0)
            if self.require_auth and (credential is None or credential.registry != registry):
                raise RegistryError(f"unauthorized for {registry}", status=401)

            payload = build_payload(image)
            self.blobs.update(payload.blobs)
            self.manifests[payload.manifest_digest] = payload.manifest
            self.tags[(registry, repository, tag)] = payload.manifest_digest
            self.pushes.append((registry, repository, tag))
            return payload.manifest_digest
