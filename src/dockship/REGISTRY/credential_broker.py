# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Registry credential resolution.

Credentials are fetched from a secret source at the moment a push needs
them and dropped as soon as the push returns. Nothing here keeps a
credential between calls.
"""

import base64
import binascii
import json
import logging
import os
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Mapping, Optional

from ..errors import CredentialNotFound, CredentialTimeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    """Username and secret scoped to one registry host."""

    registry: str
    username: str
    secret: str = field(repr=False)

    def basic_auth_header(self) -> str:
        token = base64.b64encode(f"{self.username}:{self.secret}".encode()).decode()
        return f"Basic {token}"

    def __str__(self) -> str:
        return f"Credential({self.username}@{self.registry})"


class SecretSource:
    """
    A place credentials can be looked up in. ``lookup`` may block.
    """

    def lookup(self, registry: str) -> Optional[Credential]:
        raise NotImplementedError


class EnvironmentSecretSource(SecretSource):
    """
    Reads ``<PREFIX>_<HOST>_USERNAME`` / ``<PREFIX>_<HOST>_PASSWORD``, falling
    back to ``<PREFIX>_REGISTRY_USERNAME`` / ``<PREFIX>_REGISTRY_PASSWORD``.
    The host is upper-cased with every other character replaced by ``_``.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None, prefix: str = "DOCKSHIP"):
        self.environ = environ
        self.prefix = prefix

    @staticmethod
    def host_key(registry: str) -> str:
        return re.sub(r'[^A-Z0-9]', '_', registry.upper())

    def lookup(self, registry: str) -> Optional[Credential]:
        environ = os.environ if self.environ is None else self.environ
        for scope in (self.host_key(registry), "REGISTRY"):
            username = environ.get(f"{self.prefix}_{scope}_USERNAME")
            secret = environ.get(f"{self.prefix}_{scope}_PASSWORD")
            if username and secret:
                return Credential(registry=registry, username=username, secret=secret)
        return None


class DockerConfigSecretSource(SecretSource):
    """
    Reads the ``auths`` section of a Docker client config file.
    """

    def __init__(self, path: Optional[str] = None):
        if path:
            self.path = Path(path)
        else:
            docker_config = os.environ.get("DOCKER_CONFIG")
            base = Path(docker_config) if docker_config else Path.home() / ".docker"
            self.path = base / "config.json"

    def lookup(self, registry: str) -> Optional[Credential]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                config = json.load(f)
            auths = config.get("auths") if isinstance(config, dict) else None
        except (ValueError, OSError) as e:
            raise CredentialNotFound(registry, f"unreadable Docker config {self.path}: {e}") from e
        if not isinstance(auths, dict):
            auths = {}

        candidates = [registry, f"https://{registry}", f"http://{registry}"]
        if registry == "docker.io":
            candidates.append("https://index.docker.io/v1/")
        for key in candidates:
            entry = auths.get(key)
            auth = entry.get("auth") if isinstance(entry, dict) else None
            if not auth:
                continue
            try:
                decoded = base64.b64decode(auth, validate=True).decode("utf-8")
            except (binascii.Error, ValueError) as e:
                raise CredentialNotFound(registry, f"malformed auth entry for {key} in {self.path}") from e
            username, _, secret = decoded.partition(":")
            if username and secret:
                return Credential(registry=registry, username=username, secret=secret)
        return None


class ChainedSecretSource(SecretSource):
    """Asks each source in turn; the first hit wins."""

    def __init__(self, *sources: SecretSource):
        self.sources = sources

    def lookup(self, registry: str) -> Optional[Credential]:
        for source in self.sources:
            credential = source.lookup(registry)
            if credential is not None:
                return credential
        return None


class CredentialBroker:
    """
    Resolves registry credentials on demand, bounded by a timeout.
    """

    def __init__(self, source: Optional[SecretSource] = None, timeout: float = 10.0):
        """
        Args:
            source: Where credentials come from. Defaults to the environment, then the Docker config.
            timeout: Seconds a lookup may block before CredentialTimeout is raised.
        """
        self.source = source or ChainedSecretSource(EnvironmentSecretSource(), DockerConfigSecretSource())
        self.timeout = timeout

    def resolve(self, registry: str) -> Credential:
        """
        Performs a fresh lookup for a registry host.

        Raises:
            CredentialNotFound: If no source knows the host.
            CredentialTimeout: If the source did not answer in time.
        """
        outcome: dict = {}
        done = threading.Event()

        def lookup() -> None:
            try:
                outcome["credential"] = self.source.lookup(registry)
            except Exception as e:
                outcome["error"] = e
            finally:
                done.set()

        # Daemon thread: a stuck secret store must not keep the process alive.
        worker = threading.Thread(target=lookup, name=f"credential-lookup-{registry}", daemon=True)
        worker.start()
        if not done.wait(self.timeout):
            raise CredentialTimeout(registry, self.timeout)
        if "error" in outcome:
            raise outcome["error"]

        credential = outcome.get("credential")
        if credential is None:
            raise CredentialNotFound(registry)
        logger.debug("Resolved credential for %s (user %s)", registry, credential.username)
        return credential

    @contextmanager
    def lease(self, registry: str) -> Iterator[Credential]:
        """
        Yields a credential for the duration of one push.
        """
        credential = self.resolve(registry)
        try:
            yield credential
        finally:
            del credential
