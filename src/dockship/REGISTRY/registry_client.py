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
Registry client for pushing images.
Implements the push side of the OCI distribution HTTP API.
"""

import hashlib
import json
import logging
import re
import socket
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, urljoin
from urllib.request import Request, urlopen

from .credential_broker import Credential
from .image_reference import ImageReference
from ..errors import RegistryError, TransientRegistryError
from ..MODELS.container_image import ContainerImage

logger = logging.getLogger(__name__)

MANIFEST_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"
CONFIG_MEDIA_TYPE = "application/vnd.oci.image.config.v1+json"
LAYER_MEDIA_TYPE = "application/vnd.dockship.layer.v1+json"
IMAGE_DIGEST_ANNOTATION = "io.dockship.image.digest"


def _canonical(document) -> bytes:
    return json.dumps(document, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _digest(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


@dataclass
class ImagePayload:
    """Everything that goes over the wire for one image."""

    manifest: bytes
    manifest_digest: str
    blobs: Dict[str, bytes]


def build_payload(image: ContainerImage) -> ImagePayload:
    """
    Serializes an image into a manifest plus blobs.
    The result depends only on the image, so the manifest digest is stable.
    """
    config_blob = _canonical(image.config_document())
    blobs: Dict[str, bytes] = {_digest(config_blob): config_blob}
    layer_descriptors = []
    for layer in image.layers:
        data = layer.blob()
        digest = _digest(data)
        blobs[digest] = data
        layer_descriptors.append({"mediaType": LAYER_MEDIA_TYPE, "digest": digest, "size": len(data)})

    manifest = _canonical({
        "schemaVersion": 2,
        "mediaType": MANIFEST_MEDIA_TYPE,
        "config": {"mediaType": CONFIG_MEDIA_TYPE, "digest": _digest(config_blob), "size": len(config_blob)},
        "layers": layer_descriptors,
        "annotations": {IMAGE_DIGEST_ANNOTATION: image.digest},
    })
    return ImagePayload(manifest=manifest, manifest_digest=_digest(manifest), blobs=blobs)


class RegistryClient:
    """
    Client for pushing to OCI-compatible registries.
    Network I/O of the pipeline happens here and nowhere else.
    """

    def __init__(self, timeout: float = 60.0):
        """
        Args:
            timeout: Socket timeout in seconds for each request.
        """
        self.timeout = timeout

    def lookup(self, registry: str, repository: str, tag: str,
               credential: Optional[Credential] = None) -> Optional[str]:
        """
        Returns the manifest digest a tag points at, or None if the tag is
        unknown or the registry refuses an anonymous lookup.
        """
        ref = ImageReference.create(registry, repository, tag=tag)
        url = f"{ref.registry_url}/v2/{repository}/manifests/{tag}"
        try:
            status, headers, _ = self._request("HEAD", url, ref, credential,
                                               headers={"Accept": MANIFEST_MEDIA_TYPE})
        except RegistryError as e:
            if e.status in (401, 403, 404) and (credential is None or e.status == 404):
                return None
            raise
        return headers.get("docker-content-digest")

    def push(self, image: ContainerImage, registry: str, repository: str, tag: str,
             credential: Credential) -> str:
        """
        Pushes blobs, then the manifest. The manifest PUT is the commit point.

        Returns:
            The manifest digest the registry stored.
        """
        ref = ImageReference.create(registry, repository, tag=tag)
        payload = build_payload(image)

        for digest, data in payload.blobs.items():
            self._push_blob(ref, digest, data, credential)

        url = f"{ref.registry_url}/v2/{repository}/manifests/{tag}"
        _, headers, _ = self._request(
            "PUT", url, ref, credential, data=payload.manifest,
            headers={"Content-Type": MANIFEST_MEDIA_TYPE},
        )
        stored = headers.get("docker-content-digest", payload.manifest_digest)
        if stored != payload.manifest_digest:
            raise RegistryError(f"Registry stored manifest {stored}, expected {payload.manifest_digest}")
        logger.info("Pushed %s (%s)", ref.full_name, stored)
        return stored

    def _push_blob(self, ref: ImageReference, digest: str, data: bytes, credential: Credential) -> None:
        blob_url = f"{ref.registry_url}/v2/{ref.repository}/blobs/{digest}"
        try:
            self._request("HEAD", blob_url, ref, credential)
            logger.debug("Blob %s already present", digest[:19])
            return
        except RegistryError as e:
            if e.status != 404:
                raise

        start_url = f"{ref.registry_url}/v2/{ref.repository}/blobs/uploads/"
        _, headers, _ = self._request("POST", start_url, ref, credential, data=b"")
        location = headers.get("location")
        if not location:
            raise RegistryError("Registry did not return an upload location")
        upload_url = urljoin(ref.registry_url + "/", location)
        separator = "&" if "?" in upload_url else "?"
        upload_url = f"{upload_url}{separator}{urlencode({'digest': digest})}"

        logger.debug("Uploading blob %s (%d bytes)", digest[:19], len(data))
        self._request("PUT", upload_url, ref, credential, data=data,
                      headers={"Content-Type": "application/octet-stream"})

    def _request(self, method: str, url: str, ref: ImageReference,
                 credential: Optional[Credential],
                 data: Optional[bytes] = None,
                 headers: Optional[Dict[str, str]] = None,
                 authorization: Optional[str] = None) -> Tuple[int, Dict[str, str], bytes]:
        """Make a request, answering a bearer challenge once if needed."""
        request = Request(url, data=data, method=method)
        for name, value in (headers or {}).items():
            request.add_header(name, value)
        if authorization:
            request.add_header("Authorization", authorization)
        elif credential is not None:
            request.add_header("Authorization", credential.basic_auth_header())

        try:
            with urlopen(request, timeout=self.timeout) as response:
                response_headers = {k.lower(): v for k, v in response.headers.items()}
                return response.status, response_headers, response.read()
        except HTTPError as e:
            challenge = e.headers.get("WWW-Authenticate", "") if e.headers else ""
            if e.code == 401 and authorization is None and challenge.lower().startswith("bearer"):
                token = self._bearer_token(challenge, ref, credential)
                return self._request(method, url, ref, credential, data, headers,
                                     authorization=f"Bearer {token}")
            if e.code >= 500 or e.code == 429:
                raise TransientRegistryError(f"{method} {url} returned {e.code}") from e
            raise RegistryError(f"{method} {url} returned {e.code}", status=e.code) from e
        except (URLError, ConnectionError, socket.timeout) as e:
            raise TransientRegistryError(f"{method} {url} failed: {e}") from e

    def _bearer_token(self, challenge: str, ref: ImageReference, credential: Optional[Credential]) -> str:
        params = dict(re.findall(r'(\w+)="([^"]*)"', challenge))
        realm = params.pop("realm", None)
        if not realm:
            raise RegistryError("Bearer challenge without realm", status=401)
        params.setdefault("scope", f"repository:{ref.repository}:pull,push")

        request = Request(f"{realm}?{urlencode(params)}")
        if credential is not None:
            request.add_header("Authorization", credential.basic_auth_header())
        try:
            with urlopen(request, timeout=self.timeout) as response:
                body = json.loads(response.read().decode())
        except HTTPError as e:
            if e.code >= 500 or e.code == 429:
                raise TransientRegistryError(f"Token request returned {e.code}") from e
            raise RegistryError(f"Token request returned {e.code}", status=e.code) from e
        except (URLError, ConnectionError, socket.timeout) as e:
            raise TransientRegistryError(f"Token request failed: {e}") from e

        token = body.get("token") or body.get("access_token")
        if not token:
            raise RegistryError("Token endpoint returned no token", status=401)
        return token
