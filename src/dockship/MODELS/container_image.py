"""
Models representing built container images and their layers.
"""
import hashlib
import json
from typing import Any, Dict, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict

from ..errors import BuildWarning


class Layer(BaseModel):
    """
    An immutable filesystem delta (or metadata change) produced by one build step.
    """
    model_config = ConfigDict(frozen=True)

    index: int
    digest: str
    kind: str
    created_by: str
    changed_paths: Tuple[str, ...] = ()

    def blob(self) -> bytes:
        """Canonical bytes of the layer, as pushed to a registry."""
        return json.dumps(self.model_dump(mode="json"), sort_keys=True,
                          separators=(",", ":")).encode("utf-8")


class ImageMetadata(BaseModel):
    """
    Runtime metadata declared by the build steps.
    """
    model_config = ConfigDict(frozen=True)

    base_image: Optional[str] = None
    user: Optional[str] = None
    working_directory: Optional[str] = None
    entrypoint: List[str] = []
    cmd: List[str] = []
    env_vars: Dict[str, str] = {}
    exposed_ports: List[str] = []
    volumes: List[str] = []
    labels: Dict[str, str] = {}


class ContainerImage(BaseModel):
    """
    An ordered layer sequence plus runtime metadata, addressed by content.
    """
    model_config = ConfigDict(frozen=True)

    layers: Tuple[Layer, ...] = ()
    metadata: ImageMetadata = ImageMetadata()
    digest: str
    build_key: str = ""

    @staticmethod
    def compute_digest(layers: Tuple[Layer, ...], metadata: ImageMetadata) -> str:
        payload = json.dumps(
            {
                "layers": [layer.digest for layer in layers],
                "metadata": metadata.model_dump(mode="json"),
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return "sha256:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()

    @classmethod
    def create(cls, layers: List[Layer], metadata: ImageMetadata, build_key: str = "") -> "ContainerImage":
        frozen_layers = tuple(layers)
        return cls(
            layers=frozen_layers,
            metadata=metadata,
            digest=cls.compute_digest(frozen_layers, metadata),
            build_key=build_key,
        )

    def config_document(self) -> Dict[str, Any]:
        """
        OCI-style image configuration document.
        """
        meta = self.metadata
        config: Dict[str, Any] = {
            "Env": [f"{k}={v}" for k, v in sorted(meta.env_vars.items())],
            "Entrypoint": list(meta.entrypoint),
            "Cmd": list(meta.cmd),
            "ExposedPorts": {p if "/" in p else f"{p}/tcp": {} for p in meta.exposed_ports},
            "Volumes": {v: {} for v in meta.volumes},
            "Labels": dict(sorted(meta.labels.items())),
        }
        if meta.user:
            config["User"] = meta.user
        if meta.working_directory:
            config["WorkingDir"] = meta.working_directory
        return {
            "architecture": "amd64",
            "os": "linux",
            "config": config,
            "rootfs": {"type": "layers", "diff_ids": [layer.digest for layer in self.layers]},
            "history": [{"created_by": layer.created_by} for layer in self.layers],
        }


class BuildResult(BaseModel):
    """
    Outcome of a successful build: the image plus the non-fatal findings.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    image: ContainerImage
    warnings: List[BuildWarning] = []
    cached: bool = False
