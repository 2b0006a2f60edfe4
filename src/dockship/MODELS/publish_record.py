"""
Models describing what has been pushed to a registry.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field

from ..errors import PublishFailed


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class PublishRecord(BaseModel):
    """
    A successful push of one image under one tag.
    """
    model_config = ConfigDict(frozen=True)

    registry: str
    repository: str
    tag: str
    image_digest: str
    manifest_digest: str = ""
    timestamp: str = Field(default_factory=_utcnow)

    @property
    def key(self) -> Tuple[str, str, str, str]:
        """The idempotence key."""
        return (self.registry, self.repository, self.tag, self.image_digest)


class PublishStatus(str, Enum):
    PUBLISHED = "published"
    ALREADY_PUBLISHED = "already-published"
    FAILED = "failed"


@dataclass
class TagOutcome:
    """Result of publishing a single tag."""
    tag: str
    status: PublishStatus
    record: Optional[PublishRecord] = None
    error: Optional[PublishFailed] = None

    @property
    def ok(self) -> bool:
        return self.status is not PublishStatus.FAILED
