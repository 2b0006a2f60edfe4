"""
Append-only local history of successful pushes.
"""
import json
import logging
import os
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from ..MODELS.publish_record import PublishRecord

logger = logging.getLogger(__name__)


def default_log_path() -> Path:
    return Path(os.environ.get("DOCKSHIP_PUBLISH_LOG") or Path.home() / ".dockship" / "publish-log.jsonl")


class PublishLog:
    """
    JSON-lines file of PublishRecords.

    Records are only ever appended. Two runs publishing the same key may
    both append; the entries are identical apart from the timestamp.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else default_log_path()

    def records(self) -> List[PublishRecord]:
        if not self.path.exists():
            return []
        records = []
        with open(self.path, 'r') as f:
            for number, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(PublishRecord.model_validate(json.loads(line)))
                except (json.JSONDecodeError, ValidationError) as e:
                    logger.warning("Skipping malformed line %d in %s: %s", number, self.path, e)
        return records

    def find(self, registry: str, repository: str, tag: str, image_digest: str) -> Optional[PublishRecord]:
        """Latest record for an idempotence key."""
        key = (registry, repository, tag, image_digest)
        found = None
        for record in self.records():
            if record.key == key:
                found = record
        return found

    def append(self, record: PublishRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(record.model_dump(mode="json"), sort_keys=True) + "\n"
        # One write call per record keeps concurrent appends line-atomic.
        with open(self.path, 'a') as f:
            f.write(line)
