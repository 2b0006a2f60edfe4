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
Content-addressed store of built images.
Lets a re-run with identical inputs return the earlier image without executing steps.
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..MODELS.container_image import ContainerImage

logger = logging.getLogger(__name__)


def default_cache_dir() -> Path:
    return Path(os.environ.get("DOCKSHIP_CACHE_DIR") or Path.home() / ".dockship" / "cache")


@dataclass
class CachedImage:
    """Index entry for a cached image."""
    build_key: str
    digest: str
    path: str
    built_at: str


class BuildCache:
    """
    Maps build keys to images on disk.

    Only complete images are ever stored, so anything returned from the
    cache is safe to publish.
    """

    def __init__(self, cache_dir: Optional[str] = None):
        """
        Initialize the build cache.

        Args:
            cache_dir: Directory for cache storage. Defaults to ~/.dockship/cache
        """
        self.cache_dir = Path(cache_dir) if cache_dir else default_cache_dir()
        self.images_dir = self.cache_dir / "images"
        self.index_file = self.cache_dir / "index.json"

        self.images_dir.mkdir(parents=True, exist_ok=True)
        self._index = self._load_index()

    def _load_index(self) -> Dict[str, Any]:
        """Load the cache index from disk."""
        if self.index_file.exists():
            try:
                with open(self.index_file, 'r') as f:
                    return json.load(f)
            except (json.JSONDecodeError, IOError) as e:
                logger.warning("Discarding unreadable cache index %s: %s", self.index_file, e)
        return {"images": {}}

    def _save_index(self) -> None:
        """Save the cache index to disk atomically."""
        tmp = self.index_file.with_suffix(".json.tmp")
        with open(tmp, 'w') as f:
            json.dump(self._index, f, indent=2, sort_keys=True)
        os.replace(tmp, self.index_file)

    def _image_path(self, build_key: str) -> Path:
        return self.images_dir / f"{build_key.replace(':', '_')}.json"

    def get(self, build_key: str) -> Optional[ContainerImage]:
        """
        Look up an image by build key.

        Returns:
            The cached image, or None when absent or unreadable.
        """
        path = self._image_path(build_key)
        if not path.exists():
            if self._index["images"].pop(build_key, None) is not None:
                self._save_index()
            return None
        try:
            with open(path, 'r') as f:
                image = ContainerImage.model_validate(json.load(f))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Ignoring corrupt cache entry %s: %s", path, e)
            return None
        if image.digest != ContainerImage.compute_digest(image.layers, image.metadata):
            logger.warning("Ignoring cache entry %s with mismatching digest", path)
            return None
        return image

    def put(self, build_key: str, image: ContainerImage) -> CachedImage:
        """
        Store a complete image under its build key.
        """
        path = self._image_path(build_key)
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, 'w') as f:
            json.dump(image.model_dump(mode="json"), f, indent=2, sort_keys=True)
        os.replace(tmp, path)

        entry = {
            "build_key": build_key,
            "digest": image.digest,
            "path": str(path),
            "built_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }
        self._index["images"][build_key] = entry
        self._save_index()
        return CachedImage(**entry)

    def remove(self, build_key: str) -> bool:
        """
        Remove an image from the cache.

        Returns:
            True if removed, False if not found
        """
        entry = self._index["images"].pop(build_key, None)
        path = self._image_path(build_key)
        if path.exists():
            path.unlink()
        if entry is None:
            return False
        self._save_index()
        return True

    def list_images(self) -> List[CachedImage]:
        """List all cached images, dropping stale index entries."""
        images = []
        for key, info in list(self._index["images"].items()):
            if Path(info["path"]).exists():
                images.append(CachedImage(**info))
            else:
                del self._index["images"][key]
        self._save_index()
        return images

    def prune(self, max_age_days: Optional[int] = None) -> Dict[str, int]:
        """
        Remove cached images, all of them or only those older than max_age_days.

        Returns:
            Statistics about removed items
        """
        removed = 0
        cutoff = None
        if max_age_days is not None:
            cutoff = datetime.now(timezone.utc) - timedelta(days=max_age_days)

        for key, info in list(self._index["images"].items()):
            if cutoff is not None:
                built_at = datetime.fromisoformat(info["built_at"].replace("Z", "+00:00"))
                if built_at >= cutoff:
                    continue
            if self.remove(key):
                removed += 1

        return {"removed_images": removed}
