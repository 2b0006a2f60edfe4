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
References to a pushed image: registry host, repository path and tag.
"""

import re
from dataclasses import dataclass
from typing import Optional

TAG_PATTERN = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$')
REPOSITORY_PATTERN = re.compile(r'^[a-z0-9]+(?:[._-][a-z0-9]+)*(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*$')

HUB_REGISTRY = "docker.io"
HUB_API = "https://registry-1.docker.io"
PLAIN_HTTP_HOSTS = ("localhost", "127.0.0.1")


@dataclass(frozen=True)
class ImageReference:
    """
    A validated publish target. Build one with ``create``.
    """

    registry: str
    repository: str
    tag: Optional[str] = None

    @classmethod
    def create(cls, registry: str, repository: str,
               tag: Optional[str] = None) -> "ImageReference":
        """
        Raises:
            ValueError: If the registry is empty or the repository or tag is malformed.
        """
        if not registry:
            raise ValueError("Registry must not be empty")
        if not REPOSITORY_PATTERN.match(repository):
            raise ValueError(f"Invalid repository name: {repository!r}")
        if tag is not None and not TAG_PATTERN.match(tag):
            raise ValueError(f"Invalid tag: {tag!r}")
        return cls(registry=registry, repository=repository, tag=tag)

    @property
    def full_name(self) -> str:
        suffix = f":{self.tag}" if self.tag else ""
        return f"{self.registry}/{self.repository}{suffix}"

    @property
    def registry_url(self) -> str:
        """Base URL of the registry's v2 API."""
        if self.registry == HUB_REGISTRY:
            return HUB_API
        if "://" in self.registry:
            return self.registry
        scheme = "http" if self.registry.split(":")[0] in PLAIN_HTTP_HOSTS else "https"
        return f"{scheme}://{self.registry}"

    def __str__(self) -> str:
        return self.full_name
