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
Error taxonomy for the build and publish pipeline.

Every fatal error carries the pipeline stage it belongs to so the
orchestrator can report where a run stopped. Build warnings are not
raised; they are collected on the build result and logged.
"""
from typing import Iterable, List, Optional


class DockshipError(Exception):
    """Base class for all fatal pipeline errors."""

    stage = "unknown"


class PipelineDefinitionError(DockshipError):
    """The pipeline file or Dockerfile could not be understood."""

    stage = "resolving"


class ConfigFileError(DockshipError):
    """A config file exists but is not a parameter mapping."""

    stage = "resolving"


class MissingRequiredParameter(DockshipError):
    """One or more parameters have no value from any source."""

    stage = "resolving"

    def __init__(self, names: Iterable[str]):
        self.names: List[str] = sorted(set(names))
        super().__init__(f"Missing required parameter(s): {', '.join(self.names)}")


class UnknownParameter(DockshipError):
    """Strict resolution found values for undeclared parameters."""

    stage = "resolving"

    def __init__(self, names: Iterable[str]):
        self.names: List[str] = sorted(set(names))
        super().__init__(f"Unknown parameter(s): {', '.join(self.names)}")


class UnsupportedFileType(DockshipError):
    """A symlink or special file was found in the build context."""

    stage = "snapshotting"

    def __init__(self, path: str, kind: str):
        self.path = path
        self.kind = kind
        super().__init__(f"Unsupported file type '{kind}' at {path}")


class BuildStepFailed(DockshipError):
    """A build step could not be applied; the build is discarded."""

    stage = "building"

    def __init__(self, step_index: int, reason: str):
        self.step_index = step_index
        self.reason = reason
        super().__init__(f"Build step {step_index} failed: {reason}")


class CredentialNotFound(DockshipError):
    stage = "publishing"

    def __init__(self, registry: str, reason: Optional[str] = None):
        self.registry = registry
        self.reason = reason
        message = f"No credential found for registry {registry}"
        super().__init__(f"{message}: {reason}" if reason else message)


class CredentialTimeout(DockshipError):
    stage = "publishing"

    def __init__(self, registry: str, timeout: float):
        self.registry = registry
        self.timeout = timeout
        super().__init__(f"Credential resolution for {registry} timed out after {timeout}s")


class TransientRegistryError(DockshipError):
    """A registry call failed in a way that is worth retrying."""

    stage = "publishing"


class RegistryError(DockshipError):
    """A registry call failed permanently (auth rejected, bad request)."""

    stage = "publishing"

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class PublishFailed(DockshipError):
    stage = "publishing"

    def __init__(self, tag: str, cause: BaseException):
        self.tag = tag
        self.cause = cause
        super().__init__(f"Publishing tag '{tag}' failed: {cause}")


class BuildWarning(UserWarning):
    """Non-fatal finding raised while building an image."""

    kind = "warning"

    def __init__(self, message: str, step_index: Optional[int] = None):
        self.message = message
        self.step_index = step_index
        super().__init__(message)

    def __eq__(self, other):
        return (
            type(self) is type(other)
            and self.message == other.message
            and self.step_index == other.step_index
        )

    def __hash__(self):
        return hash((type(self).__name__, self.message, self.step_index))


class SecurityWarning(BuildWarning):
    """The image does not switch to a non-root user."""

    kind = "security"


class PersistedWriteWarning(BuildWarning):
    """A step writes into a path that is later declared as a volume."""

    kind = "persisted-write"
