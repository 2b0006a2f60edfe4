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
Builds content-addressed images by applying declared build steps to a snapshot.
"""
import fnmatch
import hashlib
import json
import logging
import os
import posixpath
import re
import shutil
import tempfile
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .build_cache import BuildCache
from .source_snapshot import hash_file
from ..errors import (
    BuildStepFailed,
    BuildWarning,
    MissingRequiredParameter,
    PersistedWriteWarning,
    SecurityWarning,
)
from ..MODELS.build_config import BuildConfig
from ..MODELS.build_step import BuildStep, StepKind
from ..MODELS.container_image import BuildResult, ContainerImage, ImageMetadata, Layer
from ..MODELS.source_snapshot import SnapshotEntry, SourceSnapshot
from ..RUNNERS.step_runner import Deadline, StepRunner

logger = logging.getLogger(__name__)

ROOT_USERS = {"root", "0", "0:0", "root:root", "root:0", "0:root"}
PORT_PATTERN = re.compile(r'^(\d{1,5})(?:/(tcp|udp|sctp))?$')


def _sha256(*parts: str) -> str:
    h = hashlib.sha256()
    for part in parts:
        h.update(part.encode("utf-8"))
        h.update(b"\n")
    return "sha256:" + h.hexdigest()


def _is_under(path: str, root: str) -> bool:
    root = root.rstrip('/') or '/'
    return path == root or root == '/' or path.startswith(root + '/')


def _shell_wrap(step: BuildStep) -> List[str]:
    if step.shell_form:
        return ["/bin/sh", "-c", " ".join(step.arguments)]
    return list(step.arguments)


class _BuildState:
    """Mutable metadata accumulated while steps are applied."""

    def __init__(self):
        self.base_image: Optional[str] = None
        self.user: Optional[str] = None
        self.working_directory: str = "/"
        self.workdir_set = False
        self.entrypoint: List[str] = []
        self.cmd: List[str] = []
        self.env_vars: Dict[str, str] = {}
        self.exposed_ports: List[str] = []
        self.volumes: List[str] = []
        self.labels: Dict[str, str] = {}

    def freeze(self) -> ImageMetadata:
        return ImageMetadata(
            base_image=self.base_image,
            user=self.user,
            working_directory=self.working_directory if self.workdir_set else None,
            entrypoint=self.entrypoint,
            cmd=self.cmd,
            env_vars=self.env_vars,
            exposed_ports=self.exposed_ports,
            volumes=self.volumes,
            labels=self.labels,
        )


class ImageBuilder:
    """
    Applies a BuildStep sequence to a SourceSnapshot and a BuildConfig,
    producing an immutable ContainerImage.
    """

    def __init__(self,
                 cache: Optional[BuildCache] = None,
                 workspace_dir: Optional[str] = None,
                 runner: Optional[StepRunner] = None):
        """
        Initializes the ImageBuilder.

        :param cache: Store of completed images; None disables cache reuse.
        :param workspace_dir: Where temporary root filesystems are created.
        :param runner: Executes run-command steps.
        """
        self.cache = cache
        self.workspace_dir = workspace_dir
        self.runner = runner or StepRunner()

    @staticmethod
    def build_key(steps: Sequence[BuildStep], snapshot: SourceSnapshot, config: BuildConfig) -> str:
        """
        Identity of a build: snapshot, the config subset the steps read and the step sequence.
        """
        read: Set[str] = set()
        for step in steps:
            read |= step.read_names()
        steps_digest = _sha256(*(step.canonical() for step in steps))
        return _sha256(snapshot.digest, config.subset_digest(read), steps_digest)

    def build(self,
              steps: Sequence[BuildStep],
              snapshot: SourceSnapshot,
              config: BuildConfig,
              deadline: Optional[Deadline] = None) -> BuildResult:
        """
        Builds an image, or returns the cached one for identical inputs.

        :param steps: Ordered build steps, possibly holding ${NAME} placeholders.
        :param snapshot: The captured build context.
        :param config: Resolved build parameters.
        :param deadline: Overall pipeline deadline; run steps are cut off at it.
        :return: The image together with non-fatal warnings.
        :raises MissingRequiredParameter: If a step references an unresolved name.
        :raises BuildStepFailed: If any step fails; no image is produced.
        """
        missing: Set[str] = set()
        for step in steps:
            missing |= {n for n in step.referenced_names() if n not in config}
        if missing:
            raise MissingRequiredParameter(missing)

        context = config.as_dict()
        resolved = [step.resolve(context) for step in steps]
        key = self.build_key(steps, snapshot, config)

        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                logger.info("Reusing cached image %s for build key %s", cached.digest, key)
                warnings = self._policy_warnings(resolved, cached)
                return BuildResult(image=cached, warnings=warnings, cached=True)

        image = self._execute(steps, resolved, snapshot, config, key, deadline or Deadline())
        if self.cache is not None:
            self.cache.put(key, image)

        warnings = self._policy_warnings(resolved, image)
        logger.info("Built image %s (%d layers)", image.digest, len(image.layers))
        return BuildResult(image=image, warnings=warnings, cached=False)

    def _execute(self,
                 steps: Sequence[BuildStep],
                 resolved: Sequence[BuildStep],
                 snapshot: SourceSnapshot,
                 config: BuildConfig,
                 key: str,
                 deadline: Deadline) -> ContainerImage:
        if self.workspace_dir:
            os.makedirs(self.workspace_dir, exist_ok=True)
        workspace = tempfile.mkdtemp(prefix="dockship-build-", dir=self.workspace_dir)
        rootfs = os.path.join(workspace, "rootfs")
        os.makedirs(rootfs)

        state = _BuildState()
        layers: List[Layer] = []
        previous = ""
        try:
            for index, (step, concrete) in enumerate(zip(steps, resolved)):
                if deadline.expired:
                    raise BuildStepFailed(index, "pipeline deadline exceeded")
                logger.info("Step %d/%d: %s", index + 1, len(steps), concrete.describe())
                try:
                    changed, inputs = self._apply(index, concrete, snapshot, rootfs, state, deadline)
                except BuildStepFailed:
                    raise
                except (OSError, ValueError) as e:
                    raise BuildStepFailed(index, str(e)) from e

                subset = json.dumps(config.subset(step.read_names()), sort_keys=True)
                digest = _sha256(previous, step.canonical(), subset, inputs)
                layers.append(Layer(
                    index=index,
                    digest=digest,
                    kind=step.kind.value,
                    created_by=concrete.describe(),
                    changed_paths=tuple(sorted(changed)),
                ))
                previous = digest
        finally:
            shutil.rmtree(workspace, ignore_errors=True)

        return ContainerImage.create(layers, state.freeze(), build_key=key)

    def _apply(self,
               index: int,
               step: BuildStep,
               snapshot: SourceSnapshot,
               rootfs: str,
               state: _BuildState,
               deadline: Deadline) -> Tuple[Set[str], str]:
        """
        Applies one resolved step.

        :return: Container paths written by the step, and a digest of the
                 snapshot files it read ("" when it reads none).
        """
        kind = step.kind
        args = step.arguments

        if kind == StepKind.COPY:
            return self._copy(index, step, snapshot, rootfs, state)
        if kind == StepKind.RUN:
            return self._run(index, step, rootfs, state, deadline), ""

        if kind == StepKind.FROM:
            self._require_args(index, step, 1)
            state.base_image = args[0]
        elif kind == StepKind.ENV:
            state.env_vars.update(step.options)
        elif kind == StepKind.LABEL:
            state.labels.update(step.options)
        elif kind == StepKind.USER:
            self._require_args(index, step, 1)
            state.user = args[0]
        elif kind == StepKind.EXPOSE:
            self._require_args(index, step, 1)
            for port in args:
                state.exposed_ports.append(self._validate_port(index, port))
        elif kind == StepKind.ENTRYPOINT:
            state.entrypoint = _shell_wrap(step)
        elif kind == StepKind.CMD:
            state.cmd = _shell_wrap(step)
        elif kind == StepKind.WORKDIR:
            self._require_args(index, step, 1)
            state.working_directory = self._container_path(args[0], state.working_directory)
            state.workdir_set = True
            os.makedirs(self._host_path(rootfs, state.working_directory), exist_ok=True)
        elif kind == StepKind.VOLUME:
            self._require_args(index, step, 1)
            for path in args:
                state.volumes.append(self._container_path(path, state.working_directory))
        return set(), ""

    @staticmethod
    def _require_args(index: int, step: BuildStep, count: int) -> None:
        if len(step.arguments) < count:
            raise BuildStepFailed(index, f"{step.kind.value} step needs at least {count} argument(s)")

    @staticmethod
    def _validate_port(index: int, port: str) -> str:
        match = PORT_PATTERN.match(port.strip())
        if not match or not 0 < int(match.group(1)) < 65536:
            raise BuildStepFailed(index, f"invalid port '{port}'")
        return port.strip()

    @staticmethod
    def _container_path(path: str, working_directory: str) -> str:
        if not path.startswith('/'):
            path = posixpath.join(working_directory, path)
        return "/" + posixpath.normpath(path).lstrip("/")

    @staticmethod
    def _host_path(rootfs: str, container_path: str) -> str:
        relative = posixpath.normpath(container_path).lstrip('/')
        if relative in ('', '.'):
            return rootfs
        return os.path.join(rootfs, *relative.split('/'))

    def _select_sources(self, sources: Sequence[str], snapshot: SourceSnapshot) -> List[Tuple[SnapshotEntry, str]]:
        """
        Picks snapshot entries for copy sources, paired with their path relative to the source.
        """
        selected: Dict[str, Tuple[SnapshotEntry, str]] = {}
        for source in sources:
            source = posixpath.normpath(source.lstrip('/')) if source not in ('.', './', '/') else '.'
            for entry in snapshot.entries:
                if source == '.':
                    selected.setdefault(entry.path, (entry, entry.path))
                elif entry.path == source or fnmatch.fnmatchcase(entry.path, source):
                    selected.setdefault(entry.path, (entry, posixpath.basename(entry.path)))
                elif entry.path.startswith(source + '/'):
                    selected.setdefault(entry.path, (entry, entry.path[len(source) + 1:]))
        return [selected[p] for p in sorted(selected)]

    def _copy(self,
              index: int,
              step: BuildStep,
              snapshot: SourceSnapshot,
              rootfs: str,
              state: _BuildState) -> Tuple[Set[str], str]:
        self._require_args(index, step, 2)
        sources, dest = step.arguments[:-1], step.arguments[-1]
        selected = self._select_sources(sources, snapshot)
        if not selected:
            raise BuildStepFailed(index, f"no files in the build context match {', '.join(sources)}")

        dest_path = self._container_path(dest, state.working_directory)
        single_file = (len(selected) == 1 and len(sources) == 1
                       and selected[0][0].path == posixpath.normpath(sources[0].lstrip('/'))
                       and not dest.endswith('/'))

        changed: Set[str] = set()
        for entry, relative in selected:
            target = dest_path if single_file else posixpath.join(dest_path, relative)
            host_source = os.path.join(snapshot.root, *entry.path.split('/'))
            host_target = self._host_path(rootfs, target)
            os.makedirs(os.path.dirname(host_target), exist_ok=True)

            if entry.link_target is not None:
                if os.path.lexists(host_target):
                    os.unlink(host_target)
                os.symlink(entry.link_target, host_target)
            else:
                if hash_file(host_source) != entry.digest:
                    raise BuildStepFailed(index, f"{entry.path} changed after the snapshot was taken")
                shutil.copyfile(host_source, host_target)
                os.chmod(host_target, entry.mode)
            changed.add(target)

        inputs = SourceSnapshot.digest_of(entry for entry, _ in selected)
        return changed, inputs

    def _fingerprint(self, rootfs: str) -> Dict[str, Tuple[int, int]]:
        prints: Dict[str, Tuple[int, int]] = {}
        for dirpath, _, filenames in os.walk(rootfs):
            for name in filenames:
                full = os.path.join(dirpath, name)
                try:
                    st = os.lstat(full)
                except FileNotFoundError:
                    continue
                rel = os.path.relpath(full, rootfs).replace(os.sep, '/')
                prints['/' + rel] = (st.st_size, st.st_mtime_ns)
        return prints

    def _run(self,
             index: int,
             step: BuildStep,
             rootfs: str,
             state: _BuildState,
             deadline: Deadline) -> Set[str]:
        self._require_args(index, step, 1)
        command = _shell_wrap(step)
        env = {"PATH": os.environ.get("PATH", os.defpath), "HOME": rootfs}
        env.update(state.env_vars)
        cwd = self._host_path(rootfs, state.working_directory)

        before = self._fingerprint(rootfs)
        result = self.runner.run(command, env=env, working_dir=cwd, timeout=deadline.remaining())
        if result.timed_out:
            raise BuildStepFailed(index, "pipeline deadline exceeded while running command")
        if not result.succeeded:
            reason = f"command exited with code {result.exit_code}"
            tail = result.tail()
            raise BuildStepFailed(index, f"{reason}: {tail}" if tail else reason)

        after = self._fingerprint(rootfs)
        return {p for p in set(before) | set(after) if before.get(p) != after.get(p)}

    def _policy_warnings(self, steps: Sequence[BuildStep], image: ContainerImage) -> List[BuildWarning]:
        """
        Structural checks on the finished image. Warnings never fail a build.
        """
        warnings: List[BuildWarning] = []

        user = image.metadata.user
        if user is None or user.strip() in ROOT_USERS:
            warnings.append(SecurityWarning(
                "image runs as root; add a user step naming a non-root identity"))

        # Volume targets in declaration order, with the step that declares them.
        declared: List[Tuple[int, str]] = []
        working_directory = "/"
        for index, step in enumerate(steps):
            if step.kind == StepKind.WORKDIR and step.arguments:
                working_directory = self._container_path(step.arguments[0], working_directory)
            elif step.kind == StepKind.VOLUME:
                for path in step.arguments:
                    declared.append((index, self._container_path(path, working_directory)))

        for layer in image.layers:
            if not layer.changed_paths:
                continue
            for volume_index, volume in declared:
                if volume_index <= layer.index:
                    continue
                hits = [p for p in layer.changed_paths if _is_under(p, volume)]
                if hits:
                    warnings.append(PersistedWriteWarning(
                        f"step {layer.index} writes {hits[0]} inside {volume}, "
                        f"declared as a volume by step {volume_index}",
                        step_index=layer.index,
                    ))

        for warning in warnings:
            logger.warning("%s: %s", type(warning).__name__, warning.message)
        return warnings
