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
Sequences one pipeline run: resolve, snapshot, build, publish.
"""
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Mapping, Optional

from .config_resolver import ConfigResolver
from ..BUILDERS.build_cache import BuildCache
from ..BUILDERS.image_builder import ImageBuilder
from ..BUILDERS.source_snapshot import SnapshotBuilder
from ..errors import BuildWarning, DockshipError, MissingRequiredParameter, PipelineDefinitionError
from ..MODELS.build_config import BuildConfig, ParameterDeclaration
from ..MODELS.container_image import ContainerImage
from ..MODELS.pipeline_definition import PipelineDefinition, TriggerEvent
from ..MODELS.publish_record import TagOutcome
from ..MODELS.source_snapshot import SourceSnapshot
from ..REGISTRY.publisher import Publisher
from ..RUNNERS.step_runner import Deadline, StepRunner
from ..UTILS.string_interpolation import EnvironmentInterpolator

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """
    States of a single pipeline run.
    """
    IDLE = "idle"
    RESOLVING = "resolving"
    SNAPSHOTTING = "snapshotting"
    BUILDING = "building"
    PUBLISHING = "publishing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATES = {PipelineState.SUCCEEDED, PipelineState.FAILED}

EXIT_CODES = {
    PipelineState.RESOLVING: 2,
    PipelineState.SNAPSHOTTING: 3,
    PipelineState.BUILDING: 4,
    PipelineState.PUBLISHING: 5,
}


@dataclass
class PipelineResult:
    """Terminal status of one run, and what it produced along the way."""
    state: PipelineState = PipelineState.IDLE
    stage: Optional[PipelineState] = None
    error: Optional[BaseException] = None
    config: Optional[BuildConfig] = None
    snapshot: Optional[SourceSnapshot] = None
    image: Optional[ContainerImage] = None
    cached: bool = False
    tags: List[str] = field(default_factory=list)
    tag_outcomes: List[TagOutcome] = field(default_factory=list)
    warnings: List[BuildWarning] = field(default_factory=list)
    history: List[PipelineState] = field(default_factory=lambda: [PipelineState.IDLE])

    @property
    def succeeded(self) -> bool:
        return self.state is PipelineState.SUCCEEDED

    @property
    def exit_code(self) -> int:
        if self.state is PipelineState.SUCCEEDED:
            return 0
        return EXIT_CODES.get(self.stage, 1)


class PipelineOrchestrator:
    """
    Runs a pipeline definition once per trigger event.

    Nothing from one run is kept for the next; each run gets a fresh
    resolver, snapshot builder and image builder.
    """

    def __init__(self,
                 definition: PipelineDefinition,
                 publisher: Optional[Publisher] = None,
                 cache: Optional[BuildCache] = None,
                 registry: Optional[str] = None,
                 repository: Optional[str] = None,
                 tags: Optional[List[str]] = None,
                 config_file: Optional[str] = None,
                 strict: bool = False,
                 environ: Optional[Mapping[str, str]] = None,
                 timeout: Optional[float] = None,
                 workspace_dir: Optional[str] = None,
                 runner: Optional[StepRunner] = None):
        """
        :param definition: Parsed pipeline file.
        :param publisher: Needed only for runs that publish.
        :param cache: Build cache shared between runs; content-addressed.
        :param registry: Overrides the registry of the pipeline file.
        :param repository: Overrides the repository of the pipeline file.
        :param tags: Overrides the tags of the pipeline file.
        :param config_file: Optional parameter-defaults file.
        :param strict: Fail on undeclared parameters.
        :param environ: Environment to read parameters from; defaults to os.environ.
        :param timeout: Overall deadline of a run, in seconds.
        :param workspace_dir: Where build root filesystems are created.
        :param runner: Executes run-command steps.
        """
        self.definition = definition
        self.publisher = publisher
        self.cache = cache
        self.registry = registry or definition.publish.registry
        self.repository = repository or definition.publish.repository
        self.tags = list(tags) if tags else list(definition.publish.tags)
        self.config_file = config_file
        self.strict = strict
        self.environ = environ
        self.timeout = timeout
        self.workspace_dir = workspace_dir
        self.runner = runner

    @staticmethod
    def _enter(result: PipelineResult, state: PipelineState) -> None:
        if result.state in TERMINAL_STATES:
            raise RuntimeError(f"Pipeline already finished in state {result.state.value}")
        logger.info("Pipeline: %s -> %s", result.state.value, state.value)
        result.state = state
        result.history.append(state)

    def _fail(self, result: PipelineResult, error: BaseException) -> PipelineResult:
        result.stage = result.state
        result.error = error
        self._enter(result, PipelineState.FAILED)
        logger.error("Pipeline failed while %s: %s", result.stage.value, error)
        return result

    def _referenced(self) -> List[str]:
        """Names the steps and the effective tags need, in first-use order."""
        names: List[str] = []
        for step in self.definition.steps:
            names.extend(sorted(step.referenced_names()))
        for tag in self.tags:
            names.extend(sorted(EnvironmentInterpolator.referenced_names(tag)))
        return list(dict.fromkeys(names))

    def _declarations(self) -> List[ParameterDeclaration]:
        """Declared parameters plus required ones for names only steps or tags mention."""
        declarations = list(self.definition.parameters)
        declared = {d.name for d in declarations}
        for name in self._referenced():
            if name not in declared:
                declarations.append(ParameterDeclaration(name=name, required=True))
                declared.add(name)
        return declarations

    def _resolve_tags(self, config: BuildConfig) -> List[str]:
        tags = []
        for tag in self.tags:
            try:
                tags.append(EnvironmentInterpolator.interpolate(tag, config.as_dict()))
            except KeyError as e:
                raise MissingRequiredParameter([e.args[0]]) from e
        return tags

    def _source_root(self, event: TriggerEvent) -> str:
        if os.path.isabs(event.source_ref):
            return event.source_ref
        return os.path.join(self.definition.base_dir, event.source_ref)

    def run(self, event: Optional[TriggerEvent] = None, publish: bool = True) -> PipelineResult:
        """
        Runs the pipeline to a terminal state.

        :param event: The trigger; defaults to building the pipeline directory.
        :param publish: Stop after building when False.
        :return: The terminal result. Stage failures are reported, not raised.
        """
        event = event or TriggerEvent()
        result = PipelineResult()
        deadline = Deadline(self.timeout)

        try:
            self._enter(result, PipelineState.RESOLVING)
            resolver = ConfigResolver(self._declarations(), strict=self.strict)
            result.config = resolver.resolve(
                arguments=event.build_args,
                environ=self.environ,
                config_file=self.config_file,
                referenced=self._referenced(),
            )
            result.tags = self._resolve_tags(result.config)
            if publish:
                if self.publisher is None:
                    raise PipelineDefinitionError("No publisher configured")
                if not self.registry or not self.repository:
                    raise PipelineDefinitionError("A registry and a repository are required to publish")
                if not result.tags:
                    raise PipelineDefinitionError("At least one tag is required to publish")

            self._enter(result, PipelineState.SNAPSHOTTING)
            rules = self.definition.context
            snapshotter = SnapshotBuilder(
                include=rules.include,
                exclude=rules.exclude,
                allow_symlinks=rules.allow_symlinks,
                allow_special=rules.allow_special,
                use_dockerignore=rules.use_dockerignore,
            )
            result.snapshot = snapshotter.snapshot(self._source_root(event))

            self._enter(result, PipelineState.BUILDING)
            builder = ImageBuilder(cache=self.cache, workspace_dir=self.workspace_dir, runner=self.runner)
            build = builder.build(self.definition.steps, result.snapshot, result.config, deadline=deadline)
            result.image = build.image
            result.cached = build.cached
            result.warnings = list(build.warnings)

            if not publish:
                self._enter(result, PipelineState.SUCCEEDED)
                return result

            self._enter(result, PipelineState.PUBLISHING)
            result.tag_outcomes = self.publisher.publish(
                result.image, self.registry, self.repository, result.tags)
            failed = [o for o in result.tag_outcomes if not o.ok]
            if failed:
                return self._fail(result, failed[0].error)

            self._enter(result, PipelineState.SUCCEEDED)
            return result
        except (DockshipError, OSError) as e:
            return self._fail(result, e)
        except Exception as e:
            logger.exception("Unexpected error while %s", result.state.value)
            return self._fail(result, e)
