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
Parsers for dockship.yml pipeline files.
"""
import os
from typing import Any, Dict, List

import yaml
from pydantic import ValidationError

from .dockerfile_parser import DockerfileParser
from ..errors import PipelineDefinitionError
from ..MODELS.build_config import ParameterDeclaration
from ..MODELS.build_step import BuildStep, StepKind
from ..MODELS.pipeline_definition import ContextRules, PipelineDefinition, PublishTarget


class PipelineParser:
    """
    Parser for pipeline files.

    Placeholders like ``${VERSION}`` are kept as written; they are resolved
    against the build configuration when the pipeline runs.
    """

    def parse(self, pipeline_path: str) -> PipelineDefinition:
        """
        Parses a pipeline file from a path.

        :param pipeline_path: Path to the pipeline file.
        :return: Parsed pipeline definition.
        """
        with open(pipeline_path, 'r') as f:
            content = f.read()
        base_dir = os.path.dirname(os.path.abspath(pipeline_path))
        return self.parse_from_string(content, base_dir=base_dir)

    def parse_from_string(self, content: str, base_dir: str = ".") -> PipelineDefinition:
        """
        Parses a pipeline file from a string.

        :param content: YAML content of the pipeline file.
        :param base_dir: Directory relative paths (Dockerfile, context) are resolved from.
        :return: Parsed pipeline definition.
        """
        try:
            data = yaml.safe_load(content)
        except (yaml.YAMLError, ValueError) as e:
            raise PipelineDefinitionError(f"Invalid pipeline YAML: {e}") from e
        if not data:
            data = {}
        if not isinstance(data, dict):
            raise PipelineDefinitionError("Pipeline file must contain a mapping")

        for key, expected in (('steps', list), ('context', dict), ('publish', dict), ('dockerfile', str)):
            if data.get(key) is not None and not isinstance(data[key], expected):
                raise PipelineDefinitionError(f"'{key}' must be a {expected.__name__}")

        parameters = self._parse_parameters(data.get('parameters') or [])
        steps: List[BuildStep] = []

        dockerfile = data.get('dockerfile')
        if dockerfile:
            try:
                parsed = DockerfileParser().parse(os.path.join(base_dir, dockerfile))
            except OSError as e:
                raise PipelineDefinitionError(f"Cannot read Dockerfile {dockerfile}: {e}") from e
            declared = {p.name for p in parameters}
            parameters.extend(p for p in parsed.parameters if p.name not in declared)
            steps.extend(parsed.steps)

        for index, node in enumerate(data.get('steps') or []):
            steps.append(self._parse_step(index, node))

        try:
            context = ContextRules(**(data.get('context') or {}))
            publish = PublishTarget(**self._normalize_publish(data.get('publish') or {}))
        except (TypeError, ValidationError) as e:
            raise PipelineDefinitionError(f"Invalid pipeline file: {e}") from e

        return PipelineDefinition(
            parameters=parameters,
            context=context,
            steps=steps,
            publish=publish,
            base_dir=base_dir,
        )

    def _parse_parameters(self, node: Any) -> List[ParameterDeclaration]:
        """
        Accepts a list of declarations or a mapping of name to default/declaration.
        """
        items = []
        if isinstance(node, dict):
            for name, value in node.items():
                if isinstance(value, dict):
                    items.append({'name': name, **value})
                else:
                    items.append({'name': name, 'default': value})
        elif isinstance(node, list):
            for value in node:
                items.append({'name': value} if isinstance(value, str) else value)
        else:
            raise PipelineDefinitionError("'parameters' must be a list or a mapping")

        declarations = []
        for item in items:
            if not isinstance(item, dict) or 'name' not in item:
                raise PipelineDefinitionError(f"Invalid parameter declaration: {item!r}")
            if item.get('default') is not None:
                item = {**item, 'default': str(item['default'])}
            try:
                declarations.append(ParameterDeclaration(**item))
            except (TypeError, ValidationError) as e:
                raise PipelineDefinitionError(f"Invalid parameter declaration {item!r}: {e}") from e
        return declarations

    def _parse_step(self, index: int, node: Any) -> BuildStep:
        """
        Parses a single ``{kind: value}`` step entry.
        """
        if not isinstance(node, dict) or len(node) != 1:
            raise PipelineDefinitionError(f"Step {index} must be a mapping with exactly one key: {node!r}")
        key, value = next(iter(node.items()))
        try:
            kind = StepKind(str(key).lower())
        except ValueError:
            raise PipelineDefinitionError(f"Step {index} has unknown kind '{key}'")

        if kind in (StepKind.ENV, StepKind.LABEL):
            if not isinstance(value, dict):
                raise PipelineDefinitionError(f"Step {index} ({kind.value}) needs a mapping")
            return BuildStep(kind=kind, options={str(k): self._scalar(v) for k, v in value.items()})

        if kind in (StepKind.RUN, StepKind.ENTRYPOINT, StepKind.CMD):
            if isinstance(value, str):
                return BuildStep(kind=kind, arguments=[value], shell_form=True)
            return BuildStep(kind=kind, arguments=self._to_list(value))

        if kind == StepKind.COPY:
            if isinstance(value, dict):
                sources = self._to_list(value.get('src', value.get('source')))
                dest = value.get('dest', value.get('destination'))
                if not sources or dest is None:
                    raise PipelineDefinitionError(f"Step {index} (copy) needs 'src' and 'dest'")
                arguments = sources + [str(dest)]
            elif isinstance(value, str):
                arguments = value.split()
            else:
                arguments = self._to_list(value)
            if len(arguments) < 2:
                raise PipelineDefinitionError(f"Step {index} (copy) needs a source and a destination")
            return BuildStep(kind=kind, arguments=arguments)

        if kind in (StepKind.EXPOSE, StepKind.VOLUME):
            return BuildStep(kind=kind, arguments=self._to_list(value))

        if value is None or isinstance(value, (list, dict)):
            raise PipelineDefinitionError(f"Step {index} ({kind.value}) needs a single value")
        return BuildStep(kind=kind, arguments=[self._scalar(value)])

    @staticmethod
    def _normalize_publish(node: Dict[str, Any]) -> Dict[str, Any]:
        node = dict(node)
        tags = node.get('tags')
        if tags is not None:
            node['tags'] = PipelineParser._to_list(tags)
        return node

    @staticmethod
    def _scalar(value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        return "" if value is None else str(value)

    @staticmethod
    def _to_list(val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.
        """
        if val is None:
            return []
        if isinstance(val, (str, int, float)):
            return [PipelineParser._scalar(val)]
        return [PipelineParser._scalar(v) for v in val]
