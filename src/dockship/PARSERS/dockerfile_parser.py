"""
Parsers for Dockerfiles, turning instructions into build steps.
"""
import json
import re
import shlex
from dataclasses import dataclass, field
from typing import List, Tuple

from ..errors import PipelineDefinitionError
from ..MODELS.build_config import ParameterDeclaration
from ..MODELS.build_step import BuildStep, StepKind

INSTRUCTION_KINDS = {
    "FROM": StepKind.FROM,
    "COPY": StepKind.COPY,
    "ADD": StepKind.COPY,
    "RUN": StepKind.RUN,
    "ENV": StepKind.ENV,
    "USER": StepKind.USER,
    "EXPOSE": StepKind.EXPOSE,
    "ENTRYPOINT": StepKind.ENTRYPOINT,
    "CMD": StepKind.CMD,
    "WORKDIR": StepKind.WORKDIR,
    "LABEL": StepKind.LABEL,
    "VOLUME": StepKind.VOLUME,
}

# Instructions accepted but without effect on the built image.
IGNORED = {"MAINTAINER", "HEALTHCHECK", "STOPSIGNAL", "SHELL", "ONBUILD"}


@dataclass
class ParsedDockerfile:
    """Steps and the ARG declarations found in a Dockerfile."""
    steps: List[BuildStep] = field(default_factory=list)
    parameters: List[ParameterDeclaration] = field(default_factory=list)


class DockerfileParser:
    """
    Parser for Dockerfile instructions.
    """
    def parse(self, dockerfile_path: str) -> ParsedDockerfile:
        """
        Parses a Dockerfile from a file path.

        Args:
            dockerfile_path (str): Path to the Dockerfile.

        Returns:
            ParsedDockerfile: Steps and parameter declarations.
        """
        with open(dockerfile_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> ParsedDockerfile:
        """
        Parses a Dockerfile from a string content.

        Args:
            content (str): Content of the Dockerfile.

        Returns:
            ParsedDockerfile: Steps and parameter declarations.

        Raises:
            PipelineDefinitionError: On an unknown instruction or malformed arguments.
        """
        result = ParsedDockerfile()

        content = re.sub(r'^\s*#.*$', '', content, flags=re.MULTILINE)
        content = re.sub(r'\\\s*\n', ' ', content)

        line_pattern = re.compile(r'^([A-Za-z]+)(?:\s+(.*))?$')
        for line in content.split('\n'):
            raw = line.strip()
            if not raw:
                continue
            match = line_pattern.match(raw)
            if match is None:
                raise PipelineDefinitionError(f"Malformed Dockerfile line: {raw}")
            instruction = match.group(1).upper()
            args_str = (match.group(2) or "").strip()

            if instruction == "ARG":
                result.parameters.append(self._parse_arg(args_str, raw))
                continue
            if instruction in IGNORED:
                continue
            if instruction not in INSTRUCTION_KINDS:
                raise PipelineDefinitionError(f"Unsupported Dockerfile instruction: {raw}")
            if not args_str:
                raise PipelineDefinitionError(f"{instruction} without arguments")

            kind = INSTRUCTION_KINDS[instruction]
            arguments, options, shell_form = self._parse_arguments(kind, args_str, raw)
            result.steps.append(BuildStep(
                kind=kind,
                arguments=arguments,
                options=options,
                shell_form=shell_form,
                raw=raw,
            ))

        return result

    @staticmethod
    def _parse_arg(args_str: str, raw: str) -> ParameterDeclaration:
        if not args_str:
            raise PipelineDefinitionError(f"ARG without a name: {raw}")
        name, sep, default = args_str.partition('=')
        if sep and len(default) >= 2 and default[0] == default[-1] and default[0] in "\"'":
            default = default[1:-1]
        return ParameterDeclaration(name=name.strip(), default=default if sep else None)

    def _parse_arguments(self, kind: StepKind, args_str: str, raw: str) -> Tuple[List[str], dict, bool]:
        # Exec form: a JSON array
        if args_str.startswith('[') and args_str.endswith(']'):
            try:
                values = json.loads(args_str)
            except json.JSONDecodeError:
                values = None
            if isinstance(values, list) and all(isinstance(v, str) for v in values):
                return values, {}, False

        if kind in (StepKind.ENV, StepKind.LABEL):
            return [], self._parse_pairs(args_str, raw), False
        if kind in (StepKind.RUN, StepKind.ENTRYPOINT, StepKind.CMD):
            return [args_str], {}, True
        if kind == StepKind.COPY:
            # Flags such as --chown are not supported and are dropped.
            try:
                parts = [p for p in shlex.split(args_str) if not p.startswith('--')]
            except ValueError as e:
                raise PipelineDefinitionError(f"Cannot parse '{raw}': {e}") from e
            if len(parts) < 2:
                raise PipelineDefinitionError(f"COPY needs a source and a destination: {raw}")
            return parts, {}, False
        if kind == StepKind.FROM:
            # "FROM image AS stage" keeps only the image
            return [args_str.split()[0]], {}, False
        if kind in (StepKind.USER, StepKind.WORKDIR):
            return [args_str], {}, False
        return args_str.split(), {}, False

    @staticmethod
    def _parse_pairs(args_str: str, raw: str) -> dict:
        """Handles both ``KEY=VALUE ...`` and the legacy ``KEY VALUE`` form."""
        try:
            tokens = shlex.split(args_str)
        except ValueError as e:
            raise PipelineDefinitionError(f"Cannot parse '{raw}': {e}") from e
        if tokens and '=' not in tokens[0]:
            key, _, value = args_str.partition(' ')
            return {key: value.strip()}
        pairs = {}
        for token in tokens:
            if '=' not in token:
                raise PipelineDefinitionError(f"Expected KEY=VALUE in '{raw}'")
            key, value = token.split('=', 1)
            pairs[key] = value
        return pairs
