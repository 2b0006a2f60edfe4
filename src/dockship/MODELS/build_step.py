"""
Models for declared build steps, the ordered analogue of Dockerfile instructions.
"""
import json
from enum import Enum
from typing import Dict, List, Set
from pydantic import BaseModel, ConfigDict, Field

from ..UTILS.string_interpolation import EnvironmentInterpolator


class StepKind(str, Enum):
    """
    Kinds of build steps. Values double as the keys used in pipeline files.
    """
    FROM = "from"
    COPY = "copy"
    RUN = "run"
    ENV = "env"
    USER = "user"
    EXPOSE = "expose"
    ENTRYPOINT = "entrypoint"
    CMD = "cmd"
    WORKDIR = "workdir"
    LABEL = "label"
    VOLUME = "volume"


class BuildStep(BaseModel):
    """
    A single ordered build instruction.

    ``arguments`` holds positional values (copy sources and destination,
    exec-form commands, ports, paths) and ``options`` holds key/value pairs
    for ``env`` and ``label`` steps. Shell-form commands are a single
    argument with ``shell_form`` set.
    """
    model_config = ConfigDict(frozen=True)

    kind: StepKind
    arguments: List[str] = []
    options: Dict[str, str] = {}
    shell_form: bool = False
    raw: str = Field(default="", exclude=True)

    def _texts(self) -> List[str]:
        texts = list(self.arguments)
        for key, value in self.options.items():
            texts.extend((key, value))
        return texts

    def referenced_names(self) -> Set[str]:
        """
        Names of the ``${NAME}`` parameters that must resolve for this step.
        """
        names: Set[str] = set()
        for text in self._texts():
            names |= EnvironmentInterpolator.referenced_names(text)
        return names

    def read_names(self) -> Set[str]:
        """Every parameter name the step reads, including ones with fallbacks."""
        names: Set[str] = set()
        for text in self._texts():
            names |= EnvironmentInterpolator.all_names(text)
        return names

    def resolve(self, context: Dict[str, str]) -> "BuildStep":
        """
        Returns a copy of this step with every placeholder substituted.

        :raises KeyError: If a placeholder without default has no value.
        """
        interpolate = EnvironmentInterpolator.interpolate
        return BuildStep(
            kind=self.kind,
            arguments=[interpolate(a, context) for a in self.arguments],
            options={interpolate(k, context): interpolate(v, context)
                     for k, v in self.options.items()},
            shell_form=self.shell_form,
            raw=self.raw,
        )

    def canonical(self) -> str:
        """Stable JSON form of the step definition, used in layer digests."""
        return json.dumps(
            {
                "kind": self.kind.value,
                "arguments": list(self.arguments),
                "options": dict(sorted(self.options.items())),
                "shell_form": self.shell_form,
            },
            sort_keys=True,
            separators=(",", ":"),
        )

    def describe(self) -> str:
        """Dockerfile-like one line description of the step."""
        keyword = self.kind.value.upper()
        if self.kind in (StepKind.ENV, StepKind.LABEL):
            body = " ".join(f"{k}={json.dumps(v)}" for k, v in self.options.items())
        elif self.shell_form or self.kind not in (StepKind.RUN, StepKind.ENTRYPOINT, StepKind.CMD):
            body = " ".join(self.arguments)
        else:
            body = json.dumps(self.arguments)
        return f"{keyword} {body}".rstrip()
