"""
Converters for rendering a pipeline definition back into a Dockerfile.
"""
import json
import os
from typing import List

from jinja2 import Template

from ..MODELS.build_step import BuildStep, StepKind
from ..MODELS.pipeline_definition import PipelineDefinition

DOCKERFILE_TEMPLATE = """\
# Generated by dockship from {{ source }}
{% for param in parameters -%}
ARG {{ param.name }}{% if param.default is not none %}={{ param.default }}{% endif %}
{% endfor -%}
{% for line in lines -%}
{{ line }}
{% endfor -%}
"""


class DockerfileConverter:
    """
    Renders the build steps of a pipeline as Dockerfile instructions.
    """

    def __init__(self, definition: PipelineDefinition, source: str = "dockship.yml"):
        """
        :param definition: The parsed pipeline definition.
        :param source: Name of the pipeline file, written into the header comment.
        """
        self.definition = definition
        self.source = source
        self.template = Template(DOCKERFILE_TEMPLATE)

    @staticmethod
    def render_step(step: BuildStep) -> str:
        keyword = "ADD" if step.raw.upper().startswith("ADD ") else step.kind.value.upper()
        if step.kind in (StepKind.ENV, StepKind.LABEL):
            body = " ".join(f"{k}={json.dumps(v)}" for k, v in step.options.items())
        elif step.kind in (StepKind.RUN, StepKind.ENTRYPOINT, StepKind.CMD):
            body = step.arguments[0] if step.shell_form else json.dumps(step.arguments)
        elif step.kind == StepKind.COPY and any(" " in a for a in step.arguments):
            body = json.dumps(step.arguments)
        else:
            body = " ".join(step.arguments)
        return f"{keyword} {body}"

    def render(self) -> str:
        lines: List[str] = [self.render_step(step) for step in self.definition.steps]
        return self.template.render(
            source=self.source,
            parameters=self.definition.parameters,
            lines=lines,
        )

    def convert(self, output_path: str = "Dockerfile") -> str:
        """
        Writes the rendered Dockerfile.

        :param output_path: Where to write it.
        :return: The path written.
        """
        directory = os.path.dirname(output_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(output_path, "w") as f:
            f.write(self.render())
        return output_path
