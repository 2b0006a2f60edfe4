import pytest

from dockship.errors import PipelineDefinitionError
from dockship.MODELS.build_step import StepKind
from dockship.PARSERS.dockerfile_parser import DockerfileParser


def test_parse_from_string():
    content = """
    ARG PYTHON_VERSION=3.12
    ARG VERSION
    FROM python:${PYTHON_VERSION}-slim AS runtime
    WORKDIR /app
    COPY --chown=app:app . .
    RUN pip install -r requirements.txt \
        && echo "done"
    ENV PORT=8080 MODE="production"
    USER app
    EXPOSE 8080/tcp
    CMD ["python", "app.py"]
    """
    parser = DockerfileParser()
    parsed = parser.parse_from_string(content)

    kinds = [s.kind for s in parsed.steps]
    assert kinds == [
        StepKind.FROM, StepKind.WORKDIR, StepKind.COPY, StepKind.RUN,
        StepKind.ENV, StepKind.USER, StepKind.EXPOSE, StepKind.CMD,
    ]

    # ARG lines become parameter declarations
    assert [(p.name, p.default) for p in parsed.parameters] == [("PYTHON_VERSION", "3.12"), ("VERSION", None)]

    from_step = parsed.steps[0]
    assert from_step.arguments == ["python:${PYTHON_VERSION}-slim"]
    assert from_step.referenced_names() == {"PYTHON_VERSION"}

    # COPY flags are dropped
    assert parsed.steps[2].arguments == [".", "."]

    # RUN with line continuation stays a single shell-form command
    run_step = parsed.steps[3]
    assert run_step.shell_form
    assert "&& echo \"done\"" in run_step.arguments[0]

    assert parsed.steps[4].options == {"PORT": "8080", "MODE": "production"}

    # Check CMD parsing (exec form)
    cmd_step = parsed.steps[-1]
    assert cmd_step.arguments == ["python", "app.py"]
    assert not cmd_step.shell_form


def test_legacy_env_form():
    parsed = DockerfileParser().parse_from_string("ENV GREETING hello world\n")
    assert parsed.steps[0].options == {"GREETING": "hello world"}


def test_comments_and_ignored_instructions():
    content = "# a comment\nFROM alpine\nMAINTAINER someone\nHEALTHCHECK CMD true\n"
    parsed = DockerfileParser().parse_from_string(content)
    assert [s.kind for s in parsed.steps] == [StepKind.FROM]


def test_add_is_copy():
    parsed = DockerfileParser().parse_from_string("ADD src /opt/src\n")
    assert parsed.steps[0].kind == StepKind.COPY
    assert parsed.steps[0].raw == "ADD src /opt/src"


def test_unknown_instruction():
    with pytest.raises(PipelineDefinitionError):
        DockerfileParser().parse_from_string("FROBNICATE everything\n")


def test_copy_needs_destination():
    with pytest.raises(PipelineDefinitionError):
        DockerfileParser().parse_from_string("COPY onlysource\n")


def test_parse_file(tmp_path):
    dockerfile = tmp_path / "Dockerfile"
    dockerfile.write_text("FROM alpine\nUSER nobody\n")
    parsed = DockerfileParser().parse(str(dockerfile))
    assert parsed.steps[1].arguments == ["nobody"]


@pytest.mark.parametrize("content", ["CMD\n", "FROM alpine\nCMD\nRUN echo hi\n", "RUN   \n"])
def test_instruction_without_arguments(content):
    with pytest.raises(PipelineDefinitionError) as exc:
        DockerfileParser().parse_from_string(content)
    assert "without arguments" in str(exc.value)


def test_malformed_line():
    with pytest.raises(PipelineDefinitionError):
        DockerfileParser().parse_from_string("FROM alpine\n--> not an instruction\n")
