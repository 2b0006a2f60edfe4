import logging
import os
import sys

import pytest

from dockship.BUILDERS.image_builder import ImageBuilder
from dockship.BUILDERS.source_snapshot import SnapshotBuilder
from dockship.errors import BuildStepFailed
from dockship.MODELS.build_config import BuildConfig
from dockship.MODELS.build_step import BuildStep, StepKind
from dockship.MODELS.container_image import ContainerImage, ImageMetadata
from dockship.PARSERS.dockerfile_parser import DockerfileParser
from dockship.REGISTRY.credential_broker import Credential, CredentialBroker, SecretSource
from dockship.REGISTRY.memory_registry import InMemoryRegistry
from dockship.REGISTRY.publisher import Publisher
from dockship.RUNNERS.step_runner import StepRunner


def test_command_injection_attempt(tmp_path):
    """
    Exec-form commands never go through a shell, so ';' is a literal argument.
    """
    injected_file = tmp_path / "injected.txt"
    runner = StepRunner()
    result = runner.run(["echo", "hello", ";", "touch", str(injected_file)], env=dict(os.environ),
                        working_dir=str(tmp_path))

    assert result.succeeded
    assert not injected_file.exists(), "Command injection successful! Security vulnerability found."


def test_parameter_values_are_not_shell_expanded(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    snapshot = SnapshotBuilder().snapshot(str(src))
    marker = tmp_path / "pwned"
    steps = [
        BuildStep(kind=StepKind.RUN, arguments=[sys.executable, "-c", "import sys; print(sys.argv[1])",
                                                "${PAYLOAD}"]),
        BuildStep(kind=StepKind.USER, arguments=["app"]),
    ]
    config = BuildConfig(values={"PAYLOAD": f"$(touch {marker})"})

    ImageBuilder(workspace_dir=str(tmp_path / "ws")).build(steps, snapshot, config)

    assert not marker.exists()


def test_copy_cannot_escape_root_filesystem(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    (src / "app.py").write_text("x")
    snapshot = SnapshotBuilder().snapshot(str(src))
    escape_target = tmp_path / "escaped.py"
    steps = [
        BuildStep(kind=StepKind.COPY, arguments=["app.py", "../../../../../../" + str(escape_target)]),
        BuildStep(kind=StepKind.USER, arguments=["app"]),
    ]

    result = ImageBuilder(workspace_dir=str(tmp_path / "ws")).build(steps, snapshot, BuildConfig())

    assert not escape_target.exists()
    assert result.image.layers[0].changed_paths == (str(escape_target),)


def test_copy_only_reads_from_snapshot(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    (src / "app.py").write_text("x")
    snapshot = SnapshotBuilder().snapshot(str(src))
    steps = [BuildStep(kind=StepKind.COPY, arguments=["../../../../etc/hosts", "/hosts"])]

    with pytest.raises(BuildStepFailed):
        ImageBuilder(workspace_dir=str(tmp_path / "ws")).build(steps, snapshot, BuildConfig())


def test_secret_never_logged(caplog):
    class Secrets(SecretSource):
        def lookup(self, registry):
            return Credential(registry=registry, username="ci", secret="hunter2-very-secret")

    image = ContainerImage.create([], ImageMetadata(user="app"))
    publisher = Publisher(InMemoryRegistry(), CredentialBroker(Secrets()), backoff_multiplier=0)

    with caplog.at_level(logging.DEBUG, logger="dockship"):
        publisher.publish(image, "registry.example.com", "acme/app", ["v1"])

    assert caplog.records
    assert "hunter2-very-secret" not in caplog.text


def test_missing_dockerfile():
    parser = DockerfileParser()
    with pytest.raises(FileNotFoundError):
        parser.parse("non_existent_file_12345.txt")
