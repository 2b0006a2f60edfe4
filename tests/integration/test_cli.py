import json
import sys

import pytest
from click.testing import CliRunner

from dockship.CLI.main import cli
from dockship.MODELS.publish_record import PublishRecord


@pytest.fixture
def project(tmp_path):
    src = tmp_path / "project"
    src.mkdir()
    (src / "app.py").write_text("print('hello')\n")
    pipeline = {
        "parameters": [{"name": "VERSION", "required": True}],
        "steps": [
            {"from": "python:3.12-slim"},
            {"workdir": "/app"},
            {"copy": "app.py /app/"},
            {"run": [sys.executable, "-c", "open('built.txt', 'w').write('1')"]},
            {"user": "app"},
            {"cmd": ["python", "app.py"]},
        ],
        "publish": {"registry": "registry.example.com", "repository": "acme/app", "tags": ["${VERSION}"]},
    }
    # JSON is valid YAML
    (src / "dockship.yml").write_text(json.dumps(pipeline))
    return src


def invoke(project, tmp_path, *args):
    runner = CliRunner()
    return runner.invoke(cli, [
        '-f', str(project / "dockship.yml"),
        '--cache-dir', str(tmp_path / "cache"),
        *args,
    ])


def test_cli_help():
    runner = CliRunner()
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    assert 'build container images' in result.output


def test_cli_build_no_file():
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', 'non_existent.yml', 'build'])
    assert result.exit_code == 1
    assert 'Error: non_existent.yml not found.' in result.output


def test_cli_publish_help():
    runner = CliRunner()
    result = runner.invoke(cli, ['publish', '--help'])
    assert result.exit_code == 0
    assert '--dry-run' in result.output
    assert '--build-arg' in result.output


def test_cli_build(project, tmp_path):
    result = invoke(project, tmp_path, 'build', '--build-arg', 'VERSION=1.0')
    assert result.exit_code == 0, result.output
    assert result.output.strip().splitlines()[-1].startswith("sha256:")


def test_cli_build_missing_parameter(project, tmp_path):
    result = invoke(project, tmp_path, 'build')
    assert result.exit_code == 2
    assert 'VERSION' in result.output


def test_cli_bad_build_arg(project, tmp_path):
    result = invoke(project, tmp_path, 'build', '--build-arg', 'VERSION')
    assert result.exit_code != 0
    assert 'KEY=VALUE' in result.output


def test_cli_strict_rejects_unknown(project, tmp_path):
    result = invoke(project, tmp_path, 'build', '--strict', '--build-arg', 'VERSION=1', '--build-arg', 'EXTRA=1')
    assert result.exit_code == 2
    assert 'EXTRA' in result.output


def test_cli_publish_dry_run(project, tmp_path):
    result = invoke(project, tmp_path, 'publish', '--dry-run', '--build-arg', 'VERSION=1.0', '--tag', 'latest',
                    '--tag', '${VERSION}')
    assert result.exit_code == 0, result.output
    assert 'latest' in result.output
    assert '1.0' in result.output
    assert result.output.count('published') == 2


def test_cli_publish_from_event(project, tmp_path):
    event = tmp_path / "event.json"
    event.write_text(json.dumps({"build_args": {"VERSION": "7"}}))
    result = invoke(project, tmp_path, 'publish', '--dry-run', '--event', str(event))
    assert result.exit_code == 0, result.output
    assert '7' in result.output


def test_cli_build_failure_exit_code(project, tmp_path):
    pipeline = json.loads((project / "dockship.yml").read_text())
    pipeline["steps"][3] = {"run": [sys.executable, "-c", "import sys; sys.exit(2)"]}
    (project / "dockship.yml").write_text(json.dumps(pipeline))

    result = invoke(project, tmp_path, 'build', '--build-arg', 'VERSION=1')

    assert result.exit_code == 4
    assert 'building' in result.output


def test_cli_snapshot(project, tmp_path):
    result = invoke(project, tmp_path, 'snapshot', '--list')
    assert result.exit_code == 0, result.output
    assert 'app.py' in result.output
    assert 'dockship.yml' in result.output
    assert result.output.strip().splitlines()[-1].startswith("sha256:")


def test_cli_export(project, tmp_path):
    result = invoke(project, tmp_path, 'export')
    assert result.exit_code == 0, result.output
    assert 'FROM python:3.12-slim' in result.output
    assert 'ARG VERSION' in result.output

    out = tmp_path / "Dockerfile"
    result = invoke(project, tmp_path, 'export', '-o', str(out))
    assert result.exit_code == 0
    assert out.read_text().startswith("# Generated by dockship")


def test_cli_history(tmp_path):
    log = tmp_path / "publish-log.jsonl"
    record = PublishRecord(registry="ghcr.io", repository="acme/app", tag="v1",
                           image_digest="sha256:" + "f" * 64)
    log.write_text(record.model_dump_json() + "\n")

    runner = CliRunner()
    result = runner.invoke(cli, ['history', '--publish-log', str(log)])
    assert result.exit_code == 0
    assert 'ghcr.io/acme/app:v1' in result.output

    result = runner.invoke(cli, ['history', '--publish-log', str(tmp_path / "empty.jsonl")])
    assert 'No publish records.' in result.output


def test_cli_step_log(project, tmp_path):
    step_log = tmp_path / "logs" / "steps.log"
    result = invoke(project, tmp_path, 'build', '--build-arg', 'VERSION=1', '--no-cache', '--step-log', str(step_log))
    assert result.exit_code == 0, result.output
    assert "# exit code: 0" in step_log.read_text()


def test_cli_cache_list_and_prune(project, tmp_path):
    result = invoke(project, tmp_path, 'cache', 'list')
    assert 'Build cache is empty.' in result.output

    invoke(project, tmp_path, 'build', '--build-arg', 'VERSION=1')
    second = invoke(project, tmp_path, 'build', '--build-arg', 'VERSION=1')
    assert second.exit_code == 0

    result = invoke(project, tmp_path, 'cache', 'list')
    assert result.exit_code == 0
    assert sum('Z' in line for line in result.output.splitlines()) == 1

    result = invoke(project, tmp_path, 'cache', 'prune', '--older-than', '30')
    assert 'Removed 0 cached image(s).' in result.output
    result = invoke(project, tmp_path, 'cache', 'prune')
    assert 'Removed 1 cached image(s).' in result.output
