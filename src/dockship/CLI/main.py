"""
Command Line Interface for Dockship.
"""
import logging
import os
import sys
from typing import Dict, Optional, Tuple

import click

from ..BUILDERS.build_cache import BuildCache
from ..BUILDERS.source_snapshot import SnapshotBuilder
from ..CONVERTERS.to_dockerfile import DockerfileConverter
from ..errors import DockshipError
from ..MANAGERS.pipeline_orchestrator import PipelineOrchestrator, PipelineResult
from ..MODELS.pipeline_definition import PipelineDefinition, TriggerEvent
from ..MODELS.publish_record import PublishStatus
from ..PARSERS.pipeline_parser import PipelineParser
from ..REGISTRY.credential_broker import CredentialBroker, Credential, SecretSource
from ..REGISTRY.memory_registry import InMemoryRegistry
from ..REGISTRY.publish_log import PublishLog
from ..REGISTRY.publisher import Publisher
from ..REGISTRY.registry_client import RegistryClient
from ..RUNNERS.step_runner import StepRunner


class _DryRunSecrets(SecretSource):
    """Hands out a throwaway credential so dry runs never touch real secrets."""

    def lookup(self, registry: str) -> Optional[Credential]:
        return Credential(registry=registry, username="dry-run", secret="dry-run")


def _parse_build_args(values: Tuple[str, ...]) -> Dict[str, str]:
    args = {}
    for value in values:
        if '=' not in value:
            raise click.BadParameter(f"expected KEY=VALUE, got '{value}'", param_hint="--build-arg")
        key, val = value.split('=', 1)
        args[key.strip()] = val
    return args


def _load_definition(ctx) -> PipelineDefinition:
    path = ctx.obj['file']
    if not os.path.exists(path):
        click.echo(f"Error: {path} not found.", err=True)
        ctx.exit(1)
    try:
        return PipelineParser().parse(path)
    except DockshipError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)


def _event(event_file: Optional[str], source: Optional[str], build_args: Dict[str, str]) -> TriggerEvent:
    event = TriggerEvent.from_file(event_file) if event_file else TriggerEvent()
    if source:
        event = event.model_copy(update={"source_ref": os.path.abspath(source)})
    if build_args:
        event = event.model_copy(update={"build_args": {**event.build_args, **build_args}})
    return event


def _report(result: PipelineResult) -> None:
    for warning in result.warnings:
        click.echo(f"Warning ({warning.kind}): {warning.message}", err=True)
    for outcome in result.tag_outcomes:
        if outcome.status is PublishStatus.FAILED:
            click.echo(f"{outcome.tag:20} {outcome.status.value:18} {outcome.error}")
        else:
            click.echo(f"{outcome.tag:20} {outcome.status.value:18} {outcome.record.manifest_digest}")
    if result.succeeded:
        return
    stage = result.stage.value if result.stage else "unknown"
    click.echo(f"Error: pipeline failed while {stage}: {result.error}", err=True)


def _build_options(f):
    f = click.option('--timeout', type=float, default=None, help='Overall deadline in seconds')(f)
    f = click.option('--strict', is_flag=True, help='Reject undeclared parameters')(f)
    f = click.option('--build-arg', 'build_args', multiple=True, metavar='KEY=VALUE',
                     help='Explicit build argument (repeatable)')(f)
    f = click.option('--config-file', type=click.Path(exists=True, dir_okay=False),
                     help='YAML or dotenv file with parameter defaults')(f)
    f = click.option('--source', type=click.Path(exists=True, file_okay=False),
                     help='Source checkout (defaults to the pipeline file directory)')(f)
    f = click.option('--event', 'event_file', type=click.Path(exists=True, dir_okay=False),
                     help='JSON trigger event with source_ref and build_args')(f)
    f = click.option('--no-cache', is_flag=True, help='Always execute every step')(f)
    f = click.option('--step-log', type=click.Path(dir_okay=False), help='Append run-step output to this file')(f)
    return f


@click.group()
@click.option('--file', '-f', default='dockship.yml', envvar='DOCKSHIP_FILE', help='Pipeline file path')
@click.option('--cache-dir', envvar='DOCKSHIP_CACHE_DIR', default=None, help='Build cache directory')
@click.option('--log-level', default='WARNING',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False))
@click.pass_context
def cli(ctx, file, cache_dir, log_level):
    """
    Dockship - build container images from a checkout and publish them.

    Each invocation is one pipeline run: resolve parameters, snapshot the
    source, build the image and, for publish, push it once per tag.
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.ensure_object(dict)
    ctx.obj['file'] = file
    ctx.obj['cache_dir'] = cache_dir


@cli.command()
@_build_options
@click.pass_context
def build(ctx, timeout, strict, build_args, config_file, source, event_file, no_cache, step_log):
    """Resolve parameters, build the image and print its digest."""
    definition = _load_definition(ctx)
    orchestrator = PipelineOrchestrator(
        definition,
        cache=None if no_cache else BuildCache(ctx.obj['cache_dir']),
        config_file=config_file,
        strict=strict,
        timeout=timeout,
        runner=StepRunner(step_log),
    )
    result = orchestrator.run(_event(event_file, source, _parse_build_args(build_args)), publish=False)
    _report(result)
    if result.succeeded:
        click.echo(result.image.digest)
    ctx.exit(result.exit_code)


@cli.command()
@_build_options
@click.option('--tag', '-t', 'tags', multiple=True, help='Tag to publish (repeatable)')
@click.option('--registry', help='Registry host, e.g. ghcr.io')
@click.option('--repository', help='Repository path, e.g. acme/app')
@click.option('--publish-log', envvar='DOCKSHIP_PUBLISH_LOG', default=None,
              help='Local publish history file')
@click.option('--credential-timeout', type=float, default=10.0, show_default=True,
              help='Seconds to wait for the secret store')
@click.option('--dry-run', is_flag=True, help='Publish to an in-memory registry')
@click.pass_context
def publish(ctx, timeout, strict, build_args, config_file, source, event_file, no_cache, step_log,
            tags, registry, repository, publish_log, credential_timeout, dry_run):
    """Run the full pipeline and publish the image."""
    definition = _load_definition(ctx)
    if dry_run:
        publisher = Publisher(InMemoryRegistry(), CredentialBroker(_DryRunSecrets()))
    else:
        publisher = Publisher(
            RegistryClient(),
            CredentialBroker(timeout=credential_timeout),
            log=PublishLog(publish_log),
        )
    orchestrator = PipelineOrchestrator(
        definition,
        publisher=publisher,
        cache=None if no_cache else BuildCache(ctx.obj['cache_dir']),
        registry=registry,
        repository=repository,
        tags=list(tags),
        config_file=config_file,
        strict=strict,
        timeout=timeout,
        runner=StepRunner(step_log),
    )
    result = orchestrator.run(_event(event_file, source, _parse_build_args(build_args)), publish=True)
    _report(result)
    if result.image is not None:
        click.echo(f"image {result.image.digest}")
    ctx.exit(result.exit_code)


@cli.command()
@click.option('--source', type=click.Path(exists=True, file_okay=False), help='Directory to snapshot')
@click.option('--list', 'list_entries', is_flag=True, help='Print every captured file')
@click.pass_context
def snapshot(ctx, source, list_entries):
    """Print the snapshot digest of the build context."""
    definition = _load_definition(ctx)
    rules = definition.context
    builder = SnapshotBuilder(
        include=rules.include,
        exclude=rules.exclude,
        allow_symlinks=rules.allow_symlinks,
        allow_special=rules.allow_special,
        use_dockerignore=rules.use_dockerignore,
    )
    root = os.path.abspath(source) if source else definition.base_dir
    try:
        snap = builder.snapshot(root)
    except DockshipError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(3)
    if list_entries:
        for entry in snap.entries:
            click.echo(f"{entry.digest[7:19]}  {entry.size:>10}  {entry.path}")
    click.echo(snap.digest)


@cli.command()
@click.option('--out', '-o', default='-', help="Output path, '-' for stdout")
@click.pass_context
def export(ctx, out):
    """Render the build steps as a Dockerfile."""
    definition = _load_definition(ctx)
    converter = DockerfileConverter(definition, source=os.path.basename(ctx.obj['file']))
    if out == '-':
        click.echo(converter.render(), nl=False)
    else:
        converter.convert(out)
        click.echo(f"Dockerfile written to {out}")


@cli.group()
def cache():
    """Inspect and clean the build cache."""


@cache.command('list')
@click.pass_context
def cache_list(ctx):
    """List cached images."""
    images = BuildCache(ctx.obj['cache_dir']).list_images()
    if not images:
        click.echo("Build cache is empty.")
        return
    click.echo(f"{'BUILT':28} {'IMAGE':20} {'BUILD KEY':20}")
    click.echo("-" * 70)
    for image in sorted(images, key=lambda i: i.built_at):
        click.echo(f"{image.built_at:28} {image.digest[7:19]:20} {image.build_key[7:19]:20}")


@cache.command('prune')
@click.option('--older-than', 'older_than', type=int, default=None,
              help='Only remove images built more than this many days ago')
@click.pass_context
def cache_prune(ctx, older_than):
    """Remove cached images."""
    stats = BuildCache(ctx.obj['cache_dir']).prune(max_age_days=older_than)
    click.echo(f"Removed {stats['removed_images']} cached image(s).")


@cli.command()
@click.option('--publish-log', envvar='DOCKSHIP_PUBLISH_LOG', default=None,
              help='Local publish history file')
@click.option('--repository', help='Only show this repository')
def history(publish_log, repository):
    """List recorded publishes."""
    records = PublishLog(publish_log).records()
    if repository:
        records = [r for r in records if r.repository == repository]
    if not records:
        click.echo("No publish records.")
        return
    click.echo(f"{'TIMESTAMP':28} {'REFERENCE':50} {'IMAGE':20}")
    click.echo("-" * 98)
    for record in records:
        reference = f"{record.registry}/{record.repository}:{record.tag}"
        click.echo(f"{record.timestamp:28} {reference:50} {record.image_digest[7:19]:20}")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
