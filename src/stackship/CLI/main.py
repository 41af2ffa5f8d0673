"""
Command Line Interface for stackship.
"""
import functools
import logging
import os
import time

import click
import yaml

from ..BUILDERS.build_orchestrator import SubprocessStageExecutor
from ..BUILDERS.dependency_cache import DiskDependencyCache
from ..BUILDERS.image_builder import ImageBuilder
from ..MANAGERS.hardening import apply, load_profile, render_compose
from ..MANAGERS.log_aggregator import LogAggregator
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MANAGERS.volume_manager import VolumeManager
from ..MODELS.container_image import RunIdentity
from ..PARSERS.compose_parser import ComposeParser
from ..REGISTRY.image_store import ImageStore
from ..errors import ConfigurationError, StackshipError
from ..settings import Settings

logger = logging.getLogger(__name__)


def handle_errors(f):
    """
    Maps failures to a message naming the failing step and a distinct exit status.
    """
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        ctx = click.get_current_context()
        try:
            return f(*args, **kwargs)
        except StackshipError as e:
            click.echo(f"Error: {e}", err=True)
            ctx.exit(e.exit_code)
        except (ValueError, yaml.YAMLError, FileNotFoundError) as e:
            err = ConfigurationError(str(e), step=f.__name__.replace("_", "-"))
            click.echo(f"Error: {err}", err=True)
            ctx.exit(err.exit_code)
    return wrapper


def _state_path(ctx, *parts) -> str:
    return os.path.join(ctx.obj['settings'].state_dir, *parts)


def _topology(ctx, profile=None):
    path = os.path.join(ctx.obj['project_dir'], ctx.obj['file'])
    if not os.path.exists(path):
        raise ConfigurationError(f"{ctx.obj['file']} not found", step="topology")
    topology = ComposeParser().parse(path)
    if profile:
        topology = apply(topology, load_profile(profile))
    return topology


def _orchestrator(ctx, profile=None) -> ServiceOrchestrator:
    return ServiceOrchestrator(
        _topology(ctx, profile),
        base_dir=ctx.obj['project_dir'],
        settings=ctx.obj['settings'],
        store=ImageStore(_state_path(ctx, "images")),
    )


@click.group()
@click.option('--file', '-f', default='docker-compose.yml', help='Topology file path')
@click.option('--project-dir', '-C', default='.', type=click.Path(file_okay=False),
              help='Project directory holding the topology, .env and .stackship state')
@click.option('--verbose', '-v', is_flag=True, help='Debug logging')
@click.pass_context
def cli(ctx, file, project_dir, verbose):
    """
    stackship - build layered runtime images and run multi-service stacks.
    """
    ctx.ensure_object(dict)
    settings = Settings.load(project_dir)
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    ctx.obj['file'] = file
    ctx.obj['project_dir'] = project_dir
    ctx.obj['settings'] = settings


@cli.command()
@click.argument('context', default='.', type=click.Path(exists=True, file_okay=False))
@click.option('--dockerfile', '-d', default=None, help='Build descriptor (default: CONTEXT/Dockerfile)')
@click.option('--tag', '-t', required=True, help='Image reference, e.g. api:1.4')
@click.option('--alias', '-a', multiple=True, help='Extra tag for the same image, e.g. latest')
@click.option('--lenient-ordering', is_flag=True,
              help='Warn instead of failing when the manifest is copied with the sources')
@click.option('--plan', 'plan_only', is_flag=True, help='Show which stages would be reused and exit')
@click.pass_context
@handle_errors
def build(ctx, context, dockerfile, tag, alias, lenient_ordering, plan_only):
    """Build and tag an image."""
    settings = ctx.obj['settings']
    dockerfile = dockerfile or os.path.join(context, "Dockerfile")
    builder = ImageBuilder(
        ImageStore(_state_path(ctx, "images")),
        cache=DiskDependencyCache(settings.resolved_cache_dir),
        executor=SubprocessStageExecutor(timeout=settings.stage_timeout),
        identity=RunIdentity(name=settings.run_as_user, uid=settings.run_as_uid, gid=settings.run_as_uid),
        strict_ordering=not lenient_ordering,
    )

    if plan_only:
        for label, hits in builder.predict_hits(dockerfile, context).items():
            for index, hit in enumerate(hits):
                click.echo(f"{label} stage {index}: {'CACHED' if hit else 'RUN'}")
        return

    result = builder.build(dockerfile, context, tag, aliases=list(alias))
    for stage in result.stages:
        state = "CACHED" if stage.cache_hit else f"{stage.duration:.1f}s"
        click.echo(f"stage {stage.index:<3} {state:>8}  {stage.name}")
    click.echo(f"Built {result.image.short_id}: {', '.join(result.tags)} "
               f"({result.hits} cached, {result.misses} executed)")


@cli.command('start-stack')
@click.option('--profile', '-p', type=click.Path(exists=True, dir_okay=False), help='Hardening profile')
@click.option('--detach', '-d', is_flag=True, help='Run in background')
@click.pass_context
@handle_errors
def start_stack(ctx, profile, detach):
    """Start the services of the topology."""
    orchestrator = _orchestrator(ctx, profile)
    order = orchestrator.up(supervise=not detach)
    click.echo(f"Started: {', '.join(order)}")

    if detach:
        return
    click.echo("Running... Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nStopping services...")
        orchestrator.down()


@cli.command('stop-stack')
@click.option('--purge-volumes', is_flag=True, help='Also delete the stack\'s named volumes')
@click.pass_context
@handle_errors
def stop_stack(ctx, purge_volumes):
    """Stop all running services. Volumes are kept unless purged."""
    stopped = _orchestrator(ctx).down(purge_volumes=purge_volumes)
    click.echo(f"Stopped: {', '.join(stopped) or 'nothing was running'}")
    if purge_volumes:
        click.echo("Volumes deleted.")


@cli.command('list-running')
@click.pass_context
@handle_errors
def list_running(ctx):
    """List service status."""
    status = _orchestrator(ctx).ps()
    click.echo(f"{'SERVICE':15} {'STATUS':10}")
    click.echo("-" * 25)
    for name, state in status.items():
        click.echo(f"{name:15} {state:10}")


@cli.command('show-logs')
@click.argument('instance')
@click.option('--tail', '-n', type=int, default=None, help='Only the last N lines')
@click.option('--follow', is_flag=True, help='Keep printing new lines')
@click.pass_context
@handle_errors
def show_logs(ctx, instance, tail, follow):
    """Show an instance's log."""
    aggregator = LogAggregator(_state_path(ctx, "logs"))
    if not os.path.exists(aggregator.path_for(instance)):
        raise ConfigurationError(f"no logs for instance '{instance}'", step="show-logs")
    for line in aggregator.read_logs(instance, tail=tail):
        click.echo(line)
    if follow:
        try:
            for line in aggregator.follow([instance]):
                click.echo(line)
        except KeyboardInterrupt:
            pass


@cli.command('delete-volume')
@click.argument('name')
@click.option('--yes', is_flag=True, help='Confirm that the volume\'s data is destroyed')
@click.pass_context
@handle_errors
def delete_volume(ctx, name, yes):
    """Delete a named volume and its data."""
    manager = VolumeManager(ctx.obj['project_dir'], _state_path(ctx, "volumes"))
    if manager.delete_volume(name, confirm=yes):
        click.echo(f"Deleted volume {name}")
    else:
        click.echo(f"No volume named {name}")


@cli.command()
@click.pass_context
@handle_errors
def images(ctx):
    """List built images."""
    store = ImageStore(_state_path(ctx, "images"))
    click.echo(f"{'IMAGE ID':14} {'USER':10} {'TAGS'}")
    for image in sorted(store.list(), key=lambda i: i.created, reverse=True):
        click.echo(f"{image.short_id:14} {image.run_as_identity.name:10} {', '.join(store.tags_of(image.digest))}")


@cli.command()
@click.pass_context
@handle_errors
def volumes(ctx):
    """List named volumes."""
    manager = VolumeManager(ctx.obj['project_dir'], _state_path(ctx, "volumes"))
    click.echo(f"{'VOLUME':20} {'SIZE':>10} {'MOUNT PATH':28} {'BOUND TO'}")
    for vol in manager.list_volumes():
        bound = vol.binding.instance if vol.binding else "-"
        click.echo(f"{vol.name:20} {manager.get_volume_size(vol.name):>10} {vol.mount_path or '-':28} {bound}")


@cli.command()
@click.option('--profile', '-p', type=click.Path(exists=True, dir_okay=False), help='Hardening profile')
@click.pass_context
@handle_errors
def render(ctx, profile):
    """Print the effective topology, with a hardening profile applied."""
    click.echo(render_compose(_topology(ctx, profile)), nl=False)


@cli.command('prune-cache')
@click.option('--max-age-days', type=int, default=None, help='Only layers unused for this long')
@click.pass_context
@handle_errors
def prune_cache(ctx, max_age_days):
    """Remove cached stage outputs."""
    cache = DiskDependencyCache(ctx.obj['settings'].resolved_cache_dir)
    stats = cache.prune(max_age_days=max_age_days)
    click.echo(f"Removed {stats['removed_layers']} layers, freed {stats['freed_bytes']} bytes")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
