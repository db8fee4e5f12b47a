"""
Command Line Interface for dockhand.
"""
import logging
import sys

import click
import yaml

from ..CONFIG.settings import load_settings
from ..errors import DockhandError
from ..MANAGERS.session import OrchestrationSession
from ..MODELS.image_ref import ImageRef
from ..UTILS.log_setup import configure_logging


def _session(ctx) -> OrchestrationSession:
    """
    Builds the session lazily and loads what the engine already has.
    """
    if 'session' not in ctx.obj:
        session = OrchestrationSession(ctx.obj['settings'], driver=ctx.obj.get('driver'))
        ctx.call_on_close(session.close)
        try:
            session.reconciler.adopt_from_engine()
        except DockhandError as e:
            _fail(e)
        ctx.obj['session'] = session
    return ctx.obj['session']


def _fail(error):
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


def _image_ref(ctx, param, value):
    try:
        return ImageRef.parse(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


@click.group()
@click.option('--config', '-c', 'config_file', default=None, help='YAML settings file')
@click.option('--env-file', default='.env', help='Dotenv file with DOCKHAND_* settings')
@click.option('--log-level', default=None, help='Override the configured log level')
@click.pass_context
def cli(ctx, config_file, env_file, log_level):
    """
    Dockhand - container lifecycle orchestration.

    Tracks images, containers and networks and keeps them consistent with the engine.
    """
    ctx.ensure_object(dict)
    try:
        settings = load_settings(config_file=config_file, env_file=env_file)
    except (OSError, ValueError, yaml.YAMLError) as e:
        _fail(f"invalid settings: {e}")
    handler = configure_logging(log_level or settings.log_level)
    ctx.call_on_close(lambda: logging.getLogger("dockhand").removeHandler(handler))
    ctx.obj['settings'] = settings


@cli.command()
@click.argument('image', callback=_image_ref)
@click.pass_context
def pull(ctx, image):
    """Pull an image."""
    try:
        _session(ctx).controller.pull_image(image.name, image.tag)
    except DockhandError as e:
        _fail(e)
    click.echo(f"Pulled {image}")


@cli.command()
@click.argument('context_path', type=click.Path(exists=True, file_okay=False))
@click.option('--tag', '-t', 'ref', required=True, callback=_image_ref, help='Image name and optional tag')
@click.pass_context
def build(ctx, context_path, ref):
    """Build an image from a directory."""
    try:
        _session(ctx).controller.build_image(context_path, ref.name, ref.tag)
    except DockhandError as e:
        _fail(e)
    click.echo(f"Built {ref}")


@cli.command()
@click.argument('image', callback=_image_ref)
@click.pass_context
def create(ctx, image):
    """Create a container from a known image."""
    try:
        container_id = _session(ctx).controller.create(image)
    except DockhandError as e:
        _fail(e)
    click.echo(container_id)


@cli.command()
@click.argument('image', callback=_image_ref)
@click.option('--network', '-n', default=None, help='Network to attach the container to')
@click.pass_context
def run(ctx, image, network):
    """Create a container and start it."""
    controller = _session(ctx).controller
    try:
        container_id = controller.create(image)
        if network:
            controller.attach_network(container_id, network)
        controller.start(container_id)
    except DockhandError as e:
        _fail(e)
    click.echo(container_id)


def _lifecycle(ctx, operation: str, container_id: str):
    try:
        state = getattr(_session(ctx).controller, operation)(container_id)
    except DockhandError as e:
        _fail(e)
    click.echo(f"{container_id} {state.value if state else 'unverified'}")


@cli.command()
@click.argument('container_id')
@click.pass_context
def start(ctx, container_id):
    """Start a container."""
    _lifecycle(ctx, 'start', container_id)


@cli.command()
@click.argument('container_id')
@click.pass_context
def stop(ctx, container_id):
    """Stop a running container."""
    _lifecycle(ctx, 'stop', container_id)


@cli.command()
@click.argument('container_id')
@click.pass_context
def rm(ctx, container_id):
    """Remove a stopped container."""
    _lifecycle(ctx, 'remove', container_id)


@cli.command()
@click.argument('image', callback=_image_ref)
@click.pass_context
def rmi(ctx, image):
    """Remove an image no container uses."""
    try:
        _session(ctx).controller.remove_image(image)
    except DockhandError as e:
        _fail(e)
    click.echo(f"Removed {image}")


@cli.group()
def network():
    """Manage networks."""


@network.command('create')
@click.argument('name')
@click.pass_context
def network_create(ctx, name):
    """Create a network."""
    try:
        _session(ctx).controller.create_network(name)
    except DockhandError as e:
        _fail(e)
    click.echo(name)


@network.command('rm')
@click.argument('name')
@click.pass_context
def network_rm(ctx, name):
    """Remove an empty network."""
    try:
        _session(ctx).controller.remove_network(name)
    except DockhandError as e:
        _fail(e)
    click.echo(name)


@network.command('connect')
@click.argument('name')
@click.argument('container_id')
@click.pass_context
def network_connect(ctx, name, container_id):
    """Attach a container to a network."""
    try:
        _session(ctx).controller.attach_network(container_id, name)
    except DockhandError as e:
        _fail(e)
    click.echo(f"{container_id} -> {name}")


@network.command('disconnect')
@click.argument('name')
@click.argument('container_id')
@click.pass_context
def network_disconnect(ctx, name, container_id):
    """Detach a container from a network."""
    try:
        _session(ctx).controller.detach_network(container_id, name)
    except DockhandError as e:
        _fail(e)
    click.echo(f"{container_id} -/- {name}")


@cli.command()
@click.pass_context
def images(ctx):
    """List images"""
    snapshot = _session(ctx).store.snapshot()
    click.echo(f"{'IMAGE':40} {'ID':20}")
    click.echo("-" * 61)
    for row in snapshot['images']:
        click.echo(f"{row['image']:40} {(row['id'] or '')[:20]:20}")


@cli.command()
@click.pass_context
def ps(ctx):
    """List containers"""
    snapshot = _session(ctx).store.snapshot()
    click.echo(f"{'CONTAINER':34} {'IMAGE':25} {'STATE':10} {'NETWORK':15}")
    click.echo("-" * 87)
    for row in snapshot['containers']:
        click.echo(f"{row['id']:34} {row['image']:25} {row['state']:10} {row['network'] or '':15}")


@cli.command()
@click.pass_context
def networks(ctx):
    """List networks"""
    snapshot = _session(ctx).store.snapshot()
    click.echo(f"{'NETWORK':20} {'MEMBERS':10}")
    click.echo("-" * 31)
    for row in snapshot['networks']:
        click.echo(f"{row['name']:20} {len(row['members']):<10}")


@cli.command()
@click.pass_context
def reconcile(ctx):
    """Check every container against the engine"""
    session = _session(ctx)
    try:
        results = session.reconciler.reconcile_all()
    except DockhandError as e:
        _fail(e)
    for container_id, state in results.items():
        click.echo(f"{container_id} {state.value if state else 'unverified'}")
    click.echo(f"{len(session.reconciler.events)} drift event(s)")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
