import logging
import os
from pathlib import Path

import click
import uvicorn

import pyrootfs.oci
from pyrootfs.oci.cache import BlobStore
from pyrootfs.oci.descriptor import Platform
from pyrootfs.oci.errors import PyRootFSError
from pyrootfs.settings import Credentials, Settings, default_cache_dir


class PlatformType(click.ParamType):
    name = "platform"

    def convert(self, value, param, ctx):
        if isinstance(value, Platform):
            return value
        try:
            return Platform.parse(value)
        except ValueError as e:
            self.fail(str(e), param, ctx)


class CLI:
    def __init__(
        self,
        cache_dir: Path,
        username: str | None = None,
        password: str | None = None,
        insecure: bool = False,
        debug: bool = False,
    ):
        if debug:
            logging.basicConfig(level=logging.DEBUG)
        self.settings = Settings(cache_dir=cache_dir, insecure=insecure)
        self.credentials = Credentials(username=username, password=password)


@click.group()
@click.option(
    "--cache-dir",
    help="Blob cache directory",
    envvar="PYROOTFS_CACHE_DIR",
    type=click.Path(file_okay=False, path_type=Path),
    default=default_cache_dir,
)
@click.option("-u", "--username", help="Username", envvar="PYROOTFS_USERNAME")
@click.option("-p", "--password", help="Password", envvar="PYROOTFS_PASSWORD")
@click.option("--insecure", help="Talk plain HTTP to the registry", is_flag=True)
@click.option("-d", "--debug", help="Debug output", is_flag=True)
@click.pass_context
def cli(ctx, cache_dir, username, password, insecure, debug):
    ctx.obj = CLI(
        cache_dir=cache_dir,
        username=username,
        password=password,
        insecure=insecure,
        debug=debug,
    )


@cli.group()
def image():
    """Inspect and pull container images."""


@image.command()
@click.argument("reference")
@click.option("--platform", type=PlatformType(), help="os/architecture[/variant]")
@click.pass_context
def inspect(ctx, reference: str, platform: Platform | None):
    """Show the manifest and configuration of an image."""
    obj: CLI = ctx.ensure_object(CLI)
    try:
        summary = pyrootfs.oci.inspect(
            reference,
            settings=obj.settings,
            credentials=obj.credentials,
            platform=platform,
        )
    except PyRootFSError as e:
        raise click.ClickException(str(e)) from e
    click.echo(summary.model_dump_json(indent=2, exclude_none=True))


@image.command()
@click.argument("reference")
@click.argument(
    "target", type=click.Path(file_okay=False, dir_okay=True, path_type=Path)
)
@click.option("--platform", type=PlatformType(), help="os/architecture[/variant]")
@click.option("--force", help="Overwrite a non-empty target", is_flag=True)
@click.option(
    "--oci-layout",
    help="Also export the image as an OCI Image Layout in this directory",
    type=click.Path(file_okay=False, dir_okay=True, path_type=Path),
)
@click.option("--clean-on-error", help="Remove the outputs of a failed pull", is_flag=True)
@click.pass_context
def pull(
    ctx,
    reference: str,
    target: Path,
    platform: Platform | None,
    force: bool,
    oci_layout: Path | None,
    clean_on_error: bool,
):
    """Pull an image and materialize its root filesystem in TARGET."""
    obj: CLI = ctx.ensure_object(CLI)
    try:
        rootfs = pyrootfs.oci.pull(
            reference,
            target,
            settings=obj.settings,
            credentials=obj.credentials,
            platform=platform,
            force=force,
            oci_layout=oci_layout,
            clean_on_error=clean_on_error,
        )
    except PyRootFSError as e:
        if e.needs_cleanup and not clean_on_error:
            click.echo(f"{target} is incomplete, remove it before reuse", err=True)
        raise click.ClickException(str(e)) from e
    click.echo(f"Done pulling {rootfs.reference} ({rootfs.digest}) into {rootfs.path}")
    if oci_layout is not None:
        click.echo(f"OCI layout written to {oci_layout}")


@cli.group()
def cache():
    """Manage the local blob cache."""


@cache.command("list")
@click.pass_context
def list_cache(ctx):
    """List the digests of cached blobs."""
    obj: CLI = ctx.ensure_object(CLI)
    for digest in BlobStore(obj.settings.cache_dir):
        click.echo(digest)


@cache.command()
@click.pass_context
def clear(ctx):
    """Remove every cached blob."""
    obj: CLI = ctx.ensure_object(CLI)
    BlobStore(obj.settings.cache_dir).clear()
    click.echo(f"Cleared {obj.settings.cache_dir}")


LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "()": "uvicorn.logging.DefaultFormatter",
            "fmt": "%(levelprefix)s %(message)s",
            "use_colors": None,
        },
        "access": {
            "()": "uvicorn.logging.AccessFormatter",
            "fmt": '%(levelprefix)s %(client_addr)s - "%(request_line)s" %(status_code)s',  # noqa: E501
        },
    },
    "handlers": {
        "default": {
            "formatter": "default",
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stderr",
        },
        "access": {
            "formatter": "access",
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
        },
    },
    "loggers": {
        "uvicorn": {"handlers": ["default"], "level": "INFO", "propagate": False},
        "uvicorn.error": {"level": "INFO"},
        "uvicorn.access": {"handlers": ["access"], "level": "INFO", "propagate": False},
        "pyrootfs": {"handlers": ["default"], "level": "INFO", "propagate": False},
    },
}


@cli.command()
@click.option("--reload", help="Watch for changes", is_flag=True)
@click.option("-p", "--port", type=int, default=8080)
@click.pass_context
def server(ctx, reload: bool = False, port: int = 8080):
    """Serve image inspection over HTTP."""
    obj: CLI = ctx.ensure_object(CLI)
    os.environ["PYROOTFS_CACHE_DIR"] = str(obj.settings.cache_dir)
    uvicorn.run(
        "pyrootfs.server:app",
        port=port,
        log_level="info",
        log_config=LOGGING_CONFIG,
        reload=reload,
    )


if __name__ == "__main__":
    cli()
