"""Tracebar CLI - ``tracebar`` command.

Commands:
    config - Print the resolved configuration as JSON
    assets - Copy trace.css / trace.js to a directory
    demo   - Serve the demo application with the panel enabled
"""

import json
import shutil
import sys
from pathlib import Path
from typing import Optional

import click

from . import __version__
from .assets import ASSETS, asset_path
from .config import ConfigError, TraceConfigLoader


@click.group()
@click.version_option(version=__version__, prog_name="tracebar")
def cli():
    """In-browser request trace panel for ASGI applications."""


@cli.command("config")
@click.option("--file", "-f", "config_file", type=click.Path(dir_okay=False), help="YAML or JSON config file")
@click.option("--env-file", "-e", type=click.Path(dir_okay=False), help=".env file to load")
@click.option("--prefix", default="TRACE_", show_default=True, help="Environment variable prefix")
def config_command(config_file: Optional[str], env_file: Optional[str], prefix: str):
    """
    Print the resolved configuration.

    Examples:
      tracebar config
      tracebar config -f trace.yaml -e .env
    """
    try:
        config = TraceConfigLoader.load(config_file, env_prefix=prefix, env_file=env_file)
    except ConfigError as exc:
        click.secho(f"✗ {exc.message}", fg="red", err=True)
        sys.exit(1)

    click.echo(json.dumps(config.to_dict(), indent=2, ensure_ascii=False, default=str))


@cli.command("assets")
@click.argument("out_dir", type=click.Path(file_okay=False))
def assets_command(out_dir: str):
    """Copy the panel assets to OUT_DIR (for CDN or static hosting)."""
    target = Path(out_dir)
    target.mkdir(parents=True, exist_ok=True)
    for name in ASSETS:
        shutil.copyfile(asset_path(name), target / name)
        click.echo(f"  ✓ {target / name}")


@cli.command("demo")
@click.option("--host", default="127.0.0.1", show_default=True, help="Server host")
@click.option("--port", "-p", default=8000, show_default=True, type=int, help="Server port")
def demo_command(host: str, port: int):
    """Serve the demo application wrapped in TraceMiddleware."""
    import uvicorn

    from .demo import create_app

    click.secho(f"Tracebar demo on http://{host}:{port}/", fg="cyan", bold=True)
    uvicorn.run(create_app(), host=host, port=port, log_level="info")


def main():
    """Entry point for ``tracebar`` command."""
    cli()


if __name__ == "__main__":
    main()
