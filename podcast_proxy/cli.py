"""Command line interface for the podcast feed proxy."""

import logging
import sys
import time
from pathlib import Path
from typing import Optional

import click
import structlog
from dotenv import load_dotenv

from podcast_proxy.api import build_components, create_app, start_api_server
from podcast_proxy.config import ProxyConfig
from podcast_proxy.core.errors import ProcessingError
from podcast_proxy.metrics import start_metrics_server
from podcast_proxy.rewriter import ProxyContext, URLRewriter

logger = structlog.get_logger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging."""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level.upper())
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level.upper())),
    )


def context_from_base_url(base_url: str, token: str) -> ProxyContext:
    """Build a proxy context from a base URL such as ``https://proxy.example``."""
    scheme, sep, host = base_url.rstrip("/").partition("://")
    if not sep or scheme not in ("http", "https") or not host:
        raise click.BadParameter("must look like http(s)://host[:port]", param_hint="--base-url")
    return ProxyContext(scheme=scheme, host=host, auth_token=token)


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging level.",
)
def cli(log_level: str):
    """Podcast feed proxy CLI."""
    configure_logging(log_level)


@cli.command()
@click.option("--host", default=None, help="Bind address (overrides HOST).")
@click.option("--port", type=int, default=None, help="Listening port (overrides PORT).")
@click.option(
    "--env-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Load environment variables from this file.",
)
def serve(host: Optional[str], port: Optional[int], env_file: Optional[Path]):
    """Run the proxy server until interrupted."""
    load_dotenv(env_file)
    try:
        config = ProxyConfig.from_env()
    except ValueError as e:
        raise click.ClickException(str(e))

    if host:
        config.host = host
    if port:
        config.port = port

    if config.metrics_port:
        start_metrics_server(config.metrics_port)
        logger.info("metrics_server_started", port=config.metrics_port)

    components = build_components(config)
    app = create_app(config, components)
    server = start_api_server(app, config.host, config.port)
    logger.info(
        "server_ready",
        usage=f"http://{config.host}:{config.port}/feed?url=<podcast_rss_url>&apikey=<api_key>",
        basic_auth=config.basic_auth_enabled,
    )

    try:
        while server.is_alive():
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("shutdown_signal_received")
    finally:
        server.shutdown()
        components.cache.close()


@cli.command()
@click.argument("feed_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--base-url", required=True, help="Public base URL of the proxy.")
@click.option("--token", required=True, help="Token to embed in proxied URLs.")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the rewritten feed here instead of stdout.",
)
def rewrite(feed_file: Path, base_url: str, token: str, output: Optional[Path]):
    """Rewrite a local feed file the way the /feed endpoint would."""
    context = context_from_base_url(base_url, token)
    try:
        rewritten = URLRewriter(context).transform(feed_file.read_bytes())
    except ProcessingError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    if output:
        output.write_bytes(rewritten)
        click.echo(f"Wrote {len(rewritten)} bytes to {output}")
    else:
        click.echo(rewritten, nl=False)
