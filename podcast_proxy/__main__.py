"""Main entry point for the podcast proxy package."""

from podcast_proxy.cli import cli

if __name__ == "__main__":
    cli()
