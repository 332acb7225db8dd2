"""Typit CLI entrypoint."""

from typit.cli import app

if __name__ == "__main__":
    app()
