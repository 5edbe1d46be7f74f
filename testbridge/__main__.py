"""Entry point for running testbridge as a module."""

from testbridge.cli.commands import app

if __name__ == "__main__":
    app()
