"""
Entry point for running Mimir as a module.

This allows users to run: python -m mimir
"""

from mimir.cli.main import app

if __name__ == "__main__":
    app()
