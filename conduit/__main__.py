"""Allow running as ``python -m conduit``."""

from conduit.cli import app

if __name__ == "__main__":
    app()
