"""Application entry point for the caregiver passkey service."""
from __future__ import annotations

import logging
import os

from .config import app

# Import the route and CLI modules so their decorators register with Flask.
from . import cli  # noqa: F401
from . import routes  # noqa: F401


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def main() -> None:
    _configure_logging()
    # WebAuthn is allowed over plain http only on localhost.
    app.run(
        host=os.environ.get("CAREGIVER_HOST", "localhost"),
        port=int(os.environ.get("CAREGIVER_PORT", "5000")),
        debug=not app.config.get("PRODUCTION"),
    )


__all__ = ["app", "main"]


if __name__ == "__main__":  # pragma: no cover - convenience script entry point.
    main()
