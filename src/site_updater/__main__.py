"""
Command-line entry point: ``python -m site_updater`` or ``site-updater``.

Loads the layered configuration, configures logging and serves the HTTP API
with uvicorn.
"""

from __future__ import annotations

import sys

import uvicorn

from site_updater.api import create_app
from site_updater.config import load_config
from site_updater.logging import get_logger, setup_logging


def main(argv: list[str] | None = None) -> int:
    """
    Run the site updater HTTP service.

    Args:
        argv: Command-line arguments; ``sys.argv[1:]`` if None.

    Returns:
        Process exit code.
    """
    try:
        config = load_config(cli_args=argv if argv is not None else sys.argv[1:])
    except (FileNotFoundError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    setup_logging(config.logging)
    logger = get_logger(__name__)
    logger.info(
        "Starting site updater",
        extra={
            "listen": config.server.listen,
            "project_root": str(config.project_root),
            "db_path": config.storage.db_path,
        },
    )

    app = create_app(config)
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
