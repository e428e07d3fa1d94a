"""Run the agentcanvas server: `python -m agentcanvas`."""

from __future__ import annotations

import sys

import uvicorn
from loguru import logger

from agentcanvas.web.app import create_app
from agentcanvas.web.settings import WebSettings

_UVICORN_LEVELS = {"TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def main() -> None:
    settings = WebSettings()

    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)

    uv_level = settings.log_level if settings.log_level in _UVICORN_LEVELS else "INFO"
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=uv_level.lower(),
    )


if __name__ == "__main__":
    main()
