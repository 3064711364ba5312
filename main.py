"""
Entry point of the Pixlie Analyst API server.

The app is built by ``create_app`` inside the server process, so the
objective coordinator and its background tasks live on uvicorn's event loop.
"""

import uvicorn

from pixlie_analyst.log_config import configure_logging
from pixlie_analyst.settings import settings


def main() -> None:
    configure_logging(settings.log_level, settings.log_format)
    uvicorn.run(
        "pixlie_analyst.api.app:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
