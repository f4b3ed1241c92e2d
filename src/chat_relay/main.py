"""
Chat relay entrypoint.

Loads settings, configures logging and serves the REST API with uvicorn;
the live relay starts with the application lifespan.
"""

import uvicorn

from .core.logger import configure_logging, get_logger
from .infrastructure.config.config_loader import get_settings_from_working_directory
from .api.unified_server import create_app


def main():
    settings = get_settings_from_working_directory()
    configure_logging(settings.logging)

    logger = get_logger(__name__)
    logger.info("chat_relay.starting", {
        "api_host": settings.api.host,
        "api_port": settings.api.port,
        "relay_host": settings.relay.host,
        "relay_port": settings.relay.port,
        "storage_backend": settings.storage.backend
    })

    app = create_app(settings)
    uvicorn.run(app, host=settings.api.host, port=settings.api.port, log_level=settings.logging.level.value.lower())


if __name__ == "__main__":
    main()
