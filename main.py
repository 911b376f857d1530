"""
CMS facade entrypoint.
Builds configuration, the content facade and the HTTP app, then serves it.
"""

import os
import sys

import uvicorn
from loguru import logger

from cmsfacade.api import create_app
from cmsfacade.facade import ContentFacade
from cmsfacade.services.errors import ConfigurationError
from cmsfacade.settings import ProviderConfig, Settings


def build_app():
    """Validate configuration and assemble the app; exits on bad config."""
    try:
        settings = Settings.from_env()
        config = ProviderConfig.from_settings(settings)
    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(1)

    facade = ContentFacade(config)
    return create_app(facade, revalidation_secret=settings.revalidation_secret)


def main() -> None:
    """Main function"""
    logger.info("Starting CMS facade...")
    app = build_app()
    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    main()
