import logging

import uvicorn

from .app import create_app
from .config import configure_logging, load_settings

logger = logging.getLogger(__name__)


def main():
    settings = load_settings()
    configure_logging(settings)

    logger.info("Settings loaded; serving on %s:%s", settings.host, settings.port)

    app = create_app(settings)
    # log_config=None keeps uvicorn on the root handler installed above
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
