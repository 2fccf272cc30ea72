import uvicorn

from core.config import settings
from core.logger import logger, setup_logging


def main():
    setup_logging()
    logger.info("Starting LearnLoop API", env=settings.ENV, host=settings.API_HOST, port=settings.API_PORT)
    uvicorn.run(
        "api.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level="debug" if settings.DEBUG else "info",
    )


if __name__ == "__main__":
    try:
        main()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Application stopped.")
