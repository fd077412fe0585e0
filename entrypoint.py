import uvicorn
import os

from constants import LOG_FILE, LOG_LEVEL
from logging_config import get_logger, setup_logging

# Setup logging before building the app
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)

logger = get_logger(__name__)


def main():
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))
    logger.info(f"Starting drawroom server on {host}:{port}")
    uvicorn.run("app:create_app", factory=True, host=host, port=port)


if __name__ == "__main__":
    main()
