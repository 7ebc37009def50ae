"""Main entry point for the progression API server"""
import logging

import uvicorn

from talentika_progression.api.server import create_api_application
from talentika_progression.config import API_HOST, API_PORT, LOG_LEVEL

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=getattr(logging, LOG_LEVEL)
)

logger = logging.getLogger(__name__)

app = create_api_application()


def main() -> None:
    """Run the API server"""
    logger.info(f"Starting progression API on {API_HOST}:{API_PORT}")
    uvicorn.run(app, host=API_HOST, port=API_PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
