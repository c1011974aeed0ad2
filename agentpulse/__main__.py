"""Run the agentpulse API server (``python -m agentpulse``)."""
import logging
import sys

import uvicorn

from agentpulse import config

logger = logging.getLogger("agentpulse")


def main() -> None:
    try:
        uvicorn.run("agentpulse.main:app", host=config.HOST, port=config.PORT)
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
        sys.exit(0)


if __name__ == "__main__":
    main()
