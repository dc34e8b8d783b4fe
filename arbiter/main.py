"""
Module: arbiter/main.py
Description: Service entry point

Loads ARBITER_* settings, configures logging and serves the API with uvicorn.
"""

import logging

import uvicorn

from .config import get_config
from .engine import DisputeEngine
from .server import create_app


def main():
    """Main entry point for the arbiter service."""
    config = get_config()

    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logger = logging.getLogger(__name__)
    logger.info(f"Starting Pledge Arbiter on {config.HOST}:{config.PORT}")

    app = create_app(DisputeEngine.from_config(config))
    uvicorn.run(app, host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    main()
