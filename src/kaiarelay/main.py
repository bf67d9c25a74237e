"""Main entry point - runs the relay API."""

import logging

import uvicorn

from kaiarelay.api.app import create_app
from kaiarelay.config import get_settings

logger = logging.getLogger(__name__)


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def main():
    """Main entry point."""
    settings = get_settings()
    configure_logging(settings.debug)

    logger.info("Starting kaiarelay...")
    logger.info(f"Environment: {settings.environment}, chain {settings.kaia_chain_id}")

    if not settings.has_fee_payer:
        logger.warning("KAIA_FEE_PAYER_PRIVATE_KEY not set - delegation endpoints disabled")

    app = create_app()
    logger.info(f"Starting API server on {settings.api_host}:{settings.api_port}")
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    main()
