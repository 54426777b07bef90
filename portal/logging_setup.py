import logging
import os

from .config import Settings

PAYMENTS_LOGGER = "portal.payments"


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    if not settings.log_dir:
        return
    payments_logger = logging.getLogger(PAYMENTS_LOGGER)
    if not payments_logger.handlers:
        os.makedirs(settings.log_dir, exist_ok=True)
        handler = logging.FileHandler(os.path.join(settings.log_dir, "payments.log"))
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        payments_logger.addHandler(handler)
