"""
WA Sender Runtime - Logging Setup

Process-wide logging to a log file and stdout.
"""

import logging
import os
import sys

from wa_sender.config import Settings, settings as default_settings

LOG_FORMAT = '[%(asctime)s] %(levelname)s: %(message)s'


def configure_logging(settings: Settings = default_settings) -> None:
    """Configure root logging once for the service"""
    handlers = [logging.StreamHandler(sys.stdout)]

    # Ensure logs directory exists
    if settings.LOG_DIR:
        os.makedirs(settings.LOG_DIR, exist_ok=True)
        log_file = os.path.join(settings.LOG_DIR, 'wa-sender.log')
        handlers.insert(0, logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )
