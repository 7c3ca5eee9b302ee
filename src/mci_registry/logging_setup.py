# src/mci_registry/logging_setup.py
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


def setup_logging(config):
    """
    Configures the root logger based on the settings object.
    """
    try:
        log_settings = config.logging
    except AttributeError:
        print("Warning: 'logging' section not in config. Using basic logging.")
        logging.basicConfig(level=logging.INFO)
        return

    logger = logging.getLogger()
    logger.setLevel(log_settings.level.upper())

    # Clear existing handlers
    if logger.hasHandlers():
        logger.handlers.clear()

    formatter = logging.Formatter(log_settings.format)

    # 1. Console Handler (always on)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_settings.level.upper())
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # 2. Rotating File Handler (optional)
    if log_settings.log_to_file:
        log_file_path = Path(log_settings.log_file)
        log_file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file_path,
            maxBytes=log_settings.rotation_size_mb * 1024 * 1024,
            backupCount=log_settings.rotation_backup_count,
        )
        file_handler.setLevel(log_settings.level.upper())
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Quiet chatty client libraries unless we are debugging ourselves.
    if logger.level > logging.DEBUG:
        for noisy in ("botocore", "boto3", "urllib3", "httpx", "httpcore"):
            logging.getLogger(noisy).setLevel(logging.WARNING)

    logger.debug("Logging configured.")
