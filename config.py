"""
Configuration for the Charter Commerce Engine.
Values are read from the environment (and a local .env file) once at import.
"""

import os
import logging
from dotenv import load_dotenv

load_dotenv()

_base_dir = os.path.abspath(os.path.dirname(__file__))
_instance_dir = os.path.join(_base_dir, 'instance')
_default_db = f"sqlite:///{os.path.join(_instance_dir, 'commerce.db')}"

DATABASE_URL = os.getenv("DATABASE_URL", _default_db)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD")
QUOTE_REQUEST_TTL_HOURS = int(os.getenv("QUOTE_REQUEST_TTL_HOURS", "24"))

# Platform commission on an operator's base price
COMMISSION_RATE = 0.03

MIGRATION_BATCH_SIZE = int(os.getenv("MIGRATION_BATCH_SIZE", "100"))
MIGRATION_COOLDOWN_SECONDS = float(os.getenv("MIGRATION_COOLDOWN_SECONDS", "1.0"))
MIGRATION_WORKERS = int(os.getenv("MIGRATION_WORKERS", "4"))

NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL")
NOTIFY_TIMEOUT_SECONDS = float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "5"))

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def ensure_instance_dir():
    """Create the instance/ folder used by the default SQLite database."""
    os.makedirs(_instance_dir, exist_ok=True)


def configure_logging(level=None):
    """Console logging for the app and the maintenance CLI."""
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO),
        format=LOG_FORMAT,
    )
