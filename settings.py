import os
import logging

from dotenv import load_dotenv

load_dotenv()

LOG_LEVEL_FROM_ENV = os.getenv("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL_FROM_ENV, logging.INFO)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# --- Vault ---
VAULT_PATH = os.getenv("SEALDOC_VAULT", "./vault")

# --- Key release ---
# Seconds a new envelope stays openable; 0 means no expiry
DEFAULT_TTL = int(os.getenv("SEALDOC_DEFAULT_TTL", "0"))


def configure_logging(level=None):
    logging.basicConfig(level=level or numeric_level, format=LOG_FORMAT)
