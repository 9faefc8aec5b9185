"""Library configuration from environment."""
import os

from dotenv import load_dotenv

load_dotenv()

# Key derivation
PBKDF2_ITERATIONS = int(os.environ.get("FIELDVAULT_PBKDF2_ITERATIONS", 100_000))

# Secure store
STORE_PREFIX = os.environ.get("FIELDVAULT_STORE_PREFIX", "fieldvault_")
STORE_QUOTA_BYTES = int(os.environ.get("FIELDVAULT_STORE_QUOTA_BYTES", 5 * 1024 * 1024))  # 5 MiB
STORE_URL = os.environ.get("FIELDVAULT_STORE_URL", "sqlite://")
STORE_USAGE_WARN_PERCENT = 80.0

# Search
SEARCH_MIN_PREFIX = int(os.environ.get("FIELDVAULT_SEARCH_MIN_PREFIX", 2))
SEARCH_MIN_WORD = 3
OPE_TOLERANCE = float(os.environ.get("FIELDVAULT_OPE_TOLERANCE", 0.1))

LOG_LEVEL = os.environ.get("FIELDVAULT_LOG_LEVEL", "WARNING").upper()
