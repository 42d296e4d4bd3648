from dotenv import load_dotenv
load_dotenv()

import logging
import os
import sys

# ---------------- Client-side endpoints ----------------
API_BASE_URL = os.getenv("HOMEDIAG_API_URL", "http://127.0.0.1:8000").rstrip("/")
DIAGNOSE_API_URL = os.getenv("DIAGNOSE_API_URL", f"{API_BASE_URL}/api/diagnose")
PROVIDERS_API_URL = os.getenv("PROVIDERS_API_URL", f"{API_BASE_URL}/api/providers")
GEOCODE_API_URL = os.getenv("GEOCODE_API_URL", f"{API_BASE_URL}/api/geocode")

# ---------------- Claude ----------------
CLAUDE_MODEL = os.getenv("CLAUDE_MODEL", "claude-sonnet-4-5-20250929")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
CLAUDE_RESPONSE_MAX_TOKENS = int(os.getenv("CLAUDE_RESPONSE_MAX_TOKENS", "2048"))
CLAUDE_TEMPERATURE = float(os.getenv("CLAUDE_TEMPERATURE", "0.1"))

# ---------------- Google Maps ----------------
GOOGLE_MAPS_API_KEY = os.getenv("GOOGLE_MAPS_API_KEY")
GOOGLE_HTTP_TIMEOUT = float(os.getenv("GOOGLE_HTTP_TIMEOUT", "5"))
PROVIDER_SEARCH_RADIUS_M = int(os.getenv("PROVIDER_SEARCH_RADIUS_M", "25000"))
PROVIDER_MAX_RESULTS = max(1, int(os.getenv("PROVIDER_MAX_RESULTS", "6")))
PROVIDER_CONCURRENCY = max(1, int(os.getenv("PROVIDER_CONCURRENCY", "3")))

# ---------------- Session ----------------
STORE_READ_TIMEOUT = float(os.getenv("STORE_READ_TIMEOUT", "5"))
PENDING_IMAGE_TTL_SECONDS = int(os.getenv("PENDING_IMAGE_TTL_SECONDS", "3600"))
SIDE_HTTP_TIMEOUT = float(os.getenv("SIDE_HTTP_TIMEOUT", "30"))
FALLBACK_ADDRESS = "Current Location"
MAX_ATTACHMENTS = 5

# ---------------- Server ----------------
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def configure_logging(level: str = LOG_LEVEL) -> logging.Logger:
    logger = logging.getLogger("homediag")

    # Already configured (e.g. by the server and then the CLI)
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, level, logging.INFO))
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    logger.addHandler(handler)

    logger.debug("config: CLAUDE_MODEL = %s", CLAUDE_MODEL)
    logger.debug("config: ANTHROPIC_API_KEY present: %s", bool(ANTHROPIC_API_KEY))
    logger.debug("config: GOOGLE_MAPS_API_KEY present: %s", bool(GOOGLE_MAPS_API_KEY))
    logger.debug("config: DIAGNOSE_API_URL = %s", DIAGNOSE_API_URL)
    return logger
