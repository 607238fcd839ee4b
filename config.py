import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


SERVICE_NAME = "bitespeed-identity-service"

DB_NAME = os.getenv("BITESPEED_DB_PATH", "contacts.db")
SQLITE_TIMEOUT = float(os.getenv("BITESPEED_SQLITE_TIMEOUT", "5.0"))

LOG_LEVEL = os.getenv("BITESPEED_LOG_LEVEL", "INFO")

CHECK_INVARIANTS = _flag("BITESPEED_CHECK_INVARIANTS", True)
# repoint a demoted primary's own secondaries onto the surviving primary
CASCADE_MERGE = _flag("BITESPEED_CASCADE_MERGE", False)

HOST = os.getenv("BITESPEED_HOST", "0.0.0.0")
PORT = int(os.getenv("BITESPEED_PORT", "8000"))
