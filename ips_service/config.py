import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

from dotenv import load_dotenv

load_dotenv()

# Which record source backs the service: "relational" or "document"
IPS_STORE = os.getenv("IPS_STORE", "relational").lower()

DATABASE_PATH = os.getenv("DATABASE_PATH", "ips.db")
DATABASE_URL = os.getenv("DATABASE_URL", "")
DATABASE_MAX_CONNECTIONS = int(os.getenv("DATABASE_MAX_CONNECTIONS", "5"))
DATABASE_ACQUIRE_TIMEOUT = float(os.getenv("DATABASE_ACQUIRE_TIMEOUT", "10"))

# Discrete connection parameters, used when DATABASE_URL is not set
DB_HOST = os.getenv("DB_HOST", "")
DB_NAME = os.getenv("DB_NAME", "")
DB_USER = os.getenv("DB_USER", "")
DB_PASSWORD = os.getenv("DB_PASSWORD", "")

SEED_DEMO_SUMMARIES = os.getenv("SEED_DEMO_SUMMARIES", "false").lower() in ("1", "true", "yes", "on")
RECENT_SUMMARIES_LIMIT = int(os.getenv("RECENT_SUMMARIES_LIMIT", "10"))

BASE_DIR = Path(__file__).resolve().parent
TEMPLATES_DIR = BASE_DIR / "templates"

STORE_KINDS = ("relational", "document")


def build_database_url() -> str:
    """Resolve the connection string, or "" for the default SQLite file."""
    if DATABASE_URL:
        return DATABASE_URL
    if DB_HOST and DB_NAME and DB_USER:
        # Credentials may contain URL delimiters such as "@" or "/"
        return f"postgresql://{quote(DB_USER, safe='')}:{quote(DB_PASSWORD, safe='')}@{DB_HOST}/{DB_NAME}"
    return ""


@dataclass(frozen=True)
class StoreSettings:
    """Construction-time configuration for a store handle."""

    store: str = "relational"
    database_url: str = ""
    database_path: str = "ips.db"
    max_connections: int = 5
    acquire_timeout: float = 10.0

    def __post_init__(self) -> None:
        if self.store not in STORE_KINDS:
            raise ValueError(f"Unknown IPS_STORE {self.store!r}; expected one of {STORE_KINDS}")
        if self.max_connections < 1:
            raise ValueError("max_connections must be at least 1")

    @classmethod
    def from_env(cls) -> "StoreSettings":
        return cls(
            store=IPS_STORE,
            database_url=build_database_url(),
            database_path=DATABASE_PATH,
            max_connections=DATABASE_MAX_CONNECTIONS,
            acquire_timeout=DATABASE_ACQUIRE_TIMEOUT,
        )
