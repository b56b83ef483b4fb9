import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

DEFAULT_SESSION_PATH = "./bot_sessions"
DEFAULT_DB_PATH = "data/contacts.db"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def load_env() -> None:
    """Load .env from the working directory if present.

    Values already set in the process environment win.
    """
    env_path = Path.cwd() / ".env"
    if not env_path.exists():
        return
    load_dotenv(dotenv_path=env_path, override=False)


@dataclass(frozen=True)
class Settings:
    """Run configuration, read once and passed to components explicitly."""

    session_path: Path = Path(DEFAULT_SESSION_PATH)
    db_path: Path = Path(DEFAULT_DB_PATH)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        log_level = (env.get("LOG_LEVEL") or "INFO").upper()
        if log_level not in LOG_LEVELS:
            raise SystemExit(f"Invalid LOG_LEVEL: {env.get('LOG_LEVEL')!r}; expected one of {', '.join(LOG_LEVELS)}")
        return cls(
            session_path=Path(env.get("SESSION_PATH") or DEFAULT_SESSION_PATH),
            db_path=Path(env.get("CONTACTS_DB") or DEFAULT_DB_PATH),
            log_level=log_level,
        )
