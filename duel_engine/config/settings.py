"""
Engine Settings

Centralized configuration for the scheduling engine.
All values are loaded from environment variables (a local .env is honoured).
"""
import os
from typing import Tuple

from dotenv import load_dotenv

load_dotenv()


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


def get_int_env(key: str, default: int) -> int:
    """Get an integer value from environment variable, falling back on parse errors."""
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


def get_float_env(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


def get_int_list_env(key: str, default: Tuple[int, ...]) -> Tuple[int, ...]:
    """Comma-separated integers, e.g. "40,60,80"."""
    value = os.getenv(key)
    if not value:
        return default
    try:
        return tuple(int(part) for part in value.split(",") if part.strip())
    except ValueError:
        return default


class Settings:
    """
    Engine settings.

    To add a new setting:
    1. Add it here as a class attribute
    2. Load it from an environment variable
    3. Read it through the module-level `settings` instance
    """

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./duel_engine.db")
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")

    # Tick loops
    ENABLE_TICK_LOOPS: bool = get_bool_env("ENABLE_TICK_LOOPS", True)
    CHALLENGE_TICK_SECONDS: float = get_float_env("CHALLENGE_TICK_SECONDS", 30.0)
    ARENA_TICK_SECONDS: float = get_float_env("ARENA_TICK_SECONDS", 60.0)

    # External submission source
    SUBMISSION_TIMEOUT_SECONDS: float = get_float_env("SUBMISSION_TIMEOUT_SECONDS", 10.0)
    CODEFORCES_API_BASE_URL: str = os.getenv("CODEFORCES_API_BASE_URL", "https://codeforces.com/api")
    CODEFORCES_PAGE_SIZE: int = get_int_env("CODEFORCES_PAGE_SIZE", 100)
    CODEFORCES_MAX_PAGES: int = get_int_env("CODEFORCES_MAX_PAGES", 10)
    PROBLEM_CATALOG_TTL_SECONDS: int = get_int_env("PROBLEM_CATALOG_TTL_SECONDS", 3600)

    # Challenges
    CHALLENGE_VALID_LENGTHS: Tuple[int, ...] = get_int_list_env("CHALLENGE_VALID_LENGTHS", (40, 60, 80))
    CHALLENGE_MIN_PARTICIPANTS: int = get_int_env("CHALLENGE_MIN_PARTICIPANTS", 1)
    CHALLENGE_MAX_PARTICIPANTS: int = get_int_env("CHALLENGE_MAX_PARTICIPANTS", 10)
    CHALLENGE_SUMMARY_BUCKET_SECONDS: int = get_int_env("CHALLENGE_SUMMARY_BUCKET_SECONDS", 60)
    RECENT_CHALLENGES_LIMIT: int = get_int_env("RECENT_CHALLENGES_LIMIT", 5)

    # Ratings
    DEFAULT_RATING: int = get_int_env("DEFAULT_RATING", 1500)

    # Tournaments
    TOURNAMENT_MIN_PARTICIPANTS: int = get_int_env("TOURNAMENT_MIN_PARTICIPANTS", 2)
    HISTORY_PAGE_SIZE: int = get_int_env("HISTORY_PAGE_SIZE", 5)


settings = Settings()
