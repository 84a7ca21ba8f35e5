"""Persistence configuration constants."""

import os

DEFAULT_DATABASE_URL: str = os.environ.get("QUIZ_ARENA_DATABASE_URL") or "sqlite:///quiz_arena.db"
SQLITE_BUSY_TIMEOUT_SECONDS: int = 30
