"""Network and process settings, overridable from the environment."""

import os

DEFAULT_HOST: str = os.environ.get("QUIZ_ARENA_HOST") or "0.0.0.0"
DEFAULT_PORT: int = int(os.environ.get("QUIZ_ARENA_PORT") or 8000)
DEFAULT_LOG_LEVEL: str = (os.environ.get("QUIZ_ARENA_LOG_LEVEL") or "INFO").upper()
