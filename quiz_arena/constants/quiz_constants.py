"""Quiz-related constants shared across the attempt and competition layers."""

DEFAULT_TIME_LIMIT_MINUTES: int = 10
DEFAULT_MAX_ATTEMPTS: int = 1
DEFAULT_QUESTION_WEIGHT: int = 1
TIMEOUT_PENALTY_POINTS: int = 10

JOIN_CODE_LENGTH: int = 6
JOIN_CODE_ALPHABET: str = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
MIN_TEAMS: int = 2
MAX_TEAMS: int = 10
TEAM_NAME_TEMPLATE: str = "Team {number}"
TEAM_COLORS: tuple[str, ...] = (
    "#FF6B6B",
    "#4ECDC4",
    "#45B7D1",
    "#96CEB4",
    "#FECA57",
    "#FF9FF3",
    "#54A0FF",
    "#5F27CD",
    "#00D2D3",
    "#FF9F43",
)
TEAM_CHAT_HISTORY_LIMIT: int = 100
