"""Ranking rules for competition leaderboards."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(slots=True)
class TeamStanding:
    """Inputs needed to place one team on the leaderboard."""

    team_id: str
    score: int
    completed_at: datetime | None = None


def rank_standings(standings: list[TeamStanding]) -> list[TeamStanding]:
    """Sort by score descending, then earlier completion; unfinished teams last."""
    return sorted(
        standings,
        key=lambda s: (-s.score, s.completed_at is None, s.completed_at or datetime.max),
    )


def positions(standings: list[TeamStanding]) -> dict[str, int]:
    """Map team id to its 1-based leaderboard position."""
    return {standing.team_id: index for index, standing in enumerate(rank_standings(standings), start=1)}
