"""Builds the lobby and live-play views of a competition."""

from __future__ import annotations

from quiz_arena.constants.quiz_constants import MIN_TEAMS
from quiz_arena.core.models import Competition, CompetitionParticipant, CompetitionStatus, Team
from quiz_arena.core.schemas import CompetitionPreview, CompetitionView, ParticipantView, TeamView


def ready_teams(competition: Competition) -> list[Team]:
    """Teams with at least one member and a selected player."""
    return [team for team in competition.teams if team.is_ready]


def can_start(competition: Competition) -> bool:
    return competition.status == CompetitionStatus.WAITING and len(ready_teams(competition)) >= MIN_TEAMS


def project_participant(participant: CompetitionParticipant) -> ParticipantView:
    team = participant.team
    return ParticipantView(
        id=participant.id,
        display_name=participant.display_name,
        is_guest=participant.is_guest,
        team_id=team.id if team is not None else None,
        team_name=team.name if team is not None else None,
        team_color=team.color if team is not None else None,
        is_selected=team is not None and team.selected_player_id == participant.id,
        joined_at=participant.joined_at,
    )


def project_team(team: Team) -> TeamView:
    participants = [project_participant(p) for p in team.participants]
    selected = next((p for p in participants if p.id == team.selected_player_id), None)
    return TeamView(
        id=team.id,
        name=team.name,
        color=team.color,
        participant_count=len(participants),
        participants=participants,
        selected_player=selected,
        is_ready=team.is_ready,
        score=team.score,
        position=team.position,
        attempt_id=team.attempt_id,
    )


def project_competition(competition: Competition, viewer_id: str | None = None) -> CompetitionView:
    """Full snapshot; ``viewer_id`` may be a user id or a guest's participant id."""
    participants = [project_participant(p) for p in competition.participants]
    participation = None
    if viewer_id:
        participation = next(
            (
                view
                for view, row in zip(participants, competition.participants)
                if row.user_id == viewer_id or row.id == viewer_id
            ),
            None,
        )
    return CompetitionView(
        id=competition.id,
        code=competition.code,
        title=competition.title,
        status=competition.status,
        max_teams=competition.max_teams,
        test_id=competition.test_id,
        test_title=competition.test.title,
        creator_id=competition.creator_id,
        teams=[project_team(team) for team in competition.teams],
        participants=participants,
        can_start=can_start(competition),
        is_creator=viewer_id is not None and competition.creator_id == viewer_id,
        user_participation=participation,
        started_at=competition.started_at,
        ended_at=competition.ended_at,
    )


def project_preview(competition: Competition) -> CompetitionPreview:
    return CompetitionPreview(
        id=competition.id,
        code=competition.code,
        title=competition.title,
        status=competition.status,
        test_title=competition.test.title,
        can_join=competition.status == CompetitionStatus.WAITING,
    )
