"""Service for live play: team questions, answers, progress and standings."""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Callable

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from quiz_arena.core.competition_projector import project_participant
from quiz_arena.core.errors import ConflictError, ForbiddenError, NotFoundError
from quiz_arena.core.evaluator import evaluate
from quiz_arena.core.markdown_math_renderer import renderer
from quiz_arena.core.models import (
    AnswerStatus,
    Attempt,
    AttemptAnswer,
    AttemptStatus,
    Competition,
    CompetitionParticipant,
    CompetitionStatus,
    Question,
    Result,
    Team,
)
from quiz_arena.core.schemas import (
    AnswerResultView,
    CurrentQuestionView,
    LeaderboardEntry,
    LeaderboardView,
    TeamProgressView,
)
from quiz_arena.core.scoring import aggregate
from quiz_arena.core.services.scoreboard import TeamStanding, positions, rank_standings
from quiz_arena.storage.database import Database
from quiz_arena.utils.clock import utcnow

logger = logging.getLogger(__name__)


class GameSession:
    """Runs the shared per-team attempts of started competitions.

    Team score is the plain count of correct answers; the weighted percentage
    is only written to the attempt's result.
    """

    def __init__(self, database: Database, clock: Callable[[], datetime] = utcnow) -> None:
        self._db = database
        self._clock = clock

    def current_question(self, participant_id: str) -> CurrentQuestionView | None:
        """Next unanswered question for the participant's team, or None when done."""
        with self._db.transaction() as session:
            _, team = self._participant_team(session, participant_id)
            return self._next_question_view(session, team)

    def current_question_for_team(self, team_id: str) -> CurrentQuestionView | None:
        with self._db.transaction() as session:
            team = session.get(Team, team_id)
            if team is None:
                raise NotFoundError("Team not found")
            if team.attempt_id is None:
                raise ConflictError("Team is not playing in this competition")
            return self._next_question_view(session, team)

    def submit_answer(
        self,
        participant_id: str,
        question_id: str,
        selected_answers: list[str] | None = None,
        user_answer: str | None = None,
    ) -> AnswerResultView:
        """Grade the selected player's answer and advance the team.

        The competition row is locked first, so answers of one competition
        are applied one at a time and the last finishing team sees every
        other team's completion.
        """
        with self._db.transaction() as session:
            participant = session.get(CompetitionParticipant, participant_id)
            if participant is None:
                raise NotFoundError("Participant not found")
            competition = session.scalars(
                select(Competition).where(Competition.id == participant.competition_id).with_for_update()
            ).first()
            if competition.status != CompetitionStatus.IN_PROGRESS:
                raise ConflictError("Competition is not in progress")
            team = participant.team
            if team is None or team.attempt_id is None:
                raise ConflictError("Team is not playing in this competition")
            if team.selected_player_id != participant.id:
                raise ForbiddenError("Only the selected player can answer for the team")
            attempt = team.attempt
            if attempt.status != AttemptStatus.IN_PROGRESS:
                raise ConflictError("Team has already completed the test")

            question = session.get(Question, question_id)
            if question is None or question.test_id != attempt.test_id:
                raise NotFoundError("Question not found in this test")
            already = session.scalar(
                select(AttemptAnswer.id).where(
                    AttemptAnswer.attempt_id == attempt.id,
                    AttemptAnswer.question_id == question.id,
                )
            )
            if already is not None:
                raise ConflictError("Question already answered")

            now = self._clock()
            selected = list(selected_answers or [])
            is_correct = evaluate(question, selected, user_answer)
            session.add(
                AttemptAnswer(
                    attempt_id=attempt.id,
                    question_id=question.id,
                    selected_answers=selected,
                    user_answer=user_answer,
                    is_correct=is_correct,
                    status=AnswerStatus.PENDING if is_correct is None else AnswerStatus.CHECKED,
                    answered_at=now,
                )
            )
            # A concurrent insert for the same question fails here on the
            # unique (attempt, question) constraint.
            session.flush()

            team.score = session.scalar(
                select(func.count(AttemptAnswer.id)).where(
                    AttemptAnswer.attempt_id == attempt.id,
                    AttemptAnswer.is_correct.is_(True),
                )
            )
            answered = set(
                session.scalars(select(AttemptAnswer.question_id).where(AttemptAnswer.attempt_id == attempt.id))
            )
            questions = list(competition.test.questions)
            next_question = next((q for q in questions if q.id not in answered), None)

            test_completed = next_question is None
            competition_completed = False
            if test_completed:
                self._complete_attempt(session, attempt, questions, now)
                competition_completed = self._complete_competition_if_done(session, competition, now)
            session.flush()

            logger.info(
                "Team %s answered question %s (%s); score %d",
                team.name,
                question.id,
                "pending" if is_correct is None else ("correct" if is_correct else "incorrect"),
                team.score,
            )
            return AnswerResultView(
                team_id=team.id,
                question_id=question.id,
                is_correct=is_correct,
                team_score=team.score,
                next_question_id=next_question.id if next_question is not None else None,
                is_test_completed=test_completed,
                is_competition_completed=competition_completed,
            )

    def team_progress(self, participant_id: str) -> TeamProgressView:
        with self._db.transaction() as session:
            _, team = self._participant_team(session, participant_id)
            attempt = team.attempt
            answers = list(attempt.answers)
            total = len(attempt.test.questions)
            return TeamProgressView(
                team_id=team.id,
                team_name=team.name,
                total_questions=total,
                answered_questions=len(answers),
                correct_answers=sum(1 for a in answers if a.is_correct is True),
                total_score=team.score,
                is_completed=attempt.status == AttemptStatus.COMPLETED,
                progress=round(100 * len(answers) / total) if total else 0,
            )

    def leaderboard_for_team(self, team_id: str) -> LeaderboardView:
        with self._db.transaction() as session:
            team = session.get(Team, team_id)
            if team is None:
                raise NotFoundError("Team not found")
            competition_id = team.competition_id
        return self.leaderboard(competition_id)

    def leaderboard(self, competition_id: str) -> LeaderboardView:
        with self._db.transaction() as session:
            competition = session.get(Competition, competition_id)
            if competition is None:
                raise NotFoundError("Competition not found")

            playing = {team.id: team for team in competition.teams if team.attempt_id is not None}
            ranked = rank_standings(
                [
                    TeamStanding(team_id=team.id, score=team.score, completed_at=team.attempt.end_time)
                    for team in playing.values()
                ]
            )
            total_questions = len(competition.test.questions)
            entries: list[LeaderboardEntry] = []
            for position, standing in enumerate(ranked, start=1):
                team = playing[standing.team_id]
                attempt = team.attempt
                answers = list(attempt.answers)
                completion_time = None
                if attempt.end_time is not None:
                    completion_time = round((attempt.end_time - attempt.start_time).total_seconds() / 60)
                entries.append(
                    LeaderboardEntry(
                        position=position,
                        team_id=team.id,
                        team_name=team.name,
                        team_color=team.color,
                        score=team.score,
                        participants=[project_participant(p) for p in team.participants],
                        completion_time=completion_time,
                        correct_answers=sum(1 for a in answers if a.is_correct is True),
                        answered_questions=len(answers),
                        total_questions=total_questions,
                    )
                )
            return LeaderboardView(
                competition_id=competition.id,
                title=competition.title,
                test_title=competition.test.title,
                status=competition.status,
                started_at=competition.started_at,
                ended_at=competition.ended_at,
                teams=entries,
                total_participants=len(competition.participants),
            )

    # --- Helpers ---

    @staticmethod
    def _participant_team(session: Session, participant_id: str) -> tuple[CompetitionParticipant, Team]:
        participant = session.get(CompetitionParticipant, participant_id)
        if participant is None:
            raise NotFoundError("Participant not found")
        team = participant.team
        if team is None or team.attempt_id is None:
            raise ConflictError("Team is not playing in this competition")
        return participant, team

    @staticmethod
    def _next_question_view(session: Session, team: Team) -> CurrentQuestionView | None:
        attempt = team.attempt
        questions = list(attempt.test.questions)
        answered = set(
            session.scalars(select(AttemptAnswer.question_id).where(AttemptAnswer.attempt_id == attempt.id))
        )
        for number, question in enumerate(questions, start=1):
            if question.id in answered:
                continue
            return CurrentQuestionView(
                id=question.id,
                number=number,
                title=question.title,
                title_html=renderer.render_fragment(question.title),
                type=question.type,
                options=list(question.options or []),
                has_image=bool(question.image),
                image=question.image,
                weight=question.weight,
                total_questions=len(questions),
                answered_count=len(answered),
            )
        return None

    @staticmethod
    def _complete_attempt(session: Session, attempt: Attempt, questions: list[Question], now: datetime) -> None:
        claimed = session.execute(
            update(Attempt)
            .where(Attempt.id == attempt.id, Attempt.status == AttemptStatus.IN_PROGRESS)
            .values(status=AttemptStatus.COMPLETED, end_time=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            raise ConflictError("Team has already completed the test")
        session.refresh(attempt)
        weights = {question.id: question.weight for question in questions}
        session.add(
            Result(
                attempt_id=attempt.id,
                user_id=attempt.user_id,
                test_id=attempt.test_id,
                score=aggregate(attempt.answers, weights),
            )
        )

    @staticmethod
    def _complete_competition_if_done(session: Session, competition: Competition, now: datetime) -> bool:
        playing = [team for team in competition.teams if team.attempt_id is not None]
        if any(team.attempt.status != AttemptStatus.COMPLETED for team in playing):
            return False
        claimed = session.execute(
            update(Competition)
            .where(Competition.id == competition.id, Competition.status == CompetitionStatus.IN_PROGRESS)
            .values(status=CompetitionStatus.COMPLETED, ended_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            return False
        competition.status = CompetitionStatus.COMPLETED
        competition.ended_at = now
        ranks = positions(
            [TeamStanding(team_id=t.id, score=t.score, completed_at=t.attempt.end_time) for t in playing]
        )
        for team in playing:
            team.position = ranks[team.id]
        logger.info("Competition %s completed", competition.code)
        return True
