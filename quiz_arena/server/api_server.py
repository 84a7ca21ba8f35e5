"""FastAPI server exposing tests, attempts and live competitions."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import datetime
import logging
from threading import Thread
from typing import Any, Callable

from fastapi import Depends, FastAPI, Header, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from quiz_arena.constants.about import APP_ABOUT_TEXT, APP_LICENSE, APP_NAME, APP_VERSION
from quiz_arena.constants.network_constants import DEFAULT_HOST, DEFAULT_PORT
from quiz_arena.constants.quiz_constants import MIN_TEAMS
from quiz_arena.core.competition_coordinator import CompetitionCoordinator
from quiz_arena.core.errors import ArenaError, ForbiddenError
from quiz_arena.core.models import AttemptMode
from quiz_arena.core.name_assigner import NameAssigner
from quiz_arena.core.notifications import BestEffortNotifier
from quiz_arena.core.schemas import (
    AnswerInput,
    AnswerResultView,
    AttemptSnapshot,
    AttemptStartView,
    ChatMessageView,
    CompetitionPreview,
    CompetitionView,
    CreatorResultsView,
    CurrentQuestionView,
    ExamResultsView,
    JoinView,
    LeaderboardView,
    PendingAnswerView,
    PracticeResultsView,
    ProgressView,
    QuestionDraft,
    QuestionUpdate,
    QuestionView,
    ResultView,
    SubmissionView,
    TeamChatView,
    TeamProgressView,
    TestDraft,
    TestSettingsUpdate,
    TestView,
)
from quiz_arena.core.services.attempt_service import AttemptService
from quiz_arena.core.services.test_repository import TestRepository
from quiz_arena.core.snapshot_exporter import snapshot_file_name
from quiz_arena.realtime.broadcaster import (
    COMPETITION_JOINED,
    COMPETITION_STARTED,
    COMPETITION_UPDATED,
    TEAM_MESSAGE,
    RealtimeBroadcaster,
    Subscription,
    competition_room,
    make_message,
    team_room,
)
from quiz_arena.storage.database import Database
from quiz_arena.utils.clock import utcnow

logger = logging.getLogger(__name__)


class StartAttemptPayload(BaseModel):
    mode: AttemptMode = AttemptMode.PRACTICE


class SubmitPayload(BaseModel):
    answers: list[AnswerInput] = Field(default_factory=list)


class ReviewPayload(BaseModel):
    is_correct: bool


class CreateCompetitionPayload(BaseModel):
    test_id: str
    max_teams: int = MIN_TEAMS
    title: str | None = None


class JoinPayload(BaseModel):
    """Payload schema for joining a competition by its code."""

    code: str
    display_name: str | None = None


class TeamChoicePayload(BaseModel):
    team_id: str
    participant_id: str


class CompetitionAnswerPayload(BaseModel):
    question_id: str
    selected_answers: list[str] = Field(default_factory=list)
    user_answer: str | None = None


class TeamMessagePayload(BaseModel):
    participant_id: str
    message: str


@dataclass(slots=True)
class ArenaServices:
    """Everything the routes talk to, built around one database."""

    tests: TestRepository
    attempts: AttemptService
    competitions: CompetitionCoordinator

    @classmethod
    def build(
        cls,
        database: Database,
        broadcaster: RealtimeBroadcaster | None = None,
        notifier: BestEffortNotifier | None = None,
        name_assigner: NameAssigner | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "ArenaServices":
        return cls(
            tests=TestRepository(database),
            attempts=AttemptService(database, notifier=notifier, clock=clock),
            competitions=CompetitionCoordinator(
                database,
                broadcaster=broadcaster,
                name_assigner=name_assigner,
                clock=clock,
            ),
        )


def _get_services_dependency(services: ArenaServices):
    def dependency() -> ArenaServices:
        return services

    return dependency


def _actor_id(x_user_id: str | None = Header(default=None)) -> str:
    """Identity supplied by the authentication layer in front of the API."""
    if not x_user_id:
        raise ForbiddenError("Authentication required")
    return x_user_id


def _optional_actor_id(x_user_id: str | None = Header(default=None)) -> str | None:
    return x_user_id or None


def _error_body(exc: ArenaError) -> dict[str, str]:
    return {"category": exc.category, "detail": exc.detail}


def create_api_app(
    database: Database,
    broadcaster: RealtimeBroadcaster | None = None,
    notifier: BestEffortNotifier | None = None,
    name_assigner: NameAssigner | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """Create a FastAPI application wired to services over the provided database."""
    app = FastAPI(
        title=f"{APP_NAME} API",
        version=APP_VERSION,
        description=APP_ABOUT_TEXT,
        license_info={"name": APP_LICENSE},
    )
    services = ArenaServices.build(
        database,
        broadcaster=broadcaster,
        notifier=notifier,
        name_assigner=name_assigner,
        clock=clock,
    )
    services_dep = _get_services_dependency(services)
    hub = services.competitions.broadcaster

    @app.exception_handler(ArenaError)
    async def handle_arena_error(request: Request, exc: ArenaError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc))

    # --- Tests ---

    @app.post("/tests", status_code=201)
    def create_test(
        payload: TestDraft,
        actor_id: str = Depends(_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> TestView:
        return arena.tests.create_test(actor_id, payload)

    @app.get("/tests")
    def list_my_tests(
        actor_id: str = Depends(_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> list[TestView]:
        return arena.tests.list_tests_by_creator(actor_id)

    @app.get("/tests/{test_id}")
    def get_test(
        test_id: str,
        actor_id: str | None = Depends(_optional_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> TestView:
        view = arena.tests.get_test(test_id, include_answers=False)
        if actor_id is not None and actor_id == view.creator_id:
            view = arena.tests.get_test(test_id, include_answers=True)
        return view

    @app.patch("/tests/{test_id}")
    def update_test(
        test_id: str,
        payload: TestSettingsUpdate,
        actor_id: str = Depends(_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> TestView:
        return arena.tests.update_test(test_id, actor_id, payload)

    @app.delete("/tests/{test_id}", status_code=204)
    def delete_test(
        test_id: str,
        actor_id: str = Depends(_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> Response:
        arena.tests.delete_test(test_id, actor_id)
        return Response(status_code=204)

    @app.post("/tests/{test_id}/questions", status_code=201)
    def add_question(
        test_id: str,
        payload: QuestionDraft,
        actor_id: str = Depends(_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> QuestionView:
        return arena.tests.add_question(test_id, actor_id, payload)

    @app.patch("/questions/{question_id}")
    def update_question(
        question_id: str,
        payload: QuestionUpdate,
        actor_id: str = Depends(_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> QuestionView:
        return arena.tests.update_question(question_id, actor_id, payload)

    @app.delete("/questions/{question_id}", status_code=204)
    def delete_question(
        question_id: str,
        actor_id: str = Depends(_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> Response:
        arena.tests.delete_question(question_id, actor_id)
        return Response(status_code=204)

    @app.get("/tests/{test_id}/export")
    def export_test(
        test_id: str,
        response: Response,
        include_answers: bool = True,
        actor_id: str = Depends(_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> TestView:
        snapshot = arena.tests.export_test_snapshot(test_id, actor_id, include_answers=include_answers)
        _mark_download(response, snapshot_file_name("test", snapshot.id))
        return snapshot

    # --- Attempts ---

    @app.post("/tests/{test_id}/attempts", status_code=201)
    def start_attempt(
        test_id: str,
        payload: StartAttemptPayload,
        actor_id: str = Depends(_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> AttemptStartView:
        return arena.attempts.start_attempt(actor_id, test_id, payload.mode)

    @app.put("/attempts/{attempt_id}/progress")
    def save_progress(
        attempt_id: str,
        payload: AnswerInput,
        actor_id: str = Depends(_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> ProgressView:
        return arena.attempts.save_progress(actor_id, attempt_id, payload)

    @app.post("/attempts/{attempt_id}/submit")
    def submit_attempt(
        attempt_id: str,
        payload: SubmitPayload,
        actor_id: str = Depends(_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> SubmissionView:
        return arena.attempts.submit_attempt(actor_id, attempt_id, payload.answers)

    @app.get("/attempts/{attempt_id}/results", response_model=None)
    def get_results(
        attempt_id: str,
        actor_id: str = Depends(_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> PracticeResultsView | ExamResultsView | CreatorResultsView:
        return arena.attempts.get_results(attempt_id, actor_id)

    @app.get("/attempts/{attempt_id}/export")
    def export_attempt(
        attempt_id: str,
        response: Response,
        actor_id: str = Depends(_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> AttemptSnapshot:
        snapshot = arena.attempts.export_attempt_snapshot(attempt_id)
        if actor_id not in (snapshot.user_id, snapshot.test.creator_id):
            raise ForbiddenError("Not allowed to export this attempt")
        _mark_download(response, snapshot_file_name("attempt", snapshot.attempt_id))
        return snapshot

    @app.post("/answers/{answer_id}/review")
    def review_answer(
        answer_id: str,
        payload: ReviewPayload,
        actor_id: str = Depends(_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> ResultView:
        return arena.attempts.review_answer(actor_id, answer_id, payload.is_correct)

    @app.get("/reviews/pending")
    def pending_reviews(
        actor_id: str = Depends(_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> list[PendingAnswerView]:
        return arena.attempts.pending_answers(actor_id)

    # --- Competitions ---

    @app.post("/competitions", status_code=201)
    def create_competition(
        payload: CreateCompetitionPayload,
        actor_id: str = Depends(_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> CompetitionView:
        return arena.competitions.create_competition(
            actor_id, payload.test_id, max_teams=payload.max_teams, title=payload.title
        )

    @app.get("/competitions/code/{code}")
    def find_competition(code: str, arena: ArenaServices = Depends(services_dep)) -> CompetitionPreview:
        return arena.competitions.find_by_code(code)

    @app.post("/competitions/join", status_code=201)
    def join_competition(
        payload: JoinPayload,
        actor_id: str | None = Depends(_optional_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> JoinView:
        return arena.competitions.join(payload.code, display_name=payload.display_name, user_id=actor_id)

    @app.get("/competitions/{competition_id}")
    def get_competition(
        competition_id: str,
        viewer_id: str | None = None,
        actor_id: str | None = Depends(_optional_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> CompetitionView:
        return arena.competitions.get_competition(competition_id, actor_id or viewer_id)

    @app.post("/competitions/{competition_id}/select-team")
    def select_team(
        competition_id: str,
        payload: TeamChoicePayload,
        arena: ArenaServices = Depends(services_dep),
    ) -> CompetitionView:
        return arena.competitions.select_team(competition_id, payload.team_id, payload.participant_id)

    @app.post("/competitions/{competition_id}/select-player")
    def select_player(
        competition_id: str,
        payload: TeamChoicePayload,
        arena: ArenaServices = Depends(services_dep),
    ) -> CompetitionView:
        return arena.competitions.select_player(competition_id, payload.team_id, payload.participant_id)

    @app.post("/competitions/{competition_id}/start")
    def start_competition(
        competition_id: str,
        actor_id: str = Depends(_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> CompetitionView:
        return arena.competitions.start(competition_id, actor_id)

    @app.post("/competitions/{competition_id}/cancel")
    def cancel_competition(
        competition_id: str,
        actor_id: str = Depends(_actor_id),
        arena: ArenaServices = Depends(services_dep),
    ) -> CompetitionView:
        return arena.competitions.cancel(competition_id, actor_id)

    @app.get("/competitions/{competition_id}/leaderboard")
    def get_leaderboard(competition_id: str, arena: ArenaServices = Depends(services_dep)) -> LeaderboardView:
        return arena.competitions.leaderboard(competition_id)

    @app.get("/participants/{participant_id}/current-question")
    def get_current_question(
        participant_id: str,
        arena: ArenaServices = Depends(services_dep),
    ) -> CurrentQuestionView | None:
        return arena.competitions.current_question(participant_id)

    @app.post("/participants/{participant_id}/answers", status_code=201)
    def submit_competition_answer(
        participant_id: str,
        payload: CompetitionAnswerPayload,
        arena: ArenaServices = Depends(services_dep),
    ) -> AnswerResultView:
        return arena.competitions.submit_answer(
            participant_id,
            payload.question_id,
            selected_answers=payload.selected_answers,
            user_answer=payload.user_answer,
        )

    @app.get("/participants/{participant_id}/progress")
    def get_team_progress(participant_id: str, arena: ArenaServices = Depends(services_dep)) -> TeamProgressView:
        return arena.competitions.team_progress(participant_id)

    @app.post("/competitions/{competition_id}/teams/{team_id}/messages", status_code=201)
    def send_team_message(
        competition_id: str,
        team_id: str,
        payload: TeamMessagePayload,
        arena: ArenaServices = Depends(services_dep),
    ) -> ChatMessageView:
        return arena.competitions.send_team_message(competition_id, team_id, payload.participant_id, payload.message)

    @app.get("/competitions/{competition_id}/teams/{team_id}/messages")
    def get_team_chat(
        competition_id: str,
        team_id: str,
        participant_id: str,
        arena: ArenaServices = Depends(services_dep),
    ) -> TeamChatView:
        return arena.competitions.team_chat(competition_id, team_id, participant_id)

    # --- Realtime ---

    @app.websocket("/ws/competitions/{competition_id}")
    async def competition_socket(websocket: WebSocket, competition_id: str, participant_id: str) -> None:
        coordinator = services.competitions
        await websocket.accept()
        try:
            snapshot, team_id = await run_in_threadpool(
                coordinator.participant_context, competition_id, participant_id
            )
        except ArenaError as exc:
            await websocket.send_json({"event": "error", "room": None, "payload": _error_body(exc)})
            await websocket.close(code=1008)
            return

        room = competition_room(competition_id)
        subscription = hub.subscribe(_rooms_for(room, team_id))
        await websocket.send_json(make_message(COMPETITION_JOINED, room, snapshot))
        pump = asyncio.create_task(_pump_events(websocket, subscription, hub, room, participant_id))
        try:
            while True:
                frame = await websocket.receive_json()
                await _handle_client_frame(websocket, coordinator, competition_id, participant_id, frame)
        except WebSocketDisconnect:
            logger.debug("Participant %s disconnected from %s", participant_id, room)
        finally:
            hub.unsubscribe(subscription)
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
                await pump

    return app


def _mark_download(response: Response, file_name: str) -> None:
    response.headers["Content-Disposition"] = f'attachment; filename="{file_name}"'


def _rooms_for(room: str, team_id: str | None) -> list[str]:
    return [room, team_room(team_id)] if team_id else [room]


def _team_of(payload: dict[str, Any] | None, participant_id: str) -> str | None:
    for team in (payload or {}).get("teams", []):
        if any(member["id"] == participant_id for member in team.get("participants", [])):
            return team["id"]
    return None


async def _pump_events(
    websocket: WebSocket,
    subscription: Subscription,
    hub: RealtimeBroadcaster,
    room: str,
    participant_id: str,
) -> None:
    """Forward queued room events to the socket, following team switches."""
    while True:
        message = await subscription.queue.get()
        if message["event"] in (COMPETITION_UPDATED, COMPETITION_STARTED):
            hub.set_rooms(subscription, _rooms_for(room, _team_of(message["payload"], participant_id)))
        await websocket.send_json(message)


async def _handle_client_frame(
    websocket: WebSocket,
    coordinator: CompetitionCoordinator,
    competition_id: str,
    participant_id: str,
    frame: Any,
) -> None:
    if not isinstance(frame, dict) or frame.get("event") != TEAM_MESSAGE:
        await websocket.send_json(
            {"event": "error", "room": None, "payload": {"category": "validation_error", "detail": "Unsupported frame"}}
        )
        return
    try:
        _, team_id = await run_in_threadpool(coordinator.participant_context, competition_id, participant_id)
        if team_id is None:
            raise ForbiddenError("Participant not in this team")
        await run_in_threadpool(
            coordinator.send_team_message, competition_id, team_id, participant_id, str(frame.get("message", ""))
        )
    except ArenaError as exc:
        await websocket.send_json({"event": "error", "room": None, "payload": _error_body(exc)})


def start_api_server(
    database: Database,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
) -> Thread:
    """Start the FastAPI server in a background daemon thread."""
    app = create_api_app(database)
    config = uvicorn.Config(app=app, host=host, port=port, log_config=None)
    server = uvicorn.Server(config)

    def run_server() -> None:
        server.run()

    thread = Thread(target=run_server, name="QuizArenaApiServer", daemon=True)
    thread.start()
    return thread
