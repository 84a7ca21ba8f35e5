from __future__ import annotations

import asyncio
from threading import Thread

from conftest import TEACHER, mc
from quiz_arena.core.schemas import ResultView
from quiz_arena.realtime.broadcaster import (
    ANSWER_RESULT,
    COMPETITION_STARTED,
    COMPETITION_UPDATED,
    CURRENT_QUESTION,
    LEADERBOARD_UPDATED,
    RealtimeBroadcaster,
    competition_room,
    team_room,
)


def _drain(subscription) -> list[dict]:
    messages = []
    while not subscription.queue.empty():
        messages.append(subscription.queue.get_nowait())
    return messages


async def _settle() -> None:
    # Let callbacks scheduled with call_soon_threadsafe run.
    for _ in range(3):
        await asyncio.sleep(0)


def test_publish_reaches_only_room_subscribers():
    hub = RealtimeBroadcaster()

    async def scenario():
        inside = hub.subscribe(["competition:1"])
        outside = hub.subscribe(["competition:2"])
        reached = hub.publish("competition:1", COMPETITION_UPDATED, {"status": "WAITING"})
        await _settle()
        return reached, _drain(inside), _drain(outside)

    reached, inside, outside = asyncio.run(scenario())

    assert reached == 1
    assert inside == [{"event": COMPETITION_UPDATED, "room": "competition:1", "payload": {"status": "WAITING"}}]
    assert outside == []


def test_models_are_sent_as_json_ready_dicts():
    hub = RealtimeBroadcaster()

    async def scenario():
        subscription = hub.subscribe(["r"])
        view = ResultView(attempt_id="a1", score=80, status="COMPLETED", updated_at="2026-01-05T09:00:00")
        hub.publish("r", ANSWER_RESULT, view)
        await _settle()
        return _drain(subscription)

    [message] = asyncio.run(scenario())
    assert message["payload"] == {
        "attempt_id": "a1",
        "score": 80,
        "status": "COMPLETED",
        "updated_at": "2026-01-05T09:00:00",
    }


def test_publishes_from_worker_threads_keep_order():
    hub = RealtimeBroadcaster()

    async def scenario():
        subscription = hub.subscribe(["room"])

        def publish_many():
            for n in range(50):
                hub.publish("room", "tick", n)

        worker = Thread(target=publish_many)
        worker.start()
        await asyncio.get_running_loop().run_in_executor(None, worker.join)
        await _settle()
        return [m["payload"] for m in _drain(subscription)]

    assert asyncio.run(scenario()) == list(range(50))


def test_slow_subscribers_are_dropped():
    hub = RealtimeBroadcaster(queue_size=1)

    async def scenario():
        subscription = hub.subscribe(["room"])
        hub.publish("room", "tick", 1)
        hub.publish("room", "tick", 2)
        await _settle()
        return subscription

    subscription = asyncio.run(scenario())
    assert subscription.queue.qsize() == 1
    assert hub.subscriber_count("room") == 0


def test_start_announces_readiness_before_start(coordinator, broadcaster, make_test):
    test = make_test([mc("Pick A", ["A", "B"], ["A"])])
    competition = coordinator.create_competition(TEACHER, test.id)
    members = [coordinator.join(competition.code, name) for name in ("Xena", "Yuri")]
    for team, member in zip(competition.teams, members):
        coordinator.select_team(competition.id, team.id, member.participant_id)
        coordinator.select_player(competition.id, team.id, member.participant_id)
    team_x = competition.teams[0]

    async def scenario():
        room = broadcaster.subscribe([competition_room(competition.id)])
        team = broadcaster.subscribe([team_room(team_x.id)])
        coordinator.start(competition.id, TEACHER)
        coordinator.submit_answer(members[0].participant_id, test.questions[0].id, ["A"])
        await _settle()
        return _drain(room), _drain(team)

    room_events, team_events = asyncio.run(scenario())

    names = [m["event"] for m in room_events]
    assert names[:2] == [COMPETITION_UPDATED, COMPETITION_STARTED]
    assert all(team["is_ready"] for team in room_events[0]["payload"]["teams"])
    assert LEADERBOARD_UPDATED in names
    assert [m["event"] for m in team_events] == [CURRENT_QUESTION, ANSWER_RESULT]
    assert team_events[0]["payload"]["id"] == test.questions[0].id
    assert team_events[1]["payload"]["is_correct"] is True
