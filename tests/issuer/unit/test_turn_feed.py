import asyncio
from datetime import timedelta

from rollrelay.backend.models import TurnEvent, TurnEventStatus, TurnEventType
from rollrelay.backend.state import build_turn_event, utc_now
from rollrelay.backend.store import InMemoryRelayStore
from rollrelay.issuer.turn_feed import TurnFeed


def test_poll_once_posts_live_events_and_expires_stale_ones() -> None:
    store = InMemoryRelayStore()
    pairing = store.create_pairing(agent_ref="agent-1")
    stale = store.create_turn_event(
        build_turn_event(pairing.id, TurnEventType.TURN_START, 1, "Goblin", now=utc_now() - timedelta(minutes=2))
    )
    live = store.create_turn_event(build_turn_event(pairing.id, TurnEventType.TURN_START, 1, "Aria"))
    announced: list[TurnEvent] = []

    async def announce(event: TurnEvent) -> None:
        announced.append(event)

    posted = asyncio.run(TurnFeed(store, announce).poll_once())

    assert posted == 1
    assert [event.combatant_name for event in announced] == ["Aria"]
    assert store.list_turn_events(TurnEventStatus.EXPIRED)[0].id == stale.id
    assert store.list_turn_events(TurnEventStatus.POSTED)[0].id == live.id


def test_failing_announcement_marks_event_failed_and_continues() -> None:
    store = InMemoryRelayStore()
    pairing = store.create_pairing(agent_ref="agent-1")
    store.create_turn_event(build_turn_event(pairing.id, TurnEventType.COMBAT_START, 1))
    store.create_turn_event(build_turn_event(pairing.id, TurnEventType.TURN_START, 1, "Aria"))

    async def announce(event: TurnEvent) -> None:
        if event.event_type == TurnEventType.COMBAT_START:
            raise RuntimeError("channel gone")

    posted = asyncio.run(TurnFeed(store, announce, pairing_id=pairing.id).poll_once())

    assert posted == 1
    assert len(store.list_turn_events(TurnEventStatus.FAILED)) == 1
    assert store.list_turn_events(TurnEventStatus.PENDING) == []


def test_feed_task_starts_and_stops() -> None:
    store = InMemoryRelayStore()
    pairing = store.create_pairing(agent_ref="agent-1")
    store.create_turn_event(build_turn_event(pairing.id, TurnEventType.ROUND_CHANGE, 2))
    seen: list[int] = []

    async def announce(event: TurnEvent) -> None:
        seen.append(event.round)

    async def _run() -> None:
        feed = TurnFeed(store, announce, poll_interval_s=0.01)
        await feed.start()
        await asyncio.sleep(0.05)
        await feed.stop()

    asyncio.run(_run())

    assert seen == [2]
