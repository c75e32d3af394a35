import asyncio
import json

from rollrelay.agent.realtime import RealtimeListener, build_pairing_ws_url


def test_build_pairing_ws_url_switches_scheme_and_adds_key() -> None:
    assert build_pairing_ws_url("http://127.0.0.1:8000", "pair-1") == "ws://127.0.0.1:8000/ws/pairings/pair-1"
    assert (
        build_pairing_ws_url("https://relay.example.com/base/", "pair 1", service_key="s3cret&x")
        == "wss://relay.example.com/base/ws/pairings/pair%201?key=s3cret%26x"
    )


def test_only_record_created_messages_wake_the_agent() -> None:
    seen: list[dict] = []
    listener = RealtimeListener("ws://relay", seen.append)

    created = json.dumps({"type": "record.created", "record_id": "rec-1", "pairing_id": "pair-1", "kind": "roll"})

    assert listener.handle_message(created) is True
    assert listener.handle_message(json.dumps({"type": "pairing.state", "pairing": {}})) is False
    assert listener.handle_message("not json") is False
    assert listener.handle_message(json.dumps(["record.created"])) is False
    assert [m["record_id"] for m in seen] == ["rec-1"]


def test_reconnect_delay_doubles_up_to_the_cap() -> None:
    listener = RealtimeListener("ws://relay", lambda _message: None, initial_delay_s=1.0, max_delay_s=8.0)

    delays = [listener.next_delay() for _ in range(6)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 8.0, 8.0]
    assert listener.reconnect_delay_s == 8.0


class _HandshakeTimeoutListener(RealtimeListener):
    def __init__(self) -> None:
        super().__init__("ws://relay", lambda _message: None, initial_delay_s=0.001, max_delay_s=0.002)
        self.attempts = 0

    async def _listen_once(self) -> None:
        self.attempts += 1
        raise asyncio.TimeoutError()


def test_handshake_timeouts_are_retried() -> None:
    listener = _HandshakeTimeoutListener()

    async def _run() -> None:
        await listener.start()
        await asyncio.sleep(0.05)
        await listener.stop()

    asyncio.run(_run())

    assert listener.attempts >= 2
