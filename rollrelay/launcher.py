"""Command-line launcher for the relay service, pairing codes and a local bridge agent."""

from __future__ import annotations

import argparse
import asyncio
import os
import subprocess
import sys
import time
from pathlib import Path
from urllib import error, request

from rollrelay.agent.bridge import ExecutionBridge
from rollrelay.agent.realtime import RealtimeListener, build_pairing_ws_url
from rollrelay.agent.tabletop import ChatLog, LocalTabletop
from rollrelay.backend.security import generate_token
from rollrelay.config import configure_logging, load_settings
from rollrelay.errors import RelayError
from rollrelay.issuer.client import HttpRelayStore

ROOT_DIR = Path(__file__).resolve().parents[1]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    settings = load_settings()
    default_server = settings.store_url or f"http://{settings.host}:{settings.port}"
    parser = argparse.ArgumentParser(description="Roll relay launcher")
    parser.add_argument("--role", choices=["server", "pair", "agent"], required=True)
    parser.add_argument("--server", default=default_server)
    parser.add_argument("--agent-ref", default="")
    parser.add_argument("--pairing-id", default="")
    parser.add_argument("--local-rolls", action="store_true")
    return parser.parse_args(argv)


def wait_for_server(server_url: str, timeout_s: float = 8.0) -> bool:
    start = time.time()
    while time.time() - start < timeout_s:
        try:
            with request.urlopen(f"{server_url}/docs", timeout=0.5) as response:
                if int(response.status) < 500:
                    return True
        except (error.URLError, TimeoutError):
            pass
        time.sleep(0.2)
    return False


def start_server(server_url: str) -> subprocess.Popen[str] | None:
    env = os.environ.copy()
    host_port = server_url.removeprefix("http://")
    host, port = host_port.split(":", maxsplit=1)
    command = [
        sys.executable,
        "-m",
        "uvicorn",
        "rollrelay.backend.api:app",
        "--host",
        host,
        "--port",
        port,
    ]
    process = subprocess.Popen(command, cwd=str(ROOT_DIR), env=env)
    if wait_for_server(server_url):
        return process
    process.terminate()
    return None


def run_server(server_url: str) -> int:
    process = start_server(server_url)
    if process is None:
        print("Relay service could not be started.", file=sys.stderr)
        return 1
    print(f"Relay service listening on {server_url}")
    try:
        return process.wait()
    except KeyboardInterrupt:
        process.terminate()
        return 0


def create_pairing(server_url: str, service_key: str | None, agent_ref: str) -> int:
    store = HttpRelayStore(base_url=server_url, service_key=service_key)
    try:
        pairing = store.create_pairing(agent_ref=agent_ref or generate_token())
    finally:
        store.close()
    print(f"Pairing code: {pairing.code}")
    print(f"Pairing id:   {pairing.id}")
    print(f"Expires at:   {pairing.expires_at.isoformat()}")
    return 0


async def run_agent(
    server_url: str,
    service_key: str | None,
    pairing_id: str,
    local_rolls: bool,
    watch_timeout_s: float,
) -> None:
    store = HttpRelayStore(base_url=server_url, service_key=service_key)
    chat_log = ChatLog()
    bridge = ExecutionBridge(
        store,
        pairing_id,
        tabletop=LocalTabletop(chat_log),
        chat_log=chat_log,
        local_rolls=local_rolls,
        watch_timeout_s=watch_timeout_s,
    )
    listener = RealtimeListener(
        build_pairing_ws_url(server_url, pairing_id, service_key),
        on_record=lambda _message: bridge.wake(),
    )
    await bridge.start()
    await listener.start()
    try:
        await asyncio.Event().wait()
    finally:
        await listener.stop()
        await bridge.stop()
        store.close()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = load_settings()
    configure_logging(settings.log_level)

    if args.role == "server":
        return run_server(args.server)

    if not wait_for_server(args.server):
        print("Relay service not reachable. Start it with --role server or uvicorn.", file=sys.stderr)
        return 1

    try:
        if args.role == "pair":
            return create_pairing(args.server, settings.service_key, args.agent_ref)
        if not args.pairing_id:
            print("--pairing-id is required for --role agent.", file=sys.stderr)
            return 2
        asyncio.run(
            run_agent(
                args.server,
                settings.service_key,
                args.pairing_id,
                args.local_rolls,
                settings.watch_timeout_s,
            )
        )
    except RelayError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
