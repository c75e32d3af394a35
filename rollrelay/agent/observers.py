"""Per-combatant turn observers (e.g. character sheet windows)."""

from __future__ import annotations

import logging
import re
from typing import Any, Protocol

from rollrelay.errors import ObserverUnreachableError


ACTIVATE_TURN = "activateTurn"
DEACTIVATE_TURN = "deactivateTurn"

_LEADING_DECORATION = re.compile(r"^[^\w]+")
_ITS_PREFIX = re.compile(r"^it['’]?s\s+", re.IGNORECASE)
_TURN_SUFFIX = re.compile(r"['’]s\s+turn\W*$", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")

logger = logging.getLogger(__name__)


def normalize_combatant_name(name: str | None) -> str:
    """Strip decoration and turn phrasing so "🔵 It's Test 2's turn" compares as "test 2"."""
    value = _LEADING_DECORATION.sub("", name or "")
    value = _ITS_PREFIX.sub("", value)
    value = _TURN_SUFFIX.sub("", value)
    return _WHITESPACE.sub(" ", value).strip().casefold()


class TurnObserver(Protocol):
    def send(self, message: dict[str, Any]) -> None:
        """Deliver a turn message; raise when the observer is gone."""


class ObserverRegistry:
    """Fans turn changes out to observers; exact normalized name match only."""

    def __init__(self) -> None:
        self._observers: dict[str, TurnObserver] = {}
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def names(self) -> list[str]:
        return list(self._observers)

    def register(self, name: str, observer: TurnObserver) -> None:
        if self._disposed:
            raise RuntimeError("Observer registry has been disposed")
        self._observers[name] = observer

    def unregister(self, name: str) -> None:
        self._observers.pop(name, None)

    def notify(self, active_name: str | None) -> list[str]:
        """Activate the matching observer, deactivate every other; return the activated names."""
        target = normalize_combatant_name(active_name) if active_name else None
        activated: list[str] = []
        for name, observer in list(self._observers.items()):
            key = normalize_combatant_name(name)
            is_active = bool(key) and key == target
            message = {"type": ACTIVATE_TURN if is_active else DEACTIVATE_TURN, "combatant": name}
            try:
                observer.send(message)
            except (ObserverUnreachableError, ConnectionError, RuntimeError) as exc:
                logger.info("observer_pruned", extra={"observer": name, "error": repr(exc)})
                self._observers.pop(name, None)
                continue
            if is_active:
                activated.append(name)
        return activated

    def dispose(self) -> None:
        self._observers.clear()
        self._disposed = True
