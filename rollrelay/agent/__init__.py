"""Bridge-agent side: execute relay records against a tabletop and track turns."""

from .bridge import ExecutionBridge
from .combat import CombatSession
from .initiative import InitiativeWatcher, parse_initiative
from .observers import ObserverRegistry, normalize_combatant_name
from .realtime import RealtimeListener, build_pairing_ws_url
from .tabletop import ChatEntry, ChatLog, DirectiveKind, ExecutionDirective, InlineRoll, LocalTabletop
from .turns import CombatPhase, Combatant, CombatantSource, TurnState, TurnTracker, TurnTransition

__all__ = [
    "build_pairing_ws_url",
    "ChatEntry",
    "ChatLog",
    "CombatPhase",
    "Combatant",
    "CombatantSource",
    "CombatSession",
    "DirectiveKind",
    "ExecutionBridge",
    "ExecutionDirective",
    "InitiativeWatcher",
    "InlineRoll",
    "LocalTabletop",
    "normalize_combatant_name",
    "ObserverRegistry",
    "parse_initiative",
    "RealtimeListener",
    "TurnState",
    "TurnTracker",
    "TurnTransition",
]
