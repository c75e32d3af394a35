"""Command-issuer side: publish relay records and collect their outcomes."""

from .client import HttpRelayStore
from .queue import (
    ActionRequest,
    OutcomeSource,
    RelayOutcome,
    RelayQueue,
    RollRequest,
    create_relay_queue,
    describe_outcome,
)
from .turn_feed import TurnFeed

__all__ = [
    "ActionRequest",
    "create_relay_queue",
    "describe_outcome",
    "HttpRelayStore",
    "OutcomeSource",
    "RelayOutcome",
    "RelayQueue",
    "RollRequest",
    "TurnFeed",
]
