"""Error taxonomy shared by the issuer, the bridge agent and the relay service."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for every error raised by rollrelay."""


class ConfigurationError(RelayError):
    """The relay store is not configured, unreachable or rejects our credentials.

    Raised before any wait loop is entered; the message is shown to the user as is.
    """

    def __init__(self, message: str = "Extension integration not available.") -> None:
        super().__init__(message)


class StoreUnavailableError(ConfigurationError):
    """The relay store did not answer after the bounded transport retries."""


class StoreUnauthorizedError(ConfigurationError):
    """The relay store refused the configured service key."""


class TransientTransportError(RelayError):
    """A single HTTP attempt failed in a way worth retrying."""


class ExecutionError(RelayError):
    """A claimed record could not be executed by the bridge agent."""


class PairingError(RelayError):
    """Base class for pairing problems."""


class PairingCodeInvalidError(PairingError):
    def __init__(self, code: str) -> None:
        super().__init__(f"The code {code} was not found or has expired.")
        self.code = code


class PairingCodeUsedError(PairingError):
    def __init__(self, code: str) -> None:
        super().__init__(f"The code {code} has already been used.")
        self.code = code


class NotPairedError(PairingError):
    def __init__(self, issuer_ref: str) -> None:
        super().__init__(f"No extension connection found for {issuer_ref}.")
        self.issuer_ref = issuer_ref


class FormulaError(RelayError, ValueError):
    """Dice notation could not be parsed or exceeds the dice limits."""


class TurnOrderError(RelayError):
    """A turn transition was requested that the combat state cannot satisfy."""


class WatchTimeoutError(RelayError, TimeoutError):
    """A one-shot watch expired before a matching value arrived."""


class ObserverUnreachableError(RelayError):
    """A registered turn observer can no longer be reached."""
