from __future__ import annotations

from typing import Optional


class PulseBotError(Exception):
    """Base class for errors raised by pulsebot components."""


class RPCError(PulseBotError):
    """A single JSON-RPC attempt failed (transport, HTTP status or RPC error object)."""

    def __init__(self, reason: str, *, url: Optional[str] = None) -> None:
        super().__init__(reason)
        self.reason = str(reason)
        self.url = url


class UnsupportedNetwork(PulseBotError):
    def __init__(self, network: str) -> None:
        super().__init__(f"Unsupported network: {network}")
        self.network = network


class AllEndpointsFailed(PulseBotError):
    def __init__(self, network: str, attempts: int, last_error: Optional[BaseException] = None) -> None:
        super().__init__(f"All RPC endpoints failed for {network} after {attempts} attempts: {last_error}")
        self.network = network
        self.attempts = int(attempts)
        self.last_error = last_error


class BotNotFound(PulseBotError):
    def __init__(self, bot_id: int) -> None:
        super().__init__(f"Bot with ID {bot_id} not found")
        self.bot_id = bot_id


class ValidationError(PulseBotError):
    def __init__(self, message: str, errors: Optional[dict] = None) -> None:
        super().__init__(message)
        self.errors = dict(errors or {})


class NotAuthorized(PulseBotError):
    pass


class BillingError(PulseBotError):
    pass


class DecryptionError(PulseBotError):
    pass
