"""Error types shared by the flows, the gateway and the router."""


class ListingBotError(Exception):
    """Base exception for the listing bot."""
    pass


class ValidationError(ListingBotError):
    """User input failed a step's rule.

    The message is the user-facing re-prompt text; flows send it back and
    keep the current step.
    """

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field


class NotFoundError(ListingBotError):
    """A referenced listing or user does not exist."""

    def __init__(self, kind: str, ident):
        super().__init__(f"{kind} {ident} not found")
        self.kind = kind
        self.ident = ident


class TransientInfraError(ListingBotError):
    """Database stayed unreachable after the bounded retry."""
    pass


class ConfigurationError(ListingBotError):
    """Missing or malformed configuration (e.g. the token signing key)."""
    pass
