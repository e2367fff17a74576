class RelayError(Exception):
    """Base class for errors surfaced to clients as a structured message."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequest(RelayError):
    """Malformed token, missing fields, disallowed upload type or size."""


class NotFound(RelayError):
    """Room or image is absent."""


class NotJoined(RelayError):
    """Connection tried to act on a room it has not joined."""


class StoreUnavailable(RelayError):
    """The durable store is down or not ready."""
