"""
Exceptions raised inside the messaging client.

Only codec functions raise these to their callers. The connection manager
and the dispatcher turn them into state changes and boolean results.
"""


class ClientError(Exception):
    """Base exception for client errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - Details: {self.details}"
        return self.message


class ProtocolError(ClientError):
    """A frame or payload from the server could not be decoded."""
    pass
