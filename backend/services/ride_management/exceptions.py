"""Custom exceptions for ride management."""


class RequestNotFoundError(Exception):
    """Raised when a ride request document cannot be found."""
    pass


class InvalidTransitionError(Exception):
    """Raised when a status change is not allowed from the request's current status."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move request from {current} to {target}")
        self.current = current
        self.target = target


class NotRequestParticipantError(Exception):
    """Raised when an actor updates a request it neither created nor is assigned to,
    or tries to claim its own request as driver."""
    pass


class MalformedRequestError(ValueError):
    """Raised when a request document is missing its pickup or has an unreadable location."""
    pass
