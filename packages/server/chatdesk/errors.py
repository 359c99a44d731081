"""Domain errors raised by the engine services.

Each error carries the HTTP status the API layer answers with, so routers
never translate exceptions by hand.
"""


class ChatdeskError(Exception):
    """Base class for every engine error."""

    status_code: int = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(ChatdeskError):
    status_code = 404


class QuotaExceeded(ChatdeskError):
    """Instance or agent count reached the tenant's plan limit."""

    status_code = 403


class AlreadyClaimed(ChatdeskError):
    """Lost a claim race: the ticket already has an owner."""

    status_code = 409


class InvalidTransition(ChatdeskError):
    """Operation not allowed from the current ticket or instance state."""

    status_code = 409


class PairingInProgress(InvalidTransition):
    pass


class NoQueueAssigned(InvalidTransition):
    pass


class GatewayUnreachable(ChatdeskError):
    status_code = 502


class AiUnavailable(ChatdeskError):
    status_code = 503


class FeedDisconnected(ChatdeskError):
    status_code = 503


class InvalidArgument(ChatdeskError):
    """Request value outside its allowed range (empty body, bad temperature...)."""

    status_code = 422
