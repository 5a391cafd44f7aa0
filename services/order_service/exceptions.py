from fastapi import status


class OrderServiceError(Exception):
    """Base for every error the order service reports to its caller."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(OrderServiceError):
    """Malformed or semantically invalid input (empty cart, foreign items, missing address)."""


class IllegalTransitionError(OrderServiceError):
    """Requested status is not reachable from the stored one, or the actor may not request it."""

    def __init__(self, message: str, current_status=None, requested_status=None):
        super().__init__(message)
        self.current_status = current_status
        self.requested_status = requested_status


class NotFoundError(OrderServiceError):
    status_code = status.HTTP_404_NOT_FOUND


class NudgeCooldownError(OrderServiceError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, message: str, retry_after: float):
        super().__init__(message)
        self.retry_after = retry_after


class DependencyUnavailable(OrderServiceError):
    """A collaborator (catalog, payment gateway, notification sink) could not be reached."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
