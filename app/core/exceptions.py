"""Custom application exceptions."""

from typing import Any

from fastapi import HTTPException, status


class AppException(HTTPException):
    """Base application exception."""

    def __init__(
        self,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail: str = "An unexpected error occurred",
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=detail, headers=headers)

    def to_content(self) -> dict[str, Any]:
        """Response body for the exception handler."""
        return {"detail": self.detail}


class ValidationError(AppException):
    """Validation error exception."""

    code = "validation_error"

    def __init__(self, detail: str = "Validation failed", errors: list[dict[str, Any]] | None = None) -> None:
        self.errors = errors
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

    def to_content(self) -> dict[str, Any]:
        content: dict[str, Any] = {"detail": self.detail, "message": self.detail, "code": self.code}
        if self.errors:
            content["errors"] = self.errors
        return content


class NotFoundError(AppException):
    """Resource not found exception."""

    def __init__(self, resource: str = "Resource", identifier: str | None = None) -> None:
        detail = f"{resource} not found"
        if identifier:
            detail = f"{resource} with ID '{identifier}' not found"
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class RateLimitExceeded(AppException):
    """Rate limit exceeded exception."""

    def __init__(self, detail: str = "Too many requests. Please try again later.") -> None:
        super().__init__(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=detail)


# ==================== TRANSITION ERRORS ====================


class TransitionError(AppException):
    """Base class for booking transition failures.

    ``code`` is the stable machine-readable tag surfaced to clients and
    ``retryable`` tells the caller whether repeating the request can succeed.
    """

    code = "transition_error"
    retryable = False

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(status_code=status_code, detail=detail)

    @property
    def message(self) -> str:
        return str(self.detail)

    def to_content(self) -> dict[str, Any]:
        return {
            "detail": self.detail,
            "message": self.detail,
            "code": self.code,
            "retryable": self.retryable,
        }


class IllegalTransition(TransitionError):
    """Event is not valid for the booking's current state."""

    code = "illegal_transition"

    def __init__(self, from_state: str, event: str) -> None:
        self.from_state = from_state
        self.event = event
        super().__init__(
            status.HTTP_409_CONFLICT,
            f"Invalid transition: {event} from state {from_state}",
        )


class MissingPrerequisite(TransitionError):
    """Payload or booking lacks what the target transition needs."""

    code = "missing_prerequisite"

    def __init__(self, detail: str, fields: list[str] | None = None) -> None:
        self.fields = fields or []
        super().__init__(status.HTTP_400_BAD_REQUEST, detail)


class ConflictingState(TransitionError):
    """Replay of an applied event with a payload that disagrees with the record."""

    code = "conflicting_state"

    def __init__(self, detail: str) -> None:
        super().__init__(status.HTTP_409_CONFLICT, detail)


class EventNotAllowed(TransitionError):
    """Event may only be produced by a provider webhook, not by a client."""

    code = "event_not_allowed"

    def __init__(self, event: str) -> None:
        self.event = event
        super().__init__(status.HTTP_403_FORBIDDEN, f"Event {event} cannot be sent by clients")


class ConcurrencyConflict(TransitionError):
    """Lost the optimistic version check against a concurrent writer."""

    code = "concurrency_conflict"
    retryable = True

    def __init__(self, booking_id: str) -> None:
        self.booking_id = booking_id
        super().__init__(
            status.HTTP_409_CONFLICT,
            f"Booking {booking_id} was modified concurrently, retry the request",
        )


class ExternalProviderError(TransitionError):
    """Outbound call to a scheduling or payment provider failed."""

    code = "external_provider_error"
    retryable = True

    def __init__(self, provider: str, detail: str | None = None) -> None:
        self.provider = provider
        message = f"External provider '{provider}' failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(status.HTTP_502_BAD_GATEWAY, message)


class WebhookSignatureError(AppException):
    """Webhook signature could not be verified."""

    def __init__(self, detail: str, code: str = "invalid_signature") -> None:
        self.code = code
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)

    def to_content(self) -> dict[str, Any]:
        return {"detail": self.detail, "code": self.code}
