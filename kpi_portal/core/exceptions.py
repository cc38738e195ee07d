"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from kpi_portal.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ActionPlan", resource_id=42)
    raise ValidationError("Reason is too short", details={"reason": "..."})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Args:
        resource: Human-readable model/entity name (e.g. "ActionPlan", "Workflow").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint) — this
    exception signals that the data was well-formed but violated a business
    rule (e.g. a drop justification that is too short, an illegal carry-over).

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation conflicts with the current state of a resource.

    Maps to HTTP 409.

    Args:
        resource: Model or workflow name.
        message: What conflicted (e.g. "commit already in flight").
    """

    def __init__(self, resource: str, message: str) -> None:
        self.resource = resource
        super().__init__(f"{resource}: {message}")


class GatewayError(Exception):
    """Raised by the system-of-record gateway when a remote write fails.

    ``work_item_ids`` names the items the failed call was about, when known.
    Maps to HTTP 502.
    """

    def __init__(self, message: str, work_item_ids: list | None = None) -> None:
        self.work_item_ids = list(work_item_ids or [])
        super().__init__(message)


class SubmissionError(Exception):
    """Raised when the final report submission fails after a successful resolution.

    The resolution step is never re-run; only the submission may be retried.
    Maps to HTTP 502.
    """

    def __init__(self, message: str, scope: dict | None = None) -> None:
        self.scope = scope or {}
        super().__init__(message)
