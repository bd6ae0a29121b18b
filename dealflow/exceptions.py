"""
exceptions.py — Typed domain errors raised at the service boundary

Every error carries a human message plus a context dict (entity, id,
current status, attempted transition) that main.py renders into the
ErrorResponse body, so a refused transition explains itself.

Business Rules:
- ValidationError: malformed/missing input, nothing was changed
- NotFoundError: referenced entity does not exist
- AuthorizationError: actor's role cannot act at this point
- StateConflictError: precondition status mismatch (stale read, double lock, ...)
- DomainRuleError: business rule refused the action (blacklist match,
  missing checklist items, sign-off still required)
- ExternalAdapterError: storage/notification collaborator failed

Called by: all services, dealflow/main.py (exception handlers)
"""


class DealflowError(Exception):
    """Base for all domain errors."""

    status_code = 400
    error_type = "error"

    def __init__(self, message: str, **context):
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}
        super().__init__(message)


class ValidationError(DealflowError):
    status_code = 400
    error_type = "validation_error"


class NotFoundError(DealflowError):
    status_code = 404
    error_type = "not_found"

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id)


class AuthorizationError(DealflowError):
    status_code = 403
    error_type = "authorization_error"


class StateConflictError(DealflowError):
    status_code = 409
    error_type = "state_conflict"

    def __init__(
        self,
        message: str,
        *,
        entity: str | None = None,
        entity_id=None,
        current_status: str | None = None,
        attempted: str | None = None,
    ):
        super().__init__(
            message,
            entity=entity,
            entity_id=entity_id,
            current_status=current_status,
            attempted=attempted,
        )


class DomainRuleError(DealflowError):
    status_code = 422
    error_type = "domain_rule"


class BlacklistedError(DomainRuleError):
    error_type = "blacklisted"

    def __init__(self, entry_id: int, matched_on: str):
        super().__init__(
            f"Entity matches active blacklist entry {entry_id} on {matched_on}",
            blacklist_id=entry_id,
            matched_on=matched_on,
        )


class ApprovalRequiredError(DomainRuleError):
    error_type = "approval_required"

    def __init__(self, message: str, approval_request_id: int):
        super().__init__(message, approval_request_id=approval_request_id)


class ExternalAdapterError(DealflowError):
    status_code = 502
    error_type = "external_adapter_error"
