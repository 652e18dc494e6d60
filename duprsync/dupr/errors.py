"""Error taxonomy for the DUPR pipeline.

Each error carries a stable ``category`` string (logged and returned to
callers) and the HTTP status routes translate it into. Per-match submission
failures are never raised; they are recorded on the match and batch.
"""


class DuprError(Exception):
    """Base class for pipeline errors surfaced to callers."""

    category = "internal"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.category


class InvalidRequestError(DuprError):
    category = "invalid_request"
    status_code = 400


class NotFoundError(DuprError):
    category = "not_found"
    status_code = 404


class PermissionDeniedError(DuprError):
    category = "permission_denied"
    status_code = 403


class PreconditionFailedError(DuprError):
    category = "failed_precondition"
    status_code = 412


class TokenUnavailableError(DuprError):
    """Credential exchange failed: the integration is unreachable, not the match."""

    category = "token_unavailable"
    status_code = 503

    def __init__(self, message: str = "DUPR API token unavailable"):
        super().__init__(message)


class IntegrationError(DuprError):
    category = "integration_error"
    status_code = 502


class InvalidTransitionError(DuprError):
    category = "invalid_transition"
    status_code = 409
