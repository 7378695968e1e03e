"""
PAM error taxonomy.

Every engine failure surfaces as one of these. Routes render them as
``{"error": message, "code": code, "retryable": bool}`` with ``http_status``.
"""
from __future__ import annotations


class PamError(Exception):
    code = 'internal'
    http_status = 500
    retryable = False

    def __init__(self, message: str, *, request_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.request_id = request_id

    def to_dict(self) -> dict:
        payload = {
            'error': self.message,
            'code': self.code,
            'retryable': self.retryable,
        }
        if self.request_id is not None:
            payload['request_id'] = self.request_id
        return payload


class PamInvalidArgument(PamError):
    code = 'invalid_argument'
    http_status = 400


class PamConflict(PamError):
    code = 'conflict'
    http_status = 409


class PamNotFound(PamError):
    code = 'not_found'
    http_status = 404


class PamInvalidState(PamError):
    code = 'invalid_state'
    http_status = 409

    def __init__(self, message: str, *, request_id: str | None = None,
                 current_status: str | None = None) -> None:
        super().__init__(message, request_id=request_id)
        self.current_status = current_status

    def to_dict(self) -> dict:
        payload = super().to_dict()
        if self.current_status is not None:
            payload['current_status'] = self.current_status
        return payload


class PamExpired(PamInvalidState):
    """The request's deadline passed; it must be re-submitted."""
    code = 'expired'
    http_status = 410


class PamTimeout(PamError):
    code = 'timeout'
    http_status = 503
    retryable = True


class PamInternal(PamError):
    code = 'internal'
    http_status = 500
