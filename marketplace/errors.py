"""Error taxonomy for marketplace operations.

Every documented failure is an HTTPException subclass carrying a stable
``kind`` so that callers (HTTP or the settlement sweep) can branch on it
without parsing messages.
"""

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse


class MarketplaceError(HTTPException):
    status_code: int = 400
    kind: str = "bad_request"

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=self.status_code, detail=detail)


class BadRequest(MarketplaceError):
    status_code = 400
    kind = "bad_request"


class NotFound(MarketplaceError):
    status_code = 404
    kind = "not_found"


class Forbidden(MarketplaceError):
    status_code = 403
    kind = "forbidden"


class Unauthorized(Forbidden):
    """Actor is authenticated but not the party allowed to take this action."""

    kind = "unauthorized"


class Conflict(MarketplaceError):
    status_code = 409
    kind = "conflict"


class InvalidState(MarketplaceError):
    status_code = 409
    kind = "invalid_state"

    def __init__(self, current: str, required: str | tuple[str, ...], action: str) -> None:
        if isinstance(required, tuple):
            required = " or ".join(required)
        self.current = current
        self.required = required
        super().__init__(f"Job must be {required} to {action}, currently {current}")


class PreconditionFailed(MarketplaceError):
    status_code = 412
    kind = "precondition_failed"


class GatewayFailure(MarketplaceError):
    status_code = 502
    kind = "gateway_failure"

    def __init__(self, detail: str, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(detail)


async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    body = {"detail": exc.detail, "kind": exc.kind}
    if isinstance(exc, GatewayFailure):
        body["retryable"] = exc.retryable
    return JSONResponse(status_code=exc.status_code, content=body)
