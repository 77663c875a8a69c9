"""Acting-user dependency for FastAPI.

Authentication happens upstream: the identity gateway in front of this
service verifies the session and forwards the user's id in ``X-User-Id``.
"""

import uuid

from fastapi import HTTPException, Request

USER_ID_HEADER = "X-User-Id"


async def get_current_user_id(request: Request) -> uuid.UUID:
    """Return the acting user's id forwarded by the identity gateway."""
    raw = request.headers.get(USER_ID_HEADER)
    if not raw:
        raise HTTPException(status_code=403, detail="Missing authentication headers")
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise HTTPException(status_code=403, detail=f"Malformed {USER_ID_HEADER} header")
