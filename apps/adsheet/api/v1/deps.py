from __future__ import annotations

from fastapi import HTTPException, Request

from apps.adsheet.core.auth import USER_HEADER, AuthContext, AuthError


def get_auth_context(request: Request) -> AuthContext:
    """
    Resolve the acting user from the identity headers set by the gateway.
    """
    if not (request.headers.get(USER_HEADER) or "").strip():
        raise HTTPException(status_code=401, detail=f"Missing {USER_HEADER} header")
    try:
        return AuthContext.from_mapping(request.headers)
    except AuthError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
