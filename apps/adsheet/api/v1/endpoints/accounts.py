from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from apps.adsheet.api.v1.deps import get_auth_context
from apps.adsheet.api.v1.helpers.accounts import (
    batch_update,
    bulk_create,
    delete_accounts,
    get_updates,
    list_accounts,
    patch_account,
    set_status,
)
from apps.adsheet.core.auth import SESSION_HEADER, AuthContext
from shared.utils import with_meta

router = APIRouter()


class BulkCreateRow(BaseModel):
    temp_marker: str = Field(..., min_length=1)
    values: dict = Field(default_factory=dict)


class BulkCreatePayload(BaseModel):
    rows: list[BulkCreateRow] = Field(..., min_length=1)
    session_id: str | None = None


class StatusPayload(BaseModel):
    status: str
    session_id: str | None = None


class DeletePayload(BaseModel):
    ids: list[int]
    session_id: str | None = None


def _session_id(request: Request, explicit: str | None = None) -> str | None:
    return explicit or request.headers.get(SESSION_HEADER) or None


# ============================================================
# AD ACCOUNTS
# ============================================================


@router.get("/ad-accounts")
def get_ad_accounts(
    request: Request,
    response: Response,
    auth: AuthContext = Depends(get_auth_context),
):
    data = list_accounts(auth)
    response.headers["Cache-Control"] = "no-store"
    return with_meta(
        data=data,
        start_time=request.state.start_time,
        client_id=getattr(request.state, "client_id", "Not Found"),
    )


@router.get("/ad-accounts/updates")
def get_ad_account_updates(
    request: Request,
    since: int | None = Query(None, ge=0),
    session_id: str | None = Query(None),
    auth: AuthContext = Depends(get_auth_context),
):
    data = get_updates(auth, since, _session_id(request, session_id))
    return with_meta(
        data=data,
        start_time=request.state.start_time,
        client_id=getattr(request.state, "client_id", "Not Found"),
    )


@router.post("/ad-accounts/bulk")
def create_ad_accounts(
    request: Request,
    payload: BulkCreatePayload,
    auth: AuthContext = Depends(get_auth_context),
):
    try:
        rows = bulk_create(
            auth,
            [row.model_dump() for row in payload.rows],
            _session_id(request, payload.session_id),
        )
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return with_meta(
        data={"rows": rows, "created": len(rows)},
        start_time=request.state.start_time,
        client_id=getattr(request.state, "client_id", "Not Found"),
    )


@router.post("/ad-accounts/batch-update")
def batch_update_ad_accounts(
    request: Request,
    payload: list[dict] | dict = Body(...),
    auth: AuthContext = Depends(get_auth_context),
):
    try:
        data = batch_update(auth, payload, _session_id(request))
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return with_meta(
        data=data,
        start_time=request.state.start_time,
        client_id=getattr(request.state, "client_id", "Not Found"),
    )


@router.patch("/ad-accounts/{record_id}")
def update_ad_account(
    request: Request,
    record_id: int,
    payload: dict = Body(...),
    auth: AuthContext = Depends(get_auth_context),
):
    values = dict(payload)
    session_id = values.pop("session_id", None)
    try:
        data = patch_account(auth, record_id, values, _session_id(request, session_id))
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return with_meta(
        data=data,
        start_time=request.state.start_time,
        client_id=getattr(request.state, "client_id", "Not Found"),
    )


@router.put("/ad-accounts/{record_id}/status")
def update_ad_account_status(
    request: Request,
    record_id: int,
    payload: StatusPayload,
    auth: AuthContext = Depends(get_auth_context),
):
    try:
        data = set_status(
            auth,
            record_id,
            payload.status,
            _session_id(request, payload.session_id),
        )
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return with_meta(
        data=data,
        start_time=request.state.start_time,
        client_id=getattr(request.state, "client_id", "Not Found"),
    )


@router.delete("/ad-accounts")
def delete_ad_accounts(
    request: Request,
    payload: DeletePayload,
    auth: AuthContext = Depends(get_auth_context),
):
    try:
        deleted = delete_accounts(
            auth,
            payload.ids,
            _session_id(request, payload.session_id),
        )
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return with_meta(
        data={"deleted": deleted},
        start_time=request.state.start_time,
        client_id=getattr(request.state, "client_id", "Not Found"),
    )
