from contextlib import asynccontextmanager
from datetime import datetime
from zoneinfo import ZoneInfo

from fastapi import FastAPI, Request

from shared.exception_handlers import register_exception_handlers
from shared.middleware import (
    timing_middleware,
    api_key_auth_middleware,
    request_response_logger_middleware,
    tenant_context_middleware,
)
from shared.utils import with_meta, load_env
from shared.logger import log_run_start, log_run_end
from shared.tenant import get_timezone

from apps.adsheet.api.v1.helpers.accounts import AccountNotFoundError
from apps.adsheet.api.v1.helpers.config import validate_tenant_config
from apps.adsheet.api.v1.router import router as v1_router
from apps.adsheet.core.auth import AuthError

load_env()


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_run_start("adsheet")
    yield
    log_run_end("adsheet")


app = FastAPI(lifespan=lifespan)
app.state.tenant_validator = validate_tenant_config
app.middleware("http")(timing_middleware)
app.middleware("http")(api_key_auth_middleware)
app.middleware("http")(request_response_logger_middleware)
app.middleware("http")(tenant_context_middleware)
app.include_router(v1_router)
register_exception_handlers(
    app,
    logger_name="AdSheet API",
    status_map={AccountNotFoundError: 404, AuthError: 400},
)


@app.get("/")
def root(request: Request):
    return with_meta(
        data={"status": "AdSheet API"},
        start_time=request.state.start_time,
        client_id=getattr(request.state, "client_id", "Not Found"),
    )


@app.get("/wake-up")
def wake_up(request: Request):
    client_id = getattr(request.state, "client_id", "Not Found")
    request_id = getattr(request.state, "request_id", "Not Found")

    data = {
        "message": "I'm awake. Let's do this.",
        "called_at": datetime.now(ZoneInfo(get_timezone())).isoformat(),
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
    }

    return with_meta(
        data=data,
        start_time=request.state.start_time,
        client_id=client_id,
    )
