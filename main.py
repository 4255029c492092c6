from fastapi import FastAPI

from apps.adsheet.api.main import app as adsheet_app
from apps.adsheet.api.v1.helpers.config import (
    validate_tenant_config as validate_adsheet_tenant_config,
)
from shared.exception_handlers import register_exception_handlers
from shared.middleware import (
    timing_middleware,
    api_key_auth_middleware,
    request_response_logger_middleware,
    tenant_context_middleware,
)


app = FastAPI()
app.state.public_paths = {"/", "/ping"}
app.state.tenant_validator_registry = [
    (("/api/adsheet",), "AdSheet", validate_adsheet_tenant_config),
]
app.middleware("http")(timing_middleware)
app.middleware("http")(api_key_auth_middleware)
app.middleware("http")(request_response_logger_middleware)
app.middleware("http")(tenant_context_middleware)
register_exception_handlers(app, logger_name="Root")

# Mount app-specific APIs under distinct prefixes.
app.mount("/api/adsheet", adsheet_app)


@app.get("/")
def root():
    return {"status": "AdSheet"}


@app.get("/ping")
def ping():
    return {"status": "ok"}
