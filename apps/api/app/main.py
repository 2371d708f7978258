import uuid

from fastapi import FastAPI
from starlette.requests import Request
from starlette.responses import Response

from .context import set_request_id
from .logging import configure_logging
from .routers.collections import records_router
from .routers.collections import router as collections_router
from .routers.health import router as health_router
from .routers.meta_webhook import router as meta_router
from .routers.mobile import router as mobile_router
from .routers.sheets import router as sheets_router

configure_logging()

app = FastAPI(title="LeadSync API", version="0.1.0")


@app.middleware("http")
async def request_id_middleware(request: Request, call_next) -> Response:  # type: ignore[override]
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    request.state.request_id = request_id
    set_request_id(request_id)
    try:
        response = await call_next(request)
    finally:
        set_request_id(None)
    response.headers["X-Request-Id"] = request_id
    return response


app.include_router(health_router)
app.include_router(meta_router)
app.include_router(mobile_router)
app.include_router(sheets_router)
app.include_router(collections_router)
app.include_router(records_router)
