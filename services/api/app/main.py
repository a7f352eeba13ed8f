"""Marketlane API service entrypoint."""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from services.api.app.db.init_db import init_db
from services.api.app.log import clear_context, configure_logging
from services.api.app.routers.distance import router as distance_router
from services.api.app.routers.orders import router as orders_router
from services.api.app.routers.payments import router as payments_router

app = FastAPI(title="Marketlane API")

app.include_router(payments_router)
app.include_router(distance_router)
app.include_router(orders_router)


@app.on_event("startup")
def _startup() -> None:
    configure_logging()
    init_db()


@app.middleware("http")
async def _reset_log_context(request: Request, call_next):
    clear_context()
    return await call_next(request)


@app.exception_handler(StarletteHTTPException)
async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    del request
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    del request
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}
