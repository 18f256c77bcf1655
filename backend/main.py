
import asyncio
import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from db import init_db
from errors import ServiceError
from routes.auth import router as auth_router
from routes.coin import router as coin_router
from routes.games import router as games_router
from routes.marketplace import router as marketplace_router
from settings import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(title="Coin Economy Backend", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.cors_allow_all else settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)
app.include_router(coin_router)
app.include_router(games_router)
app.include_router(marketplace_router)


@app.middleware("http")
async def request_id(request: Request, call_next):
    rid = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = rid
    response = await call_next(request)
    response.headers["x-request-id"] = rid
    return response


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("service error on %s: %s", request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "invalid request", "details": jsonable_encoder(exc.errors())},
    )


@app.on_event("startup")
async def startup():
    for attempt in range(15):
        try:
            await init_db()
            break
        except Exception:
            logger.warning("database init failed (attempt %d), retrying", attempt + 1)
            await asyncio.sleep(1)
    else:
        await init_db()

@app.get("/health")
async def health():
    return {"ok": True}

@app.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
