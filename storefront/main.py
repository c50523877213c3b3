import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from storefront.config import settings
from storefront.deps import close_all, get_lifecycle
from storefront.errors import OrderError
from storefront.metrics import get_metrics_bytes, get_metrics_content_type
from storefront.redis_client import close_redis, get_redis
from storefront.routes import orders

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_redis()
    await get_lifecycle()
    logger.info("Storefront order service started (storage=%s)", settings.storage_backend)
    yield
    await close_all()
    await close_redis()
    logger.info("Storefront order service stopped.")


app = FastAPI(title="Storefront Orders", lifespan=lifespan)
app.include_router(orders.router)


@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Schema violations are plain 400s with one readable message."""
    messages = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        messages.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return JSONResponse(status_code=400, content={"error": "; ".join(messages) or "Invalid request"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: order transitions, stock adjustments, webhook outcomes."""
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
