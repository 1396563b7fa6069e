"""FastAPI application entry point."""
import logging

from fastapi import FastAPI, Request

from squad_engine import __version__
from squad_engine.api.routes import squads
from squad_engine.config import get_settings
from squad_engine.middleware.error_handler import setup_error_handlers

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("squad_engine")

app = FastAPI(
    title="Squad Initiative Engine",
    description="Group initiative aggregation and morale checks for turn-based combat trackers",
    version=__version__,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    logger.debug(f"[REQUEST] {request.method} {request.url.path}")
    response = await call_next(request)
    logger.debug(f"[RESPONSE] {request.method} {request.url.path} -> {response.status_code}")
    return response


setup_error_handlers(app, debug=settings.DEBUG)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "online", "service": "Squad Initiative Engine", "version": __version__}


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "debug_mode": settings.DEBUG,
        "morale_enabled": settings.SQUAD_MORALE_ENABLED,
    }


app.include_router(squads.router, prefix="/api/squads", tags=["squads"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("squad_engine.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)
