from contextlib import asynccontextmanager

from fastapi import FastAPI

from ridepool.api.auth import router as auth_router
from ridepool.api.health import router as health_router
from ridepool.api.matches import router as matches_router
from ridepool.api.messages import router as messages_router
from ridepool.api.trips import router as trips_router
from ridepool.api.ws import router as ws_router
from ridepool.config import settings
from ridepool.database import engine, init_models
from ridepool.logging_config import configure_logging
from ridepool.services.registry import build_services


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await init_models(engine, reset=settings.RESET_DB)
    if not hasattr(app.state, "services"):
        app.state.services = build_services()
    try:
        yield
    finally:
        await engine.dispose()


app = FastAPI(title="RidePool", version="0.1.0", lifespan=lifespan)
app.include_router(health_router, prefix="/api")
app.include_router(auth_router, prefix="/api")
app.include_router(trips_router, prefix="/api")
app.include_router(matches_router, prefix="/api")
app.include_router(messages_router, prefix="/api")
app.include_router(ws_router)


@app.get("/api")
def api_root():
    return {"message": "RidePool API"}
