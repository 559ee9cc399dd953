import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from kaspa_gateway.config import get_settings
from kaspa_gateway.database import Base, engine, SessionLocal
from kaspa_gateway.routes import router
from kaspa_gateway.scheduler import SweepScheduler
from kaspa_gateway.service import build_service

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    service = build_service(settings, SessionLocal)
    app.state.payment_service = service

    sweeper = None
    if settings.sweep_enabled:
        sweeper = SweepScheduler(service.poller, interval=settings.poll_interval)
        sweeper.start()
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.shutdown()


app = FastAPI(title="Kaspa Payment Gateway", lifespan=lifespan)

app.include_router(router)
