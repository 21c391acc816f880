import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from breachfeed.config import get_settings
from breachfeed.database import Base, SessionLocal, engine
from breachfeed.pipeline import Pipeline
from breachfeed.routes.articles import router
from breachfeed.scheduler import FeedScheduler

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # --- Startup ---
    logger.info("Creating database tables if they don't exist...")
    Base.metadata.create_all(bind=engine)

    pipeline = Pipeline(settings, SessionLocal)
    app.state.pipeline = pipeline

    logger.info("Starting background feed scheduler...")
    scheduler = FeedScheduler(pipeline, settings)
    task = asyncio.create_task(scheduler.run())

    yield

    # --- Shutdown ---
    logger.info("Shutting down feed scheduler...")
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


app = FastAPI(
    title="BreachFeed API",
    description="Ingests security news feeds, classifies breach alerts and routes them to subscribers.",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(router)
