import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from src.config.database import Base, engine
from src.config.settings import settings
from src.modules.runs.manager import run_manager
from src.modules.runs.router import router as scraper_router
from src.modules.runs.router import ws_router as progress_ws_router
from src.modules.runs.scheduler import run_scheduler
from src.modules.scraper.service import scraper_service
from src.modules.sources.router import router as sources_router

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    import src.modules.articles.models  # noqa: F401
    import src.modules.runs.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables synced")

    await run_manager.recover()
    run_scheduler.start()
    yield
    run_scheduler.stop()
    await run_manager.shutdown()
    await scraper_service.aclose()
    await engine.dispose()


app = FastAPI(title="Scrape Orchestrator", lifespan=lifespan)

# API routes
app.include_router(scraper_router, prefix="/api/scraper", tags=["scraper"])
app.include_router(sources_router, prefix="/api/sources", tags=["sources"])
app.include_router(progress_ws_router, tags=["progress"])


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("src.main:app", host=settings.app_host, port=settings.app_port)
