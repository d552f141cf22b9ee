import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from caseflow.cache import DurableCache, SQLiteCacheStore
from caseflow.config import CACHE_PATH, LOG_LEVEL
from caseflow.routers import workflow
from caseflow.services.analysis_client import AnalysisClient, build_http_client
from caseflow.services.event_bus import WorkflowEventBus
from caseflow.services.history import HistoryAggregator
from caseflow.services.workflow import CaseWorkflowController

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting caseflow...")
    store = await SQLiteCacheStore.connect(CACHE_PATH)
    cache = DurableCache(store)
    await cache.load()

    async with build_http_client() as http:
        analysis_client = AnalysisClient(http)
        controller = CaseWorkflowController(
            analysis_client=analysis_client,
            history=HistoryAggregator(http, analysis_client),
            cache=cache,
            event_bus=WorkflowEventBus(),
        )
        app.state.controller = controller
        logger.info("Workflow controller ready")
        yield
        await controller.close()

    await cache.close()
    logger.info("caseflow shut down")


app = FastAPI(
    title="caseflow",
    description="Clinical case intake and AI analysis orchestration for pharmacists",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(workflow.router)
app.include_router(workflow.ws_router)


@app.get("/health")
async def health():
    return {"status": "ok"}
