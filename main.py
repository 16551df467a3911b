import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from config.settings import settings
from services.analyzer.service import analyzer_service
from services.database import AnalyzerMode, init_db
from services.errors import ConfigurationError, PersistenceError, ProcessNotFoundError
from services.llm import model_gateway

logging.basicConfig(level=getattr(logging, settings.log_level))
log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    health = await model_gateway.health()
    log.info(f"Model providers: {health}")
    yield


app = FastAPI(
    title="Photo Analyzer",
    description="Resumable AI analysis of photo collections",
    version="0.1.0",
    lifespan=lifespan,
)


# --- Health ---


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "model_providers": await model_gateway.health(),
    }


# --- Analyzer processes ---


class CreateProcessRequest(BaseModel):
    user_id: int | None = None
    package_id: str
    mode: AnalyzerMode = AnalyzerMode.ADDING
    sync: bool = False  # False = run in the background, poll GET /analyzer/processes/{id}


class RetryRequest(BaseModel):
    sync: bool = False


@app.post("/analyzer/processes")
async def create_process(req: CreateProcessRequest):
    """Create a process for the user's photos and run its package."""
    try:
        process_id = await analyzer_service.create_and_run(
            req.user_id, req.package_id, req.mode, sync=req.sync
        )
    except ConfigurationError as e:
        raise HTTPException(400, str(e)) from e
    except PersistenceError as e:
        raise HTTPException(500, str(e)) from e
    return {"process_id": process_id}


@app.get("/analyzer/processes/{process_id}")
async def get_process(process_id: int):
    try:
        return await analyzer_service.get_process(process_id)
    except ProcessNotFoundError as e:
        raise HTTPException(404, str(e)) from e


@app.post("/analyzer/processes/{process_id}/retry")
async def retry_process(process_id: int, req: RetryRequest | None = None):
    """Re-run only the work the health checks say is still missing."""
    try:
        await analyzer_service.retry(process_id, sync=req.sync if req else False)
    except ProcessNotFoundError as e:
        raise HTTPException(404, str(e)) from e
    except ConfigurationError as e:
        raise HTTPException(400, str(e)) from e
    return {"process_id": process_id}


@app.post("/analyzer/processes/{process_id}/reconcile")
async def reconcile_process(process_id: int):
    """Mark as completed whatever the health checks show is already done."""
    try:
        reconciled = await analyzer_service.reconcile(process_id)
    except ProcessNotFoundError as e:
        raise HTTPException(404, str(e)) from e
    except ConfigurationError as e:
        raise HTTPException(400, str(e)) from e
    return {
        "process": await analyzer_service.get_process(process_id),
        "reconciled": {task: len(ids) for task, ids in reconciled.items()},
    }


# --- Photos ---


@app.get("/analyzer/photos/{photo_id}/health")
async def photo_health(photo_id: int):
    report = await analyzer_service.photo_health(photo_id)
    return {
        "photo_id": report.photo_id,
        "ok": report.ok,
        "checks": [{"label": label, "ok": ok} for label, ok in report.checks],
        "missing": report.missing,
    }
