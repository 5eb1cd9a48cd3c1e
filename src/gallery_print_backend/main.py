from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from omegaconf import DictConfig

from .configuration import build_print_settings, build_retry_policy, configure_logging, make_runtime_config
from .job_queue import PrintJobQueue, TaskConflict, build_handlers
from .models import PRINT_PHOTO_TASK, PrintTaskRequest, PrintTaskSpec, ProcessingResponse, TaskDetail, TaskStatus, TaskSummary
from .processor import PRINT_CONTENT_TYPE, PrintJobProcessor, print_key_for
from .storage import StorageProvider, build_storage_provider
from .task_store import TaskDatabase
from .utils import is_safe_image_name

logger = logging.getLogger(__name__)

router = APIRouter()


def build_queue(config: DictConfig, processor: PrintJobProcessor) -> PrintJobQueue:
    queue_config = config.queue
    return PrintJobQueue(
        TaskDatabase(Path(queue_config.db_path)),
        build_handlers(processor),
        max_workers=int(queue_config.max_workers),
        default_priority=int(queue_config.default_priority),
        default_max_attempts=int(queue_config.max_attempts),
        backoff=build_retry_policy(queue_config.backoff),
        stale_timeout=float(queue_config.stale_timeout),
        retention=float(queue_config.retention) if queue_config.retention is not None else None,
        poll_interval=float(queue_config.poll_interval),
        sweep_interval=float(queue_config.sweep_interval),
    )


def create_app(overrides: Optional[Dict[str, Any]] = None, storage: Optional[StorageProvider] = None) -> FastAPI:
    """
    Build the API with its storage, processor and queue.

    Run with:
        uvicorn gallery_print_backend.main:create_app --factory

    Args:
        overrides: Values merged over the packaged configuration
        storage: Pre-built storage backend (default: from ``storage`` config)
    """
    config = make_runtime_config(overrides)
    configure_logging(config.log_level)

    storage = storage or build_storage_provider(config.storage)
    processor = PrintJobProcessor(storage, build_print_settings(config))
    queue = build_queue(config, processor)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if config.queue.autostart:
            queue.start()
        try:
            yield
        finally:
            queue.stop()

    app = FastAPI(title="Gallery Print API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.config = config
    app.state.storage = storage
    app.state.processor = processor
    app.state.queue = queue

    app.include_router(router)
    return app


def get_queue(request: Request) -> PrintJobQueue:
    return request.app.state.queue


def get_storage(request: Request) -> StorageProvider:
    return request.app.state.storage


def get_config(request: Request) -> DictConfig:
    return request.app.state.config


@router.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@router.post("/tasks", response_model=TaskDetail)
def submit_task(
    payload: PrintTaskRequest,
    response: Response,
    queue: PrintJobQueue = Depends(get_queue),
) -> TaskDetail:
    if payload.type != PRINT_PHOTO_TASK:
        raise HTTPException(status_code=400, detail=f"Unsupported task type: {payload.type}")

    spec = PrintTaskSpec(**payload.model_dump(include={"type", "storage_key", "photo_id", "location_name"}))
    result = queue.add_task(spec, priority=payload.priority, max_attempts=payload.max_attempts)
    response.status_code = 202 if result.created else 200
    return result.task


@router.get("/tasks", response_model=list[TaskSummary])
def list_tasks(status: Optional[TaskStatus] = None, queue: PrintJobQueue = Depends(get_queue)) -> list[TaskSummary]:
    return queue.list_tasks(status)


@router.get("/tasks/{task_id}", response_model=TaskDetail)
def get_task(task_id: str, queue: PrintJobQueue = Depends(get_queue)) -> TaskDetail:
    task = queue.get_task(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@router.post("/tasks/{task_id}/retry", response_model=TaskDetail)
def retry_task(task_id: str, queue: PrintJobQueue = Depends(get_queue)) -> TaskDetail:
    try:
        return queue.retry_task(task_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Task not found") from exc
    except TaskConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.get("/storage/print/{image_name}")
def serve_print(
    image_name: str,
    location: str = "",
    queue: PrintJobQueue = Depends(get_queue),
    storage: StorageProvider = Depends(get_storage),
    config: DictConfig = Depends(get_config),
) -> Response:
    """
    Serve a print artifact, scheduling its generation on a cache miss.

    Responses:
        200: The artifact
        202: The original exists and its print is queued; retry later
        404: No original exists, so no print ever will
        409: The last generation attempt failed for good; re-queue it with
            POST /tasks/{task_id}/retry
    """
    if not is_safe_image_name(image_name):
        raise HTTPException(status_code=400, detail="Invalid image name")

    source_key = f"{str(config.storage.source_prefix).strip('/')}/{image_name}".lstrip("/")
    artifact = storage.get(print_key_for(source_key))
    if artifact is not None:
        return Response(
            content=artifact,
            media_type=PRINT_CONTENT_TYPE,
            headers={"Cache-Control": "public, max-age=31536000, immutable"},
        )

    if not storage.exists(source_key):
        raise HTTPException(status_code=404, detail="Print image not found and no original exists")

    latest = queue.find_latest_task(source_key)
    if latest is not None and latest.status is TaskStatus.FAILED:
        raise HTTPException(
            status_code=409,
            detail={
                "message": "Print generation failed; retry the task to try again",
                "task_id": latest.id,
                "last_error": latest.last_error,
            },
        )

    result = queue.add_task(PrintTaskSpec(type=PRINT_PHOTO_TASK, storage_key=source_key, location_name=location))
    logger.info(f"Print for {source_key} not ready; task {result.task.id} is {result.task.status.value}")
    retry_after = int(config.print.retry_after)
    body = ProcessingResponse(task_id=result.task.id, retry_after=retry_after)
    return JSONResponse(
        status_code=202,
        content=body.model_dump(),
        headers={"Retry-After": str(retry_after), "Cache-Control": "no-store"},
    )
