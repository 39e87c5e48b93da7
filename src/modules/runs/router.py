import logging

import anyio
from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse
from fastapi.websockets import WebSocketState

from src.modules.runs.exceptions import (
    ConflictError,
    InvalidRangeError,
    NotRunningError,
    UnknownSourceError,
    UnsupportedModeError,
)
from src.modules.runs.hub import progress_hub
from src.modules.runs.manager import run_manager
from src.modules.runs.schemas import (
    Run,
    RunStatusResponse,
    ScrapeType,
    StartRangeRequest,
    StartRunRequest,
    StartRunResponse,
    StopRunResponse,
)
from src.modules.sources.models import FetchMode

logger = logging.getLogger(__name__)

router = APIRouter()
ws_router = APIRouter()


async def _start(request: StartRunRequest) -> StartRunResponse:
    try:
        run_id = await run_manager.start_run(request)
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except (UnknownSourceError, UnsupportedModeError, InvalidRangeError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return StartRunResponse(
        run_id=run_id,
        message=f"{request.source} {request.mode.value} scrape started",
    )


@router.post("/start", response_model=StartRunResponse)
async def start_scrape(body: StartRunRequest):
    return await _start(body)


@router.post("/start-range", response_model=StartRunResponse)
async def start_range_scrape(body: StartRangeRequest):
    request = StartRunRequest(
        scrape_type=ScrapeType.FULL,
        source=body.source,
        mode=FetchMode.RANGE,
        start_id=body.start_id,
        end_id=body.end_id,
        force_rescrape=body.force_rescrape,
    )
    return await _start(request)


@router.post("/stop", response_model=StopRunResponse)
async def stop_scrape():
    try:
        run_id = await run_manager.stop_run()
    except NotRunningError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return StopRunResponse(run_id=run_id, message="Scrape cancellation requested")


@router.get("/status", response_model=RunStatusResponse)
async def get_status():
    return await run_manager.get_status()


@router.get("/runs", response_model=list[Run])
async def list_runs(limit: int = Query(default=20, ge=1, le=500)):
    return await run_manager.list_runs(limit)


@router.get("/progress")
async def progress_stream(request: Request) -> StreamingResponse:
    observer = progress_hub.attach()

    async def event_stream():
        try:
            async for event in observer:
                if await request.is_disconnected():
                    break
                yield f"data: {event.model_dump_json()}\n\n"
        finally:
            progress_hub.detach(observer)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@ws_router.websocket("/ws/scrape-progress")
async def progress_socket(websocket: WebSocket):
    await websocket.accept()
    observer = progress_hub.attach()

    async def send_events(scope: anyio.CancelScope) -> None:
        try:
            async for event in observer:
                await websocket.send_text(event.model_dump_json())
        except WebSocketDisconnect:
            logger.debug("Progress websocket closed while sending")
        scope.cancel()

    async def receive_until_closed(scope: anyio.CancelScope) -> None:
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug("Progress websocket closed by client")
        scope.cancel()

    try:
        async with anyio.create_task_group() as task_group:
            task_group.start_soon(send_events, task_group.cancel_scope)
            task_group.start_soon(receive_until_closed, task_group.cancel_scope)
    finally:
        progress_hub.detach(observer)

    if observer.dropped and websocket.client_state is WebSocketState.CONNECTED:
        # Lagging client: close so it reconnects and receives a fresh replay
        await websocket.close(code=1013)
