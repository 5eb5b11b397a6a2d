"""
Review REST API endpoints.

POST /api/review streams one review as server-sent events; the client
answers sandbox approval requests through POST /api/sandbox/decision.
"""

import asyncio
import logging
import os
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from agent.events import AgentEvent, ClientDisconnected
from llm import default_generation_config
from providers import get_platform_provider
from review.orchestrator import ReviewAborted, ReviewOrchestrator

from web.models import HealthResponse, ReviewRequest, SandboxDecisionRequest, SandboxDecisionResponse
from web.state import ServerState
from web.stream import EventStream

logger = logging.getLogger(__name__)

router = APIRouter()

NO_CHANGES_MESSAGE = "No changed files found. Please stage some changes."

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _server(request: Request) -> ServerState:
    return request.app.state.server


async def _safe_send(stream: EventStream, event: AgentEvent) -> None:
    try:
        await stream.send(event)
    except ClientDisconnected:
        pass


def _resolve_directory(state: ServerState, requested: Optional[str]) -> str:
    directory = os.path.abspath(os.path.expanduser(requested)) if requested else state.working_directory
    if not os.path.isdir(directory):
        raise HTTPException(status_code=400, detail=f"Directory not found: {directory}")
    return state.git_root(directory)


async def run_review_session(state: ServerState, stream: EventStream,
                             req: ReviewRequest, directory: str) -> None:
    """Run one review, writing every event to ``stream``; always closes it."""
    stream.start_heartbeat()
    try:
        await stream.send(AgentEvent(type="status", content="Initializing review..."))
        files = await asyncio.to_thread(state.files_provider, req.platform, directory)
        if not files:
            await stream.send(AgentEvent(type="error", content=NO_CHANGES_MESSAGE))
            return
        await stream.send(AgentEvent(type="files", data={"files": [f.file_name for f in files]}))

        provider = get_platform_provider(req.platform.value, web=True)
        service = state.service_factory(req.modelString)
        orchestrator = ReviewOrchestrator(
            service, provider, files,
            working_directory=directory,
            config=state.review_config_for(req.maxSteps, req.reviewLanguage, req.preflight),
            generation=default_generation_config(),
            emit=stream.send,
            confirm=state.sandbox_confirm(stream),
            custom_instructions=req.customInstructions,
        )
        outcome = await orchestrator.run()
        await stream.send(AgentEvent(type="complete", data=outcome.to_dict()))
    except ClientDisconnected:
        logger.info("Review client disconnected; review stopped")
    except ReviewAborted as e:
        logger.warning(f"Review aborted: {e}")
        await _safe_send(stream, AgentEvent(type="error", content=str(e)))
    except Exception as e:
        logger.error(f"Review failed: {e}", exc_info=True)
        await _safe_send(stream, AgentEvent(type="error", content=f"Review failed: {e}"))
    finally:
        state.cancel_pending(stream)
        stream.close()


@router.post("/api/review")
async def start_review(req: ReviewRequest, request: Request):
    state = _server(request)
    directory = _resolve_directory(state, req.workingDirectory)
    stream = EventStream(state.heartbeat_interval)

    async def body():
        task = asyncio.ensure_future(run_review_session(state, stream, req, directory))
        try:
            async for frame in stream.iter_sse():
                yield frame
        finally:
            if not stream.closed:
                stream.mark_disconnected()
                state.cancel_pending(stream)
                task.cancel()

    return StreamingResponse(body(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/api/sandbox/decision", response_model=SandboxDecisionResponse)
async def sandbox_decision(decision: SandboxDecisionRequest, request: Request):
    if not _server(request).resolve(decision.requestId, decision.approved):
        raise HTTPException(status_code=404, detail=f"No pending sandbox request {decision.requestId}")
    return SandboxDecisionResponse(requestId=decision.requestId)


@router.get("/api/health", response_model=HealthResponse)
async def health(request: Request):
    return HealthResponse(pendingApprovals=len(_server(request).pending))
