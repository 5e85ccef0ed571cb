from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse, StreamingResponse

from ...domain.models import RunRequest, RunStatusView
from ...infrastructure.user_store import UserStore, get_user_store
from ...services.supervisor import AnalysisRun, RunRejected, RunSupervisor, UserNotFound, get_supervisor
from ...services.upstream import UpstreamError

router = APIRouter(prefix="/analysis", tags=["analysis"])

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",
}


class RunStreamingResponse(StreamingResponse):
    """Streams a run's visible text and releases the run however the response ends.

    The body generator finalizes on its own once iterated, but a response
    that fails before the first read never enters it.
    """

    def __init__(self, run: AnalysisRun) -> None:
        super().__init__(run.stream(), media_type="text/plain; charset=utf-8", headers=STREAM_HEADERS)
        self.run = run

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await asyncio.shield(self.run.aclose())


@router.post("/run", response_class=StreamingResponse)
async def run_analysis(req: RunRequest, supervisor: RunSupervisor = Depends(get_supervisor)):
    try:
        run = await supervisor.open_run(req)
    except UserNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except UpstreamError as exc:
        return JSONResponse(
            {"error": "Wordware API returned an error", "status": exc.status_code, "details": exc.body},
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    if isinstance(run, RunRejected):
        return JSONResponse({"error": "Wordware already started", "reason": run.reason, "tier": run.tier.value})

    return RunStreamingResponse(run)


@router.get("/{username}", response_model=RunStatusView)
async def get_analysis(username: str, store: UserStore = Depends(get_user_store)) -> RunStatusView:
    record = await store.get(username)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"User not found: {username}")
    return RunStatusView.from_record(record)
