# voicenotes/routers/runs.py
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..security import Caller, require_user
from ..services import metrics

router = APIRouter(tags=["runs"])

@router.get("/runs")
def list_runs(
    limit: Optional[int] = Query(default=None),
    cursor: Optional[str] = Query(default=None),
    caller: Caller = Depends(require_user),
):
    return metrics.list_runs(caller.id, limit=limit, cursor=cursor)

@router.get("/runs/{run_id}")
def get_run(run_id: str, caller: Caller = Depends(require_user)):
    run = metrics.get_run(caller.id, run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Not found")
    return run

@router.delete("/runs/{run_id}")
def delete_run(run_id: str, caller: Caller = Depends(require_user)):
    if not metrics.delete_run(caller.id, run_id):
        raise HTTPException(status_code=404, detail="Not found")
    return {"ok": True, "id": run_id}

@router.get("/metrics")
def get_metrics(
    hours: Optional[int] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    since: Optional[str] = Query(default=None),
    caller: Caller = Depends(require_user),
):
    return metrics.compute_metrics(caller.id, hours=hours, limit=limit, since=since)
