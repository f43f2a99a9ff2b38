"""Monitoring control API - status, manual collection and discovery."""
from typing import List

from fastapi import APIRouter, HTTPException, Request

from ..schemas.status import NodeStatus, CollectResult, SyncResult, SchedulerStatus
from ..services.scheduler import SchedulerCoordinator

router = APIRouter(prefix="/api/monitoring", tags=["monitoring"])


def get_coordinator(request: Request) -> SchedulerCoordinator:
    return request.app.state.coordinator


@router.get("/status", response_model=List[NodeStatus])
async def get_monitoring_status(request: Request):
    """Polling state, liveness and current stats of every node."""
    return await get_coordinator(request).get_status()


@router.get("/scheduler", response_model=SchedulerStatus)
async def get_scheduler_status(request: Request):
    return get_coordinator(request).scheduler_status()


@router.post("/nodes/{node_id}/collect", response_model=CollectResult)
async def collect_node(node_id: int, request: Request):
    """Collect a node right away (manual refresh)."""
    result = await get_coordinator(request).collect_now(node_id)
    if result.get("error") == "Node not found":
        raise HTTPException(status_code=404, detail="Node not found")
    return result


@router.post("/nodes/{node_id}/start")
async def start_node_monitoring(node_id: int, request: Request):
    coordinator = get_coordinator(request)
    node = await coordinator.store.get_node(node_id)
    if node is None:
        raise HTTPException(status_code=404, detail="Node not found")
    started = await coordinator.start_monitoring(node_id)
    return {"node_id": node_id, "running": started}


@router.post("/nodes/{node_id}/stop")
async def stop_node_monitoring(node_id: int, request: Request):
    stopped = await get_coordinator(request).stop_monitoring(node_id)
    return {"node_id": node_id, "stopped": stopped}


@router.post("/discovery/sync", response_model=SyncResult)
async def sync_discovery(request: Request):
    """Run discovery sync for all hosts now."""
    return await get_coordinator(request).sync_all_hosts()
