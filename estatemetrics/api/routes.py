# estatemetrics/api/routes.py
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, HTTPException, Query, Request

from ..errors import (
    ConnectionUnavailable,
    IndexNotFound,
    InvalidDataset,
    PartialBatchFailure,
    RegionNotFound,
    UpstreamFetchFailure,
)
from ..region import index_names
from ..utils import logger

router = APIRouter()


def _pipeline(request: Request):
    return request.app.state.pipeline


def _store(request: Request):
    return request.app.state.store


def _fail(e: Exception):
    if isinstance(e, (IndexNotFound, RegionNotFound)):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidDataset):
        raise HTTPException(status_code=422, detail=str(e))
    if isinstance(e, UpstreamFetchFailure):
        raise HTTPException(status_code=502, detail=str(e))
    if isinstance(e, PartialBatchFailure):
        raise HTTPException(status_code=500, detail=str(e))
    if isinstance(e, ConnectionUnavailable):
        raise HTTPException(status_code=503, detail="Store unavailable")
    raise e


@router.get("/health")
def health(request: Request):
    connection = request.app.state.connection
    return {
        "status": "ok",
        "store": connection.state.value,
        "scheduler": request.app.state.scheduler.running,
    }


@router.get("/indices")
def list_indices(request: Request):
    try:
        return _store(request).list_indices()
    except ConnectionUnavailable as e:
        _fail(e)


@router.get("/indices/{name}")
def get_index(
    name: str,
    request: Request,
    q: Optional[str] = Query(None),
    size: int = Query(1000, ge=1, le=10000),
):
    try:
        return _store(request).get(name, q, size=size)
    except (IndexNotFound, InvalidDataset, ConnectionUnavailable) as e:
        _fail(e)


@router.delete("/indices/{name}")
def delete_index(name: str, request: Request):
    try:
        _store(request).delete_index(name)
    except (InvalidDataset, ConnectionUnavailable) as e:
        _fail(e)
    return {"status": "deleted"}


@router.get("/regions")
def list_regions(request: Request):
    try:
        regions = _pipeline(request).registered_regions()
    except ConnectionUnavailable as e:
        _fail(e)
    return [
        {"region": r["region"], "lastRan": r.get("lastRan"), "relatedIndexes": r.get("relatedIndexes", [])}
        for r in regions
    ]


@router.put("/regions/{region_id}")
def register_region(region_id: str, request: Request, payload: Dict[str, Any] = Body(...)):
    try:
        record = _pipeline(request).update_regions_index(region_id, payload)
    except (InvalidDataset, PartialBatchFailure, ConnectionUnavailable) as e:
        _fail(e)
    return {"region": record["region"], "id": record["id"], "relatedIndexes": record["relatedIndexes"]}


@router.post("/regions/{region_id}/fetch")
def fetch_region(region_id: str, request: Request, force: bool = False):
    try:
        results = _pipeline(request).fetch_region(region_id, force=force)
    except (RegionNotFound, UpstreamFetchFailure, PartialBatchFailure, ConnectionUnavailable) as e:
        logger.exception("Fetch failed for region %s", region_id)
        _fail(e)
    if results is None:
        return {"status": "skipped", "region": region_id}
    return {"status": "ok", "region": region_id, "count": len(results)}


@router.get("/regions/{region_id}/report")
def region_report(region_id: str, request: Request):
    pipeline = _pipeline(request)
    try:
        pipeline.region_config(region_id)
        name = index_names(region_id, pipeline.base.name, pipeline.enrich.name)["rental_report"]
        return pipeline.store.get(name, size=None, sort=["-date"])
    except (RegionNotFound, IndexNotFound, ConnectionUnavailable) as e:
        _fail(e)
