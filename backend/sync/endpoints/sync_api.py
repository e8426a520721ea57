"""
Bank Sync API Endpoints

REST API for bank synchronization:
- POST /api/sync/trigger - Start a sync run (returns immediately)
- GET /api/sync/status/{sync_run_id} - Poll a sync run
- GET /api/sync/history - Sync runs, newest first
- GET /api/sync/review - Transactions flagged for duplicate review
- POST /api/sync/review/{external_id}/approve - Import as new
- POST /api/sync/review/{external_id}/reject - Mark as duplicate
- POST /api/sync/review/{external_id}/link - Link to a local transaction
- GET /api/sync/providers - Supported providers
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_db
from sync.errors import (
    ConnectionNotFoundError,
    ReviewError,
    SyncAlreadyRunningError,
    UnsupportedProviderError,
)
from sync.providers.factory import provider_factory
from sync.services.review_service import ReviewService
from sync.services.sync_orchestrator import SyncOptions
from sync.workers.sync_runner import SyncRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["Bank Sync"])


# ==================== Request/Response Models ====================

class SyncOptionsRequest(BaseModel):
    start_date: Optional[datetime] = Field(default=None, description="Window start (defaults to last sync - 1 day)")
    end_date: Optional[datetime] = Field(default=None, description="Window end (defaults to now)")
    force_full: bool = Field(default=False, description="Record the run as a FULL sync")


class TriggerSyncRequest(BaseModel):
    """Request to start a sync run."""
    connection_id: str = Field(..., description="Bank connection ID")
    options: Optional[SyncOptionsRequest] = None


class TriggerSyncResponse(BaseModel):
    sync_run_id: str
    status: str
    started_at: datetime


class SyncRunResponse(BaseModel):
    """Response for a sync run."""
    id: str
    connection_id: str
    type: Optional[str]
    status: Optional[str]
    started_at: Optional[str]
    completed_at: Optional[str]
    accounts_synced: int
    transactions_fetched: int
    transactions_imported: int
    duplicates_detected: int
    needs_review: int
    error_message: Optional[str]
    error_details: Optional[dict]


class SyncHistoryResponse(BaseModel):
    runs: List[SyncRunResponse]
    total: int
    limit: int
    offset: int


class LinkTransactionRequest(BaseModel):
    local_transaction_id: str = Field(..., description="Local ledger transaction to link to")


# ==================== Dependencies ====================

def get_sync_runner(request: Request) -> SyncRunner:
    return request.app.state.sync_runner


def review_error_to_http(error: ReviewError) -> HTTPException:
    return HTTPException(status_code=404 if error.not_found else 400, detail=str(error))


# ==================== Endpoints ====================

@router.get("/providers", summary="Supported providers")
async def list_providers():
    return {"providers": provider_factory.get_supported_providers()}


@router.post("/trigger", response_model=TriggerSyncResponse, summary="Trigger sync")
async def trigger_sync(
    request: TriggerSyncRequest,
    runner: SyncRunner = Depends(get_sync_runner)
):
    """
    Start a sync run for a connection.

    The run executes in the background; poll /sync/status/{sync_run_id}.
    Returns 409 while a run for the same connection is in flight.
    """
    options = SyncOptions()
    if request.options:
        options = SyncOptions(
            start_date=request.options.start_date,
            end_date=request.options.end_date,
            force_full=request.options.force_full
        )

    try:
        triggered = await runner.trigger(request.connection_id, options)
    except ConnectionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SyncAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except UnsupportedProviderError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to trigger sync for connection {request.connection_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to trigger sync")

    return TriggerSyncResponse(
        sync_run_id=triggered.sync_run_id,
        status="IN_PROGRESS",
        started_at=triggered.started_at
    )


@router.get("/status/{sync_run_id}", response_model=SyncRunResponse, summary="Get sync status")
async def get_sync_status(sync_run_id: str, db: AsyncSession = Depends(get_db)):
    run = await ReviewService(db).get_sync_status(sync_run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Sync run not found")
    return run


@router.get("/history", response_model=SyncHistoryResponse, summary="Get sync history")
async def get_sync_history(
    connection_id: Optional[str] = Query(default=None, description="Filter by connection"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db)
):
    return await ReviewService(db).get_sync_history(connection_id=connection_id, limit=limit, offset=offset)


@router.get("/review", summary="Transactions needing review")
async def get_review_transactions(
    connection_id: Optional[str] = Query(default=None, description="Filter by connection"),
    db: AsyncSession = Depends(get_db)
):
    items = await ReviewService(db).list_review_transactions(connection_id)
    return {"items": items}


@router.post("/review/{external_id}/approve", summary="Approve (import as new)")
async def approve_transaction(external_id: str, db: AsyncSession = Depends(get_db)):
    try:
        return await ReviewService(db).approve(external_id)
    except ReviewError as e:
        raise review_error_to_http(e)


@router.post("/review/{external_id}/reject", summary="Reject (mark as duplicate)")
async def reject_transaction(external_id: str, db: AsyncSession = Depends(get_db)):
    try:
        return await ReviewService(db).reject(external_id)
    except ReviewError as e:
        raise review_error_to_http(e)


@router.post("/review/{external_id}/link", summary="Link to a local transaction")
async def link_transaction(
    external_id: str,
    request: LinkTransactionRequest,
    db: AsyncSession = Depends(get_db)
):
    try:
        return await ReviewService(db).link(external_id, request.local_transaction_id)
    except ReviewError as e:
        raise review_error_to_http(e)
