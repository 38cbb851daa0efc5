"""
API endpoints for local-first dataset sync
"""

from fastapi import APIRouter, HTTPException, Depends, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime, timezone
import logging

from scholartrack.core.database import get_db
from scholartrack.services.sync import SyncService, SyncConflictError
from scholartrack.schemas.sync import (
    SyncUpRequest,
    SyncFullRequest,
    SyncUpResponse,
    SyncDownResponse,
    SyncFullResponse
)

logger = logging.getLogger(__name__)
router = APIRouter()


def _conflict(e: SyncConflictError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"message": str(e), "conflicts": e.conflicts}
    )


@router.post("/up", response_model=SyncUpResponse)
async def sync_up(
    payload: SyncUpRequest,
    db: AsyncSession = Depends(get_db)
):
    """Upsert the client's complete dataset into the server store"""

    try:
        counts = await SyncService(db).sync_up(payload)
        return SyncUpResponse(
            message="Data synced successfully",
            timestamp=datetime.now(timezone.utc),
            synced=counts
        )

    except SyncConflictError as e:
        raise _conflict(e)
    except SQLAlchemyError as e:
        logger.error(f"Up-sync failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Sync failed: {str(e)}"
        )


@router.get("/down", response_model=SyncDownResponse, response_model_exclude_none=True)
async def sync_down(db: AsyncSession = Depends(get_db)):
    """Return the server's complete dataset"""

    try:
        dataset = await SyncService(db).sync_down()
        logger.info(
            f"Down-sync served {len(dataset.students)} students, {len(dataset.classes)} classes, "
            f"{len(dataset.transactions)} transactions"
        )
        return SyncDownResponse(
            message="Data retrieved successfully",
            timestamp=datetime.now(timezone.utc),
            data=dataset
        )

    except SQLAlchemyError as e:
        logger.error(f"Down-sync failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to load data: {str(e)}"
        )


@router.post("/full", response_model=SyncFullResponse, response_model_exclude_none=True)
async def sync_full(
    payload: SyncFullRequest,
    db: AsyncSession = Depends(get_db)
):
    """Up-sync, then return the resulting server dataset in the same response"""

    try:
        counts, dataset = await SyncService(db).sync_full(payload)
        return SyncFullResponse(
            message="Full sync completed successfully",
            timestamp=datetime.now(timezone.utc),
            synced=counts,
            data=dataset
        )

    except SyncConflictError as e:
        raise _conflict(e)
    except SQLAlchemyError as e:
        logger.error(f"Full sync failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Full sync failed: {str(e)}"
        )
