"""FastAPI routes for triggering attribution sync and reading quiz analytics."""
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..config import SyncSettings
from ..reporting import build_quiz_report
from ..runtime import open_database, open_sync_orchestrator
from ..schemas.models import QuizReport, SyncResult
from ..storage.analytics import AnalyticsStore
from ..storage.sessions import SessionStore
from ..sync.exceptions import (
    InconsistentAttribution,
    InvalidWindow,
    SyncInProgressError,
    UpstreamUnavailable,
)
from ..sync.orchestrator import SyncOrchestrator
from .auth import require_api_key


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["sync"])


def get_settings() -> SyncSettings:
    return SyncSettings.from_env()


async def get_orchestrator(
    settings: SyncSettings = Depends(get_settings),
) -> AsyncIterator[SyncOrchestrator]:
    async with open_sync_orchestrator(settings) as orchestrator:
        yield orchestrator


async def get_db_connection(
    settings: SyncSettings = Depends(get_settings),
) -> AsyncIterator[sqlite3.Connection]:
    with open_database(settings) as db_conn:
        yield db_conn


@router.post(
    "/sync/{shop}",
    response_model=SyncResult,
    dependencies=[Depends(require_api_key)],
    summary="Run one attribution sync pass for a shop",
    description=(
        "Attributes the shop's orders since its watermark to quiz sessions "
        "and rolls the results into daily summaries. Safe to call repeatedly."
    ),
)
async def trigger_sync(
    shop: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncResult:
    """Run run_sync(shop) and map pipeline errors to HTTP statuses.

    - 409 if a pass for this shop is already running
    - 400 for an invalid window (configuration error)
    - 503 if the session store or order feed is unavailable
    - 500 for an inconsistent attribution snapshot
    """
    try:
        return await orchestrator.run_sync(shop)
    except SyncInProgressError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except InvalidWindow as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except UpstreamUnavailable as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        )
    except InconsistentAttribution as exc:
        logger.error("Inconsistent attribution for shop=%s: %s", shop, exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        )


@router.get(
    "/analytics/{shop}/{quiz_id}",
    response_model=QuizReport,
    dependencies=[Depends(require_api_key)],
    summary="Quiz performance report",
)
async def get_quiz_report(
    shop: str,
    quiz_id: str,
    days: int = Query(30, ge=1, le=365, description="Days of history to include"),
    settings: SyncSettings = Depends(get_settings),
    db_conn: sqlite3.Connection = Depends(get_db_connection),
) -> QuizReport:
    """Completion rate, answer popularity and daily attributed revenue."""
    since = datetime.now(timezone.utc) - timedelta(days=days)
    try:
        return build_quiz_report(
            SessionStore(db_conn),
            AnalyticsStore(db_conn),
            shop,
            quiz_id,
            since=since,
            tz=settings.reporting_timezone,
        )
    except UpstreamUnavailable as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        )
