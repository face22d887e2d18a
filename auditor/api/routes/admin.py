from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from auditor.core.config import Settings, get_settings
from auditor.core.security import require_api_key
from auditor.schemas.audits import AdminStatsOut
from auditor.services.repository import get_repository

router = APIRouter()


@router.get("/stats", response_model=AdminStatsOut, dependencies=[Depends(require_api_key)])
async def get_stats(
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> AdminStatsOut:
    stats = await repository.audit_stats(
        now=datetime.now(timezone.utc),
        heartbeat_cap_seconds=settings.heartbeat_hard_cap_seconds,
    )
    return AdminStatsOut(**stats)
