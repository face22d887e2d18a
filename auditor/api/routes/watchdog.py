from dataclasses import asdict

from fastapi import APIRouter, Depends

from auditor.core.config import Settings, get_settings
from auditor.core.security import require_api_key
from auditor.jobs.watchdog import WatchdogConfig, run_watchdog
from auditor.schemas.audits import WatchdogReportOut
from auditor.services.repository import get_repository

router = APIRouter()


@router.post("/sweep", response_model=WatchdogReportOut, dependencies=[Depends(require_api_key)])
async def sweep(
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> WatchdogReportOut:
    report = await run_watchdog(repository, WatchdogConfig.from_settings(settings))
    return WatchdogReportOut(**asdict(report))
