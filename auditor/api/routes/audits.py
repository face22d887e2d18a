from dataclasses import asdict
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status

from auditor.core.config import Settings, get_settings
from auditor.core.security import require_api_key
from auditor.core.urls import normalize_domain
from auditor.jobs.runner import AuditRunner
from auditor.schemas.audits import AuditCreateRequest, AuditOut, FrontierOut, TickOut
from auditor.services.records import AuditRecord
from auditor.services.repository import get_repository

router = APIRouter()


def get_runner(
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> AuditRunner:
    return AuditRunner.from_settings(repository, settings)


async def _load_audit(audit_id: str, repository) -> AuditRecord:
    audit = await repository.get_audit(audit_id)
    if audit is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="audit not found")
    return audit


@router.post("", response_model=AuditOut, status_code=status.HTTP_201_CREATED, dependencies=[Depends(require_api_key)])
async def create_audit(payload: AuditCreateRequest, repository=Depends(get_repository)) -> AuditOut:
    try:
        domain = normalize_domain(payload.domain)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    audit = await repository.create_audit(domain, now=datetime.now(timezone.utc))
    return AuditOut(**asdict(audit))


@router.get("/{audit_id}", response_model=AuditOut)
async def get_audit(audit_id: str, repository=Depends(get_repository)) -> AuditOut:
    return AuditOut(**asdict(await _load_audit(audit_id, repository)))


@router.get("/{audit_id}/frontier", response_model=FrontierOut)
async def get_frontier(audit_id: str, repository=Depends(get_repository)) -> FrontierOut:
    audit = await _load_audit(audit_id, repository)
    counts = await repository.frontier_counts(audit.id)
    return FrontierOut(
        audit_id=audit.id,
        pending=counts.pending,
        visiting=counts.visiting,
        done=counts.done,
        total=counts.total,
    )


@router.post("/{audit_id}/tick", response_model=TickOut, dependencies=[Depends(require_api_key)])
async def tick_audit(audit_id: str, runner: AuditRunner = Depends(get_runner)) -> TickOut:
    result = await runner.tick(audit_id)
    if result.outcome == "not_found":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="audit not found")
    return TickOut(**asdict(result))
