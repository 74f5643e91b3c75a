from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from ..auth import require_operator
from ..dependencies import get_audit_repository
from ..repository import AuditRepository
from ..schemas import AuditLogRead

router = APIRouter(tags=["audit"])


@router.get("/audit-logs", response_model=list[AuditLogRead])
async def list_audit_logs(
    webinar_id: str | None = Query(default=None, alias="webinarId"),
    limit: int = Query(default=100, ge=1, le=500),
    _: str = Depends(require_operator),
    repository: AuditRepository = Depends(get_audit_repository),
) -> list[AuditLogRead]:
    return await repository.list_entries(webinar_id=webinar_id, limit=limit)
