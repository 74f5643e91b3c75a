from __future__ import annotations

from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile, status
from pydantic import ValidationError

from ..auth import require_operator
from ..automation import AutomationScheduler
from ..csv_import import CsvImportError, import_timeline
from ..dependencies import get_automation_repository, get_scheduler
from ..errors import NotFoundError
from ..payloads import serialize_content
from ..repository import AutomationRepository
from ..schemas import AutomationCreate, AutomationRead, AutomationUpdate, FireResult, ImportResult

router = APIRouter(tags=["automations"])


def _content(kind: str, content: dict | str) -> str:
    try:
        return serialize_content(kind, content)
    except ValidationError as error:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=error.errors(include_url=False),
        ) from error


@router.get("/webinars/{webinar_id}/automations", response_model=list[AutomationRead])
async def list_automations(
    webinar_id: str,
    _: str = Depends(require_operator),
    repository: AutomationRepository = Depends(get_automation_repository),
) -> list[AutomationRead]:
    return await repository.list_for_webinar(webinar_id)


@router.post(
    "/webinars/{webinar_id}/automations",
    response_model=AutomationRead,
    status_code=status.HTTP_201_CREATED,
)
async def create_automation(
    webinar_id: str,
    payload: AutomationCreate,
    _: str = Depends(require_operator),
    repository: AutomationRepository = Depends(get_automation_repository),
) -> AutomationRead:
    return await repository.create(
        webinar_id,
        kind=payload.kind,
        trigger_offset_seconds=payload.trigger_offset_seconds,
        content=_content(payload.kind.value, payload.content),
        enabled=payload.enabled,
    )


@router.put("/automations/{automation_id}", response_model=AutomationRead)
async def update_automation(
    automation_id: str,
    payload: AutomationUpdate,
    _: str = Depends(require_operator),
    repository: AutomationRepository = Depends(get_automation_repository),
) -> AutomationRead:
    existing = await repository.get(automation_id)
    if existing is None:
        raise NotFoundError("automation", automation_id)
    values = payload.model_dump(exclude_unset=True, exclude_none=True)
    kind = payload.kind or existing.kind
    values["kind"] = kind.value
    if payload.content is not None:
        values["content"] = _content(kind.value, payload.content)
    return await repository.update(automation_id, values)


@router.delete("/automations/{automation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_automation(
    automation_id: str,
    _: str = Depends(require_operator),
    repository: AutomationRepository = Depends(get_automation_repository),
) -> Response:
    await repository.delete(automation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/automations/{automation_id}/fire", response_model=FireResult)
async def fire_automation(
    automation_id: str,
    _: str = Depends(require_operator),
    scheduler: AutomationScheduler = Depends(get_scheduler),
) -> FireResult:
    fired = await scheduler.fire_now(automation_id)
    return FireResult(automation_id=automation_id, fired=fired)


@router.post("/webinars/{webinar_id}/automations/csv", response_model=ImportResult)
async def import_automations(
    webinar_id: str,
    file: UploadFile = File(...),
    actor_id: str = Depends(require_operator),
    repository: AutomationRepository = Depends(get_automation_repository),
) -> ImportResult:
    raw = await file.read()
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError as error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="CSV must be UTF-8") from error
    try:
        imported = await import_timeline(repository, webinar_id, text, actor_id=actor_id)
    except CsvImportError as error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error)) from error
    return ImportResult(webinar_id=webinar_id, imported=imported)
