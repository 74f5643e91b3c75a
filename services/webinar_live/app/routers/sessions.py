from __future__ import annotations

from fastapi import APIRouter, Body, Depends

from ..auth import require_operator
from ..dependencies import get_controller
from ..lifecycle import SessionLifecycleController
from ..payloads import CtaPopupPayload
from ..schemas import (
    CtaBroadcastRequest,
    ElapsedResponse,
    RescheduleRequest,
    SessionStateResponse,
    StopRequest,
    WebinarSummary,
)

router = APIRouter(prefix="/webinars", tags=["sessions"])


@router.post("/{webinar_id}/start", response_model=SessionStateResponse)
async def start_webinar(
    webinar_id: str,
    actor_id: str = Depends(require_operator),
    controller: SessionLifecycleController = Depends(get_controller),
) -> SessionStateResponse:
    await controller.start(webinar_id, actor_id=actor_id)
    return await controller.describe(webinar_id)


@router.post("/{webinar_id}/stop", response_model=SessionStateResponse)
async def stop_webinar(
    webinar_id: str,
    payload: StopRequest | None = Body(default=None),
    actor_id: str = Depends(require_operator),
    controller: SessionLifecycleController = Depends(get_controller),
) -> SessionStateResponse:
    reason = payload.reason if payload else "ended"
    await controller.stop(webinar_id, reason=reason, actor_id=actor_id)
    return await controller.describe(webinar_id)


@router.post("/{webinar_id}/reschedule", response_model=WebinarSummary)
async def reschedule_webinar(
    webinar_id: str,
    payload: RescheduleRequest,
    actor_id: str = Depends(require_operator),
    controller: SessionLifecycleController = Depends(get_controller),
) -> WebinarSummary:
    return await controller.reschedule(webinar_id, scheduled_at=payload.scheduled_at, actor_id=actor_id)


@router.get("/{webinar_id}/elapsed", response_model=ElapsedResponse)
async def get_elapsed(
    webinar_id: str,
    controller: SessionLifecycleController = Depends(get_controller),
) -> ElapsedResponse:
    state = await controller.describe(webinar_id)
    return ElapsedResponse(
        webinar_id=webinar_id, elapsed_seconds=state.elapsed_seconds, is_live=state.is_live
    )


@router.get("/{webinar_id}/state", response_model=SessionStateResponse)
async def get_state(
    webinar_id: str,
    controller: SessionLifecycleController = Depends(get_controller),
) -> SessionStateResponse:
    return await controller.describe(webinar_id)


@router.post("/{webinar_id}/cta")
async def push_cta(
    webinar_id: str,
    payload: CtaBroadcastRequest,
    _: str = Depends(require_operator),
    controller: SessionLifecycleController = Depends(get_controller),
) -> dict[str, int]:
    cta = CtaPopupPayload(**payload.model_dump())
    delivered = await controller.broadcast_cta(webinar_id, cta)
    return {"delivered": delivered}
