from __future__ import annotations

from fastapi import APIRouter, Depends

from ..auth import require_operator
from ..broadcaster import BroadcastHub
from ..dependencies import get_chat_repository, get_hub
from ..repository import ChatRepository
from ..schemas import ChatMessageRead

router = APIRouter(tags=["chat"])


@router.get("/webinars/{webinar_id}/chat", response_model=list[ChatMessageRead])
async def list_chat_messages(
    webinar_id: str,
    include_deleted: bool = False,
    _: str = Depends(require_operator),
    repository: ChatRepository = Depends(get_chat_repository),
) -> list[ChatMessageRead]:
    return await repository.list_all(webinar_id, include_deleted=include_deleted)


@router.post("/chat/{message_id}/pin", response_model=ChatMessageRead)
async def pin_message(
    message_id: str,
    actor_id: str = Depends(require_operator),
    repository: ChatRepository = Depends(get_chat_repository),
    hub: BroadcastHub = Depends(get_hub),
) -> ChatMessageRead:
    message = await repository.pin(message_id, actor_id=actor_id)
    await hub.emit(message.webinar_id, "chat:pinned", message.to_wire())
    return message


@router.post("/chat/{message_id}/unpin", response_model=ChatMessageRead)
async def unpin_message(
    message_id: str,
    actor_id: str = Depends(require_operator),
    repository: ChatRepository = Depends(get_chat_repository),
    hub: BroadcastHub = Depends(get_hub),
) -> ChatMessageRead:
    message = await repository.unpin(message_id, actor_id=actor_id)
    await hub.emit(message.webinar_id, "chat:unpinned", {"messageId": message.id})
    return message


@router.delete("/chat/{message_id}", response_model=ChatMessageRead)
async def delete_message(
    message_id: str,
    actor_id: str = Depends(require_operator),
    repository: ChatRepository = Depends(get_chat_repository),
    hub: BroadcastHub = Depends(get_hub),
) -> ChatMessageRead:
    message = await repository.soft_delete(message_id, actor_id=actor_id)
    await hub.emit(message.webinar_id, "chat:deleted", {"messageId": message.id})
    return message
