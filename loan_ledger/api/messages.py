"""
Message inbox endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query

from .auth import LedgerSystem, get_ledger_system, get_current_user
from ..loans import Caller
from ..notifications import MessageType
from ..errors import InvalidInputError, NotFoundError


router = APIRouter()


@router.get("")
async def list_messages(
    message_type: Optional[str] = Query(None, alias="type"),
    unread_only: bool = False,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    try:
        kind = MessageType(message_type) if message_type else None
    except ValueError:
        raise InvalidInputError(f"Invalid message type: {message_type}")

    messages = system.message_store.list_messages(message_type=kind, unread_only=unread_only)
    return {
        "messages": [m.to_dict() for m in messages],
        "count": len(messages),
        "unread_count": system.message_store.unread_count(),
    }


@router.put("/{message_id}/read")
async def mark_message_read(
    message_id: str,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    message = system.message_store.mark_read(message_id)
    if not message:
        raise NotFoundError(f"Message {message_id} not found")
    return {"message": message.to_dict()}
