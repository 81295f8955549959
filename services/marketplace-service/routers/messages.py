"""Messages API router."""
from typing import List

from fastapi import APIRouter, Depends, Path
from sqlalchemy.orm import Session

from database import get_db
from schemas import ConversationResponse, MessageResponse, MessageSentResponse, ReplyRequest, SendMessageRequest
from auth import get_current_user
from dependencies import get_conversation_store
from services.conversation_store import ConversationStore
from services.identity_provider import CallerIdentity

router = APIRouter(prefix="/messages", tags=["messages"])


@router.post("/send", response_model=MessageSentResponse, status_code=201)
async def send_message(
    request: SendMessageRequest,
    db: Session = Depends(get_db),
    caller: CallerIdentity = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store)
):
    """
    Send a message about a product.

    A buyer writes to the product's seller. The seller answers by naming
    the buyer in ``receiverId``. Both directions land in the same
    conversation.
    """
    result = store.start_or_append(
        db,
        product_id=request.product_id,
        sender=caller,
        content=request.content,
        product_name=request.product_name,
        receiver_id=request.receiver_id
    )
    return {"message": "Message sent", **result}


@router.get("/conversations", response_model=List[ConversationResponse])
async def list_conversations(
    caller: CallerIdentity = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store)
):
    """Conversations the caller takes part in, most recent first."""
    return store.list_for_user(caller.id)


@router.get("/{conversation_id}/messages", response_model=List[MessageResponse])
async def list_messages(
    conversation_id: str = Path(..., description="Conversation ID"),
    caller: CallerIdentity = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store)
):
    """Messages of a conversation, oldest first."""
    return store.list_messages(conversation_id, caller.id)


@router.post("/{conversation_id}/messages", response_model=MessageSentResponse, status_code=201)
async def reply(
    request: ReplyRequest,
    conversation_id: str = Path(..., description="Conversation ID"),
    caller: CallerIdentity = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store)
):
    """Append a message to an existing conversation."""
    result = store.reply(conversation_id, caller, request.content)
    return {"message": "Message sent", **result}
