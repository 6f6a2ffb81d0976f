"""
Conversation management endpoints (v1).

CRUD for conversations, message history, and thread resume. Every route
applies the same ownership check: a conversation that does not exist, was
deleted, or belongs to someone else is reported as not found.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Path, Query

from api.dependencies import CurrentUser, Orchestrator
from api.middleware.exception_handlers import ConversationNotFoundError, ValidationException
from api.middleware.request_context import update_request_context
from core.constants import HISTORY_LOAD_LIMIT, LIST_CONVERSATIONS_LIMIT
from models.schemas.conversations import (
    ConversationListResponse,
    ConversationResponse,
    CreateConversationRequest,
    DeleteConversationResponse,
    MessageListResponse,
    MessageResponse,
    ResumeConversationResponse,
    UpdateConversationRequest,
)

router = APIRouter()

ConversationIdPath = Annotated[
    str,
    Path(
        ...,
        description="Conversation identifier (UUID)",
        examples=["1b4e28ba-2fa1-11d2-883f-0016d3cca427"],
        min_length=1,
        max_length=100,
    ),
]


@router.get(
    "",
    response_model=ConversationListResponse,
    summary="List conversations",
    description="Conversations owned by the caller, most recently updated first.",
)
async def list_conversations(
    user: CurrentUser,
    orchestrator: Orchestrator,
    limit: Annotated[
        int,
        Query(ge=1, le=100, description="Maximum conversations to return", examples=[50]),
    ] = LIST_CONVERSATIONS_LIMIT,
) -> ConversationListResponse:
    conversations = await orchestrator.list_conversations(user.id, limit=limit)
    return ConversationListResponse(
        conversations=[ConversationResponse.from_conversation(c) for c in conversations],
        count=len(conversations),
    )


@router.post(
    "",
    response_model=ConversationResponse,
    status_code=201,
    summary="Create conversation",
    description="Create a conversation in the caller's organization.",
)
async def create_conversation(
    user: CurrentUser,
    orchestrator: Orchestrator,
    request: CreateConversationRequest | None = None,
) -> ConversationResponse:
    conversation = await orchestrator.create_conversation(
        user.id,
        organization_id=user.organization_id,
        title=request.title if request else None,
    )
    update_request_context(conversation_id=conversation.id)
    return ConversationResponse.from_conversation(conversation)


@router.get(
    "/{conversation_id}",
    response_model=ConversationResponse,
    summary="Get conversation",
    responses={404: {"description": "Conversation not found or access denied"}},
)
async def get_conversation(
    conversation_id: ConversationIdPath,
    user: CurrentUser,
    orchestrator: Orchestrator,
) -> ConversationResponse:
    conversation = await orchestrator.get_conversation(conversation_id, user.id)
    if conversation is None:
        raise ConversationNotFoundError(conversation_id)
    return ConversationResponse.from_conversation(conversation)


@router.patch(
    "/{conversation_id}",
    response_model=ConversationResponse,
    summary="Rename conversation",
    responses={
        404: {"description": "Conversation not found or access denied"},
        422: {"description": "Title is empty after sanitization"},
    },
)
async def update_conversation(
    conversation_id: ConversationIdPath,
    request: UpdateConversationRequest,
    user: CurrentUser,
    orchestrator: Orchestrator,
) -> ConversationResponse:
    try:
        conversation = await orchestrator.update_title(conversation_id, user.id, request.title)
    except ValueError as e:
        raise ValidationException(message=str(e)) from e

    if conversation is None:
        raise ConversationNotFoundError(conversation_id)
    return ConversationResponse.from_conversation(conversation)


@router.delete(
    "/{conversation_id}",
    response_model=DeleteConversationResponse,
    summary="Delete conversation",
    description="Soft-delete the conversation and its messages and release its agent thread.",
    responses={404: {"description": "Conversation not found or access denied"}},
)
async def delete_conversation(
    conversation_id: ConversationIdPath,
    user: CurrentUser,
    orchestrator: Orchestrator,
) -> DeleteConversationResponse:
    if not await orchestrator.delete_conversation(conversation_id, user.id):
        raise ConversationNotFoundError(conversation_id)
    return DeleteConversationResponse(success=True)


@router.post(
    "/{conversation_id}/resume",
    response_model=ResumeConversationResponse,
    summary="Resume conversation",
    description=(
        "Report whether the conversation's agent thread is still live. "
        "If not, the next message starts a fresh thread."
    ),
    responses={404: {"description": "Conversation not found or access denied"}},
)
async def resume_conversation(
    conversation_id: ConversationIdPath,
    user: CurrentUser,
    orchestrator: Orchestrator,
) -> ResumeConversationResponse:
    if await orchestrator.get_conversation(conversation_id, user.id) is None:
        raise ConversationNotFoundError(conversation_id)
    binding = await orchestrator.resume_conversation(conversation_id, user.id)
    return ResumeConversationResponse.from_binding(binding)


@router.get(
    "/{conversation_id}/messages",
    response_model=MessageListResponse,
    summary="List messages",
    description="Most recent messages of a conversation, oldest first.",
    responses={404: {"description": "Conversation not found or access denied"}},
)
async def list_messages(
    conversation_id: ConversationIdPath,
    user: CurrentUser,
    orchestrator: Orchestrator,
    limit: Annotated[
        int,
        Query(ge=1, le=HISTORY_LOAD_LIMIT, description="Maximum messages to return", examples=[50]),
    ] = HISTORY_LOAD_LIMIT,
) -> MessageListResponse:
    messages = await orchestrator.get_messages(conversation_id, user.id, limit=limit)
    if messages is None:
        raise ConversationNotFoundError(conversation_id)
    return MessageListResponse(
        conversation_id=conversation_id,
        messages=[MessageResponse.from_message(m) for m in messages],
    )
