"""
FastAPI Endpoints for Portal Chat
Visitor-facing endpoints: chat sessions, messages, feedback and view tracking
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from api.auth import get_optional_user
from api.dependencies import ServiceContainer, get_container
from api.envelopes import camelize, run_with_timeout, success
from chat.session_manager import MessageExchange, SessionPreferences, VisitorContext
from database.schemas import AIMessage, ChatSession, MessageType, UserMessageContext
from etl.config import CHAT_CONFIG, TIMEOUT_CONFIG

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/portal", tags=["Portal Chat"])


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='forbid')


class VisitorContextModel(CamelModel):
    visitor_id: Optional[str] = Field(None, max_length=200)
    referrer: Optional[str] = Field(None, max_length=2000)
    user_agent: Optional[str] = Field(None, max_length=1000)


class PreferencesModel(CamelModel):
    language: str = Field(CHAT_CONFIG['default_language'], max_length=10)
    response_style: str = CHAT_CONFIG['default_response_style']


class StartChatRequest(CamelModel):
    """Start chat request model"""
    user_message: Optional[str] = Field(None, max_length=CHAT_CONFIG['max_message_length'])
    context: VisitorContextModel = Field(default_factory=VisitorContextModel)
    preferences: PreferencesModel = Field(default_factory=PreferencesModel)


class MessageContextModel(CamelModel):
    previous_message_id: Optional[str] = None
    topic: Optional[str] = Field(None, max_length=50)


class SendMessageRequest(CamelModel):
    """Chat message request model"""
    message: str = Field(..., min_length=1)
    message_type: MessageType = MessageType.TEXT
    context: MessageContextModel = Field(default_factory=MessageContextModel)

    @field_validator('message')
    @classmethod
    def validate_message(cls, v):
        if not v or not v.strip():
            raise ValueError('Message cannot be empty')
        return v


class FeedbackRequest(CamelModel):
    rating: int = Field(..., ge=1, le=5)
    session_id: Optional[str] = None
    message_id: Optional[str] = None
    comment: Optional[str] = Field(None, max_length=1000)


class ViewRequest(CamelModel):
    visitor_id: Optional[str] = Field(None, max_length=200)
    referrer: Optional[str] = Field(None, max_length=2000)
    user_agent: Optional[str] = Field(None, max_length=1000)
    country: Optional[str] = Field(None, max_length=100)
    city: Optional[str] = Field(None, max_length=100)


def ai_response_payload(message: AIMessage) -> Dict[str, Any]:
    return {
        "message": message.message,
        "message_id": message.message_id,
        "timestamp": message.timestamp,
        "context": {
            "sources": message.context.sources,
            "confidence": message.context.confidence,
            "suggested_follow_ups": message.context.suggested_follow_ups,
        },
    }


def exchange_payload(exchange: MessageExchange) -> Dict[str, Any]:
    return {
        "message_id": exchange.user_message.message_id,
        "ai_response": ai_response_payload(exchange.ai_message),
        "session_status": exchange.session_status,
    }


def session_payload(session: ChatSession) -> Dict[str, Any]:
    return {
        "session_id": session.session_id,
        "portal_id": session.portal_id,
        "status": session.status,
        "created_at": session.created_at,
        "expires_at": session.expires_at,
        "last_activity": session.last_activity,
        "message_count": session.message_count,
        "rag_enabled": session.rag_enabled,
        "context": session.context.model_dump(mode='json'),
        "messages": [m.model_dump(mode='json') for m in session.messages],
    }


@router.post(
    "/{portal_id}/chat/start",
    summary="Start Chat Session",
    description="Create a chat session on a completed portal and return the welcome message"
)
async def start_chat(
    portal_id: str,
    request: Optional[StartChatRequest] = None,
    current_user: Optional[Dict[str, Any]] = Depends(get_optional_user),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    request = request or StartChatRequest()
    user_id = current_user["user_id"] if current_user else None

    started = await run_with_timeout(
        container.session_manager.start_session(
            portal_id,
            visitor=VisitorContext(
                visitor_id=request.context.visitor_id,
                referrer=request.context.referrer,
                user_agent=request.context.user_agent,
            ),
            preferences=SessionPreferences(
                language=request.preferences.language,
                response_style=request.preferences.response_style,
            ),
            user_id=user_id,
            initial_message=request.user_message,
        ),
        TIMEOUT_CONFIG['session_start_seconds'],
        "chat session start",
    )

    body = success(
        session_id=started.session_id,
        portal_id=started.portal_id,
        welcome_message=started.welcome_message,
        context={
            "cv_owner_name": started.cv_owner_name,
            "available_topics": started.available_topics,
            "session_expiry": started.session_expiry,
            "rag_enabled": started.rag_enabled,
            "embeddings_ready": started.embeddings_ready,
        },
    )
    if started.initial_exchange is not None:
        body["initialResponse"] = camelize(exchange_payload(started.initial_exchange))
    return body


@router.post(
    "/{portal_id}/chat/{session_id}/message",
    summary="Send Chat Message",
    description="Send a visitor message and receive the assistant's reply"
)
async def send_message(
    portal_id: str,
    session_id: str,
    request: SendMessageRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    # Generation deadlines degrade to the fallback answer inside the session manager
    exchange = await container.session_manager.post_message(
        portal_id,
        session_id,
        request.message,
        message_type=request.message_type,
        context=UserMessageContext(
            topic=request.context.topic,
            previous_message_id=request.context.previous_message_id,
        ),
    )
    return success(**exchange_payload(exchange))


@router.get(
    "/{portal_id}/chat/{session_id}",
    summary="Get Chat Session"
)
async def get_chat_session(
    portal_id: str,
    session_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    session = await container.session_manager.get_session(portal_id, session_id)
    return success(session=session_payload(session))


@router.post(
    "/{portal_id}/feedback",
    summary="Submit Feedback",
    description="Rate a chat session or a single assistant answer"
)
async def submit_feedback(
    portal_id: str,
    request: FeedbackRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    feedback = await container.session_manager.submit_feedback(
        portal_id,
        request.rating,
        session_id=request.session_id,
        message_id=request.message_id,
        comment=request.comment,
    )
    return success(feedback_id=feedback.feedback_id)


@router.post(
    "/{portal_id}/view",
    status_code=status.HTTP_201_CREATED,
    summary="Record Portal View"
)
async def record_view(
    portal_id: str,
    request: Optional[ViewRequest] = None,
    current_user: Optional[Dict[str, Any]] = Depends(get_optional_user),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    request = request or ViewRequest()
    view = await container.aggregator.record_view(
        portal_id,
        visitor_id=request.visitor_id,
        user_id=current_user["user_id"] if current_user else None,
        referrer=request.referrer,
        user_agent=request.user_agent,
        country=request.country,
        city=request.city,
    )
    return success(view_id=view.view_id)