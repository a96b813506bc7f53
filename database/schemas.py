"""
Pydantic models for the CV portal service
Defines the persisted document shapes and their closed message variants
"""

from datetime import datetime, timezone
from typing import Annotated, List, Optional, Dict, Any, Union, Literal
from enum import Enum
from pydantic import BaseModel, Field, ConfigDict, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Collections:
    """Logical collection names in the document store"""
    PORTALS = "portals"
    PROCESSED_CVS = "processedCVs"
    CHAT_SESSIONS = "chatSessions"
    PORTAL_ANALYTICS = "portalAnalytics"
    PORTAL_VIEWS = "portalViews"
    PORTAL_FEEDBACK = "portalFeedback"
    CV_EMBEDDINGS = "cvEmbeddings"


class StoredModel(BaseModel):
    """Base for persisted documents: timestamps normalized to UTC"""
    model_config = ConfigDict(use_enum_values=False)

    @field_validator('*', mode='after')
    @classmethod
    def normalize_datetimes(cls, v):
        if isinstance(v, datetime):
            return as_utc(v)
        return v

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode='json')


# ---------------------------------------------------------------------------
# Portals
# ---------------------------------------------------------------------------

class PortalStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PortalStatus.COMPLETED, PortalStatus.FAILED)


class PortalTheme(str, Enum):
    PROFESSIONAL = "professional"
    CREATIVE = "creative"
    MINIMAL = "minimal"


class PortalConfig(BaseModel):
    model_config = ConfigDict(extra='forbid')

    theme: PortalTheme = PortalTheme.PROFESSIONAL
    features: List[str] = Field(default_factory=lambda: ['chat', 'analytics', 'sharing'])
    customization: Dict[str, Any] = Field(default_factory=dict)


class PortalUrls(BaseModel):
    portal: str
    chat: str
    contact: str
    download: str


class PortalErrorRecord(StoredModel):
    code: str
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    context: Dict[str, str] = Field(default_factory=dict)


class Portal(StoredModel):
    portal_id: str
    user_id: str
    processed_cv_id: str
    status: PortalStatus = PortalStatus.QUEUED
    config: PortalConfig = Field(default_factory=PortalConfig)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    urls: Optional[PortalUrls] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    steps_completed: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    error: Optional[PortalErrorRecord] = None


# ---------------------------------------------------------------------------
# Chat sessions and messages
# ---------------------------------------------------------------------------

class SessionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    RATE_LIMITED = "rate_limited"


class ResponseStyle(str, Enum):
    PROFESSIONAL = "professional"
    CASUAL = "casual"
    DETAILED = "detailed"


class MessageType(str, Enum):
    TEXT = "text"
    QUESTION = "question"
    FEEDBACK = "feedback"


class SessionContext(BaseModel):
    model_config = ConfigDict(extra='forbid')

    language: str = 'en'
    response_style: ResponseStyle = ResponseStyle.PROFESSIONAL
    referrer: Optional[str] = None
    user_agent: Optional[str] = None


class UserMessageContext(BaseModel):
    model_config = ConfigDict(extra='forbid')

    topic: Optional[str] = None
    previous_message_id: Optional[str] = None


class AIMessageContext(BaseModel):
    model_config = ConfigDict(extra='forbid')

    sources: List[str] = Field(default_factory=list)
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    suggested_follow_ups: List[str] = Field(default_factory=list)
    topic: Optional[str] = None
    fallback: bool = False


class UserMessage(StoredModel):
    model_config = ConfigDict(extra='forbid')

    type: Literal['user'] = 'user'
    message_id: str
    message: str
    message_type: MessageType = MessageType.TEXT
    timestamp: datetime = Field(default_factory=utcnow)
    context: UserMessageContext = Field(default_factory=UserMessageContext)


class AIMessage(StoredModel):
    model_config = ConfigDict(extra='forbid')

    type: Literal['ai'] = 'ai'
    message_id: str
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    context: AIMessageContext = Field(default_factory=AIMessageContext)


Message = Annotated[Union[UserMessage, AIMessage], Field(discriminator='type')]


class ChatSession(StoredModel):
    session_id: str
    portal_id: str
    processed_cv_id: str
    user_id: Optional[str] = None
    visitor_id: Optional[str] = None
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    last_activity: Optional[datetime] = None
    messages: List[Message] = Field(default_factory=list)
    message_count: int = 0
    context: SessionContext = Field(default_factory=SessionContext)
    rag_enabled: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return as_utc(now) > self.expires_at

    @property
    def exchange_count(self) -> int:
        return sum(1 for m in self.messages if m.type == 'ai')

    def user_messages(self) -> List[UserMessage]:
        return [m for m in self.messages if m.type == 'user']


# ---------------------------------------------------------------------------
# Analytics events and counters
# ---------------------------------------------------------------------------

class PortalView(StoredModel):
    view_id: str
    portal_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    visitor_id: Optional[str] = None
    user_id: Optional[str] = None
    referrer: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None


class PortalFeedback(StoredModel):
    feedback_id: str
    portal_id: str
    session_id: Optional[str] = None
    message_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)
    created_at: datetime = Field(default_factory=utcnow)


class PortalCounters(StoredModel):
    portal_id: str
    chat_sessions_started: int = 0
    total_messages: int = 0
    total_views: int = 0
    unique_visitors: int = 0
    created_at: Optional[datetime] = None
    last_activity: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Retrieval index
# ---------------------------------------------------------------------------

class IndexedChunk(BaseModel):
    chunk_id: str
    content: str
    section: str
    type: str
    chunk_index: int
    token_count: int
    embedding: List[float]


class CVIndex(StoredModel):
    processed_cv_id: str
    model: str
    dimensions: int
    chunks: List[IndexedChunk] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
