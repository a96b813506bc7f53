"""
Chat session lifecycle for interactive CV portals.

Sessions are created against completed portals, expire 24 hours after creation
(absolute, not sliding), and accept user messages subject to a sliding
rate-limit window. Each accepted message produces one assistant reply; the pair
is appended to the stored session in a single optimistic update so
`message_count` is always twice the number of completed exchanges.

Retrieval and generation failures never fail a send: they are replaced by a
fixed fallback answer.
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from chat.errors import (
    InvalidInputError,
    PortalNotFound,
    PortalNotReady,
    RateLimited,
    SessionExpired,
    SessionNotFound,
    SessionPortalMismatch,
)
from chat.rate_limiter import SlidingWindowRateLimiter
from database.repositories import (
    AnalyticsRepository,
    ChatSessionRepository,
    PortalRepository,
    ProcessedCVRepository,
)
from database.schemas import (
    AIMessage,
    AIMessageContext,
    ChatSession,
    MessageType,
    PortalFeedback,
    PortalStatus,
    ResponseStyle,
    SessionContext,
    SessionStatus,
    UserMessage,
    UserMessageContext,
    utcnow,
)
from etl.config import CHAT_CONFIG, TIMEOUT_CONFIG
from etl.logging_config import get_portal_logger
from monitoring.metrics import inc as metrics_inc, observe as metrics_observe
from rag.context_builder import ChatContext, history_from_messages
from rag.question_processor import ProcessedQuestion, QuestionProcessor
from rag.response_generator import GeneratedAnswer, ResponseGenerator, fallback_welcome_message
from rag.retrieval_engine import RetrievalEngine

logger = logging.getLogger(__name__)
chat_logger = structlog.get_logger("chat_sessions")

FALLBACK_MESSAGE = (
    "I'm sorry, but I'm currently experiencing technical difficulties with my advanced search "
    "capabilities. I can still help you learn about {name}, but my responses may be more limited. "
    "Please try asking your question again, or contact support if the issue persists."
)
FALLBACK_SOURCES = ["System Message"]
FALLBACK_CONFIDENCE = 0.5
FALLBACK_FOLLOW_UPS = [
    "Tell me about their experience",
    "What skills do they have?",
    "What is their educational background?",
]

SUPPORTED_LANGUAGES = {'en', 'es', 'fr', 'de', 'it', 'pt', 'ja', 'ko', 'zh'}

# Left unspent of the start budget for storing the session and the response
INITIAL_MESSAGE_MARGIN_SECONDS = 1.0


@dataclass
class VisitorContext:
    visitor_id: Optional[str] = None
    referrer: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class SessionPreferences:
    language: str = CHAT_CONFIG['default_language']
    response_style: str = CHAT_CONFIG['default_response_style']


@dataclass
class MessageExchange:
    user_message: UserMessage
    ai_message: AIMessage
    session_status: SessionStatus = SessionStatus.ACTIVE


@dataclass
class SessionStart:
    session_id: str
    portal_id: str
    welcome_message: str
    cv_owner_name: str
    available_topics: List[str]
    session_expiry: datetime
    rag_enabled: bool
    embeddings_ready: bool
    initial_exchange: Optional[MessageExchange] = None


def cv_owner_name(cv: Optional[Dict[str, Any]]) -> Optional[str]:
    return ((cv or {}).get('personalInfo') or {}).get('name')


def cv_title(cv: Optional[Dict[str, Any]]) -> Optional[str]:
    cv = cv or {}
    title = (cv.get('personalInfo') or {}).get('title')
    if not title and isinstance(cv.get('summary'), dict):
        title = cv['summary'].get('title')
    return title


def extract_available_topics(cv: Optional[Dict[str, Any]]) -> List[str]:
    topics = ['Experience', 'Skills', 'Education']
    cv = cv or {}
    for key, label in (
        ('projects', 'Projects'),
        ('certifications', 'Certifications'),
        ('achievements', 'Achievements'),
        ('languages', 'Languages'),
    ):
        if cv.get(key):
            topics.append(label)
    return topics


def fallback_answer(owner_name: Optional[str]) -> GeneratedAnswer:
    return GeneratedAnswer(
        message=FALLBACK_MESSAGE.format(name=owner_name or 'this professional'),
        sources=list(FALLBACK_SOURCES),
        confidence=FALLBACK_CONFIDENCE,
        follow_ups=list(FALLBACK_FOLLOW_UPS),
    )


def _timestamp_ms(now: datetime) -> int:
    return int(now.timestamp() * 1000)


def new_session_id(now: datetime) -> str:
    return f"session_{_timestamp_ms(now)}_{secrets.token_hex(5)}"


def new_message_id(now: datetime, kind: str, nonce: str) -> str:
    return f"msg_{_timestamp_ms(now)}_{nonce}_{kind}"


class ChatSessionManager:
    """Owns the chat session state machine: start, expiry, rate limiting and message appends."""

    def __init__(
        self,
        portals: PortalRepository,
        sessions: ChatSessionRepository,
        cvs: ProcessedCVRepository,
        analytics: AnalyticsRepository,
        retrieval_engine: Optional[RetrievalEngine] = None,
        response_generator: Optional[ResponseGenerator] = None,
        question_processor: Optional[QuestionProcessor] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        clock: Callable[[], datetime] = utcnow,
        session_ttl: timedelta = timedelta(hours=CHAT_CONFIG['session_ttl_hours']),
        history_size: int = CHAT_CONFIG['history_size'],
        generation_timeout: float = TIMEOUT_CONFIG['message_send_seconds'],
        start_timeout: float = TIMEOUT_CONFIG['session_start_seconds'],
        index_timeout: float = TIMEOUT_CONFIG['session_start_seconds'] * 0.75,
    ):
        self.portals = portals
        self.sessions = sessions
        self.cvs = cvs
        self.analytics = analytics
        self.retrieval_engine = retrieval_engine
        self.response_generator = response_generator
        self.question_processor = question_processor or QuestionProcessor()
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.clock = clock
        self.session_ttl = session_ttl
        self.history_size = history_size
        self.generation_timeout = generation_timeout
        self.start_timeout = start_timeout
        self.index_timeout = index_timeout

    @property
    def rag_available(self) -> bool:
        return self.retrieval_engine is not None and self.response_generator is not None

    # =======================
    # Session start
    # =======================
    async def start_session(
        self,
        portal_id: str,
        visitor: Optional[VisitorContext] = None,
        preferences: Optional[SessionPreferences] = None,
        user_id: Optional[str] = None,
        initial_message: Optional[str] = None,
    ) -> SessionStart:
        started_at = time.monotonic()
        if not portal_id or not portal_id.strip():
            raise InvalidInputError("Portal ID is required")
        visitor = visitor or VisitorContext()
        language, response_style = self._resolve_preferences(preferences or SessionPreferences())
        if initial_message and initial_message.strip():
            self.question_processor.validate_question(initial_message)
        log = get_portal_logger(__name__, portal_id=portal_id, user_id=user_id)

        portal = await self.portals.get(portal_id)
        if portal is None:
            raise PortalNotFound(portal_id=portal_id)
        if portal.status != PortalStatus.COMPLETED:
            raise PortalNotReady(portal_id=portal_id, status=portal.status.value)

        cv = await self.cvs.get(portal.processed_cv_id)
        embeddings_ready, rag_enabled = await self._prepare_retrieval(portal.processed_cv_id, cv)

        now = self.clock()
        session = ChatSession(
            session_id=new_session_id(now),
            portal_id=portal_id,
            processed_cv_id=portal.processed_cv_id,
            user_id=user_id,
            visitor_id=visitor.visitor_id,
            status=SessionStatus.ACTIVE,
            created_at=now,
            expires_at=now + self.session_ttl,
            context=SessionContext(
                language=language,
                response_style=response_style,
                referrer=visitor.referrer,
                user_agent=visitor.user_agent,
            ),
            rag_enabled=rag_enabled,
            metadata={
                'version': CHAT_CONFIG['session_version'],
                'portal_version': portal.metadata.get('version'),
            },
        )
        await self.sessions.create(session)

        owner = cv_owner_name(cv)
        chat_context = ChatContext(cv_owner_name=owner, cv_title=cv_title(cv), language=language)
        if rag_enabled:
            welcome = self.response_generator.generate_welcome_message(chat_context)
        else:
            welcome = fallback_welcome_message(owner, chat_context.cv_title, language)

        await self._bump_counters(portal_id, chat_sessions_started=1)
        await metrics_inc("chat_sessions_started_total", labels={"rag_enabled": rag_enabled})
        log.info(f"Started chat session {session.session_id} (rag_enabled={rag_enabled})")
        chat_logger.info(
            "Chat session started",
            portal_id=portal_id,
            session_id=session.session_id,
            rag_enabled=rag_enabled,
            embeddings_ready=embeddings_ready,
            language=language,
        )

        result = SessionStart(
            session_id=session.session_id,
            portal_id=portal_id,
            welcome_message=welcome,
            cv_owner_name=owner or 'Professional',
            available_topics=extract_available_topics(cv),
            session_expiry=session.expires_at,
            rag_enabled=rag_enabled,
            embeddings_ready=embeddings_ready,
        )

        if initial_message and initial_message.strip():
            result.initial_exchange = await self._initial_exchange(
                portal_id, session.session_id, initial_message, started_at
            )

        return result

    def _resolve_preferences(self, preferences: SessionPreferences) -> Tuple[str, ResponseStyle]:
        language = (preferences.language or 'en').lower()
        if language not in SUPPORTED_LANGUAGES:
            language = 'en'
        try:
            response_style = ResponseStyle(preferences.response_style or 'professional')
        except ValueError:
            raise InvalidInputError(f"Unsupported response style: {preferences.response_style}")
        return language, response_style

    async def _initial_exchange(
        self, portal_id: str, session_id: str, text: str, started_at: float
    ) -> Optional[MessageExchange]:
        """
        Answer the opening message inside what is left of the start budget

        The session is already stored at this point, so a failure here leaves
        it open with no initial exchange instead of failing the start.
        """
        remaining = self.start_timeout - (time.monotonic() - started_at) - INITIAL_MESSAGE_MARGIN_SECONDS
        if remaining <= 0:
            logger.warning(f"No start budget left to answer the initial message of session {session_id}")
            return None
        try:
            return await self.post_message(
                portal_id, session_id, text, generation_timeout=min(self.generation_timeout, remaining)
            )
        except Exception as e:
            logger.warning(f"Initial message of session {session_id} was not answered: {e}")
            await metrics_inc("chat_initial_message_errors_total")
            return None

    async def _prepare_retrieval(self, processed_cv_id: str, cv: Optional[Dict[str, Any]]) -> Tuple[bool, bool]:
        """Return (index existed before, retrieval usable for this session)"""
        if not self.rag_available:
            return False, False
        try:
            embeddings_ready = await self.retrieval_engine.has_index(processed_cv_id)
        except Exception as e:
            logger.warning(f"Index lookup failed for CV {processed_cv_id}: {e}")
            return False, False
        if embeddings_ready:
            return True, True

        logger.info(f"No index found for CV {processed_cv_id}, attempting to build one")
        try:
            rag_enabled = await asyncio.wait_for(
                self.retrieval_engine.ensure_index(processed_cv_id, cv), timeout=self.index_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Index construction for CV {processed_cv_id} timed out after {self.index_timeout}s")
            rag_enabled = False
        return False, rag_enabled

    # =======================
    # Messages
    # =======================
    async def post_message(
        self,
        portal_id: str,
        session_id: str,
        text: str,
        message_type: MessageType = MessageType.TEXT,
        context: Optional[UserMessageContext] = None,
        generation_timeout: Optional[float] = None,
    ) -> MessageExchange:
        start = time.time()
        await metrics_inc("chat_requests_total")
        log = get_portal_logger(__name__, portal_id=portal_id, session_id=session_id)

        context = context or UserMessageContext()
        question = self.question_processor.process_question(text, context.topic)

        session = await self._load_active_session(portal_id, session_id)
        accepted_at = self.clock()
        try:
            self._enforce_rate_limit(session, accepted_at)
        except RateLimited:
            await self._record_rate_limited(session_id)
            raise

        answer, used_fallback = await self._answer(session, question, generation_timeout or self.generation_timeout)

        user_message, ai_message = self._build_pair(
            question, message_type, context, answer, used_fallback, accepted_at
        )

        def append(current: Optional[ChatSession]) -> ChatSession:
            if current is None:
                raise SessionNotFound(session_id=session_id)
            if current.status == SessionStatus.EXPIRED or current.is_expired(self.clock()):
                raise SessionExpired(session_id=session_id)
            # Re-check against the latest stored state so overlapping sends cannot exceed the limit
            self._enforce_rate_limit(current, accepted_at)
            current.messages.extend([user_message, ai_message])
            current.message_count += 2
            current.last_activity = ai_message.timestamp
            return current

        try:
            await self.sessions.update(session_id, append)
        except SessionExpired:
            await self._mark_expired(session_id)
            raise
        except RateLimited:
            await self._record_rate_limited(session_id)
            raise

        await self._bump_counters(portal_id, total_messages=2)

        elapsed = time.time() - start
        await metrics_observe("chat_processing_seconds", elapsed)
        log.info(
            f"Processed chat message: confidence={answer.confidence:.2f}, "
            f"fallback={used_fallback}, time={elapsed:.2f}s"
        )
        return MessageExchange(user_message=user_message, ai_message=ai_message)

    def _enforce_rate_limit(self, session: ChatSession, now: datetime) -> None:
        self.rate_limiter.enforce((m.timestamp for m in session.user_messages()), now)

    async def _record_rate_limited(self, session_id: str) -> None:
        logger.warning(f"Rate limit exceeded for session {session_id}")
        chat_logger.warning("Chat rate limit exceeded", session_id=session_id)
        await metrics_inc("chat_rate_limited_total")

    def _build_pair(
        self,
        question: ProcessedQuestion,
        message_type: MessageType,
        context: UserMessageContext,
        answer: GeneratedAnswer,
        used_fallback: bool,
        accepted_at: datetime,
    ):
        nonce = secrets.token_hex(3)
        topic = context.topic or question.topic.value
        user_message = UserMessage(
            message_id=new_message_id(accepted_at, 'user', nonce),
            message=question.cleaned_text,
            message_type=message_type,
            timestamp=accepted_at,
            context=UserMessageContext(topic=topic, previous_message_id=context.previous_message_id),
        )
        replied_at = max(self.clock(), accepted_at)
        ai_message = AIMessage(
            message_id=new_message_id(accepted_at, 'ai', nonce),
            message=answer.message,
            timestamp=replied_at,
            context=AIMessageContext(
                sources=answer.sources,
                confidence=min(1.0, max(0.0, answer.confidence)),
                suggested_follow_ups=answer.follow_ups,
                topic=topic,
                fallback=used_fallback,
            ),
        )
        return user_message, ai_message

    async def _answer(
        self, session: ChatSession, question: ProcessedQuestion, timeout: float
    ) -> Tuple[GeneratedAnswer, bool]:
        """Generate an answer within the deadline, or the fallback answer"""
        cv = None
        try:
            cv = await self.cvs.get(session.processed_cv_id)
        except Exception as e:
            logger.warning(f"Could not load CV {session.processed_cv_id} for session {session.session_id}: {e}")

        owner = cv_owner_name(cv)
        if not (session.rag_enabled and self.rag_available):
            await metrics_inc("chat_fallback_total", labels={"reason": "rag_disabled"})
            return fallback_answer(owner), True

        chat_context = ChatContext(
            cv_owner_name=owner,
            cv_title=cv_title(cv),
            language=session.context.language,
            response_style=session.context.response_style.value,
            conversation_history=history_from_messages(session.messages, self.history_size),
        )

        async def generate() -> GeneratedAnswer:
            retrieval = await self.retrieval_engine.search(session.processed_cv_id, question.cleaned_text)
            return await self.response_generator.generate(question.cleaned_text, retrieval, chat_context)

        try:
            answer = await asyncio.wait_for(generate(), timeout=timeout)
            return answer, False
        except asyncio.TimeoutError:
            logger.error(
                f"Generation timed out after {timeout}s for session {session.session_id}"
            )
            await metrics_inc("chat_fallback_total", labels={"reason": "timeout"})
        except Exception as e:
            logger.error(f"RAG response failed for session {session.session_id}: {e}")
            await metrics_inc("chat_fallback_total", labels={"reason": type(e).__name__})
        return fallback_answer(owner), True

    # =======================
    # Session access
    # =======================
    async def get_session(self, portal_id: str, session_id: str) -> ChatSession:
        """Return the session; an expired session is returned with its status refreshed"""
        session = await self.sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id=session_id)
        if session.portal_id != portal_id:
            raise SessionPortalMismatch(session_id=session_id, portal_id=portal_id)
        if session.status != SessionStatus.EXPIRED and session.is_expired(self.clock()):
            session = await self._mark_expired(session_id) or session
        return session

    async def _load_active_session(self, portal_id: str, session_id: str) -> ChatSession:
        session = await self.get_session(portal_id, session_id)
        if session.status == SessionStatus.EXPIRED:
            raise SessionExpired(session_id=session_id)
        return session

    async def _mark_expired(self, session_id: str) -> Optional[ChatSession]:
        def expire(current: Optional[ChatSession]) -> Optional[ChatSession]:
            if current is None or current.status == SessionStatus.EXPIRED:
                return None
            current.status = SessionStatus.EXPIRED
            return current

        session = await self.sessions.update(session_id, expire)
        if session is not None:
            chat_logger.info("Chat session expired", session_id=session_id, portal_id=session.portal_id)
        await metrics_inc("chat_sessions_expired_total")
        return session

    # =======================
    # Feedback
    # =======================
    async def submit_feedback(
        self,
        portal_id: str,
        rating: int,
        session_id: Optional[str] = None,
        message_id: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> PortalFeedback:
        if not isinstance(rating, int) or not 1 <= rating <= 5:
            raise InvalidInputError("Rating must be an integer between 1 and 5")
        if await self.portals.get(portal_id) is None:
            raise PortalNotFound(portal_id=portal_id)
        if session_id:
            session = await self.sessions.get(session_id)
            if session is None:
                raise SessionNotFound(session_id=session_id)
            if session.portal_id != portal_id:
                raise SessionPortalMismatch(session_id=session_id, portal_id=portal_id)

        now = self.clock()
        feedback = PortalFeedback(
            feedback_id=f"feedback_{_timestamp_ms(now)}_{secrets.token_hex(5)}",
            portal_id=portal_id,
            session_id=session_id,
            message_id=message_id,
            rating=rating,
            comment=comment,
            created_at=now,
        )
        await self.analytics.record_feedback(feedback)
        await metrics_inc("chat_feedback_total", labels={"rating": rating})
        return feedback

    async def _bump_counters(self, portal_id: str, **deltas: int) -> None:
        """Counter updates are best-effort and never fail the calling operation"""
        try:
            await self.analytics.increment_counters(portal_id, **deltas)
        except Exception as e:
            logger.warning(f"Failed to update portal analytics for {portal_id}: {e}")
            await metrics_inc("portal_counter_errors_total")
