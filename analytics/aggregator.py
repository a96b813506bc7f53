"""
Portal analytics rollups.

Every rollup is a pure function over snapshots of one portal's view events,
chat sessions and feedback records inside an inclusive date range. Nothing
here writes back to storage; `AnalyticsAggregator` only adds the ownership
check, the range resolution and the loading of those snapshots.
"""

import logging
import secrets
from collections import OrderedDict
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from chat.errors import ForbiddenError, InvalidInputError, PortalNotFound
from database.repositories import AnalyticsRepository, ChatSessionRepository, PortalRepository
from database.schemas import ChatSession, PortalFeedback, PortalView, as_utc, utcnow
from etl.config import ANALYTICS_CONFIG
from monitoring.metrics import inc as metrics_inc

logger = logging.getLogger(__name__)

TIMEFRAME_DAYS = {
    'day': 1,
    '24h': 1,
    'week': 7,
    '7d': 7,
    'month': 30,
    '30d': 30,
    'quarter': 90,
    '90d': 90,
    'year': 365,
}


class RollupModel(BaseModel):
    """Report fragments serialize with camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Overview(RollupModel):
    total_views: int = 0
    unique_visitors: int = 0
    chat_sessions_started: int = 0
    total_messages: int = 0
    average_session_duration: float = 0.0
    conversion_rate: float = 0.0


class QuestionCount(RollupModel):
    question: str
    count: int


class TopicCount(RollupModel):
    topic: str
    count: int


class FeedbackSummary(RollupModel):
    positive: int = 0
    negative: int = 0
    average: float = 0.0
    total: int = 0


class Engagement(RollupModel):
    top_questions: List[QuestionCount] = Field(default_factory=list)
    top_topics: List[TopicCount] = Field(default_factory=list)
    user_feedback: FeedbackSummary = Field(default_factory=FeedbackSummary)


class DailyBucket(RollupModel):
    date: str
    views: int = 0
    sessions: int = 0
    messages: int = 0


class WeeklyBucket(RollupModel):
    week: str
    views: int = 0
    sessions: int = 0
    messages: int = 0


class Timeline(RollupModel):
    daily: List[DailyBucket] = Field(default_factory=list)
    weekly: List[WeeklyBucket] = Field(default_factory=list)


class CountryShare(RollupModel):
    country: str
    count: int
    percentage: float


class CityShare(RollupModel):
    city: str
    country: str
    count: int


class Geographic(RollupModel):
    countries: List[CountryShare] = Field(default_factory=list)
    cities: List[CityShare] = Field(default_factory=list)


class BrowserShare(RollupModel):
    browser: str
    count: int
    percentage: float


class DeviceShare(RollupModel):
    device: str
    count: int
    percentage: float


class Technology(RollupModel):
    browsers: List[BrowserShare] = Field(default_factory=list)
    devices: List[DeviceShare] = Field(default_factory=list)


class Performance(RollupModel):
    average_response_time: float = 0.0
    uptime: float = 100.0
    error_rate: float = 0.0


class DateRange(RollupModel):
    from_: datetime = Field(alias='from')
    to: datetime


class PortalAnalytics(RollupModel):
    overview: Overview
    engagement: Engagement
    timeline: Timeline
    geographic: Geographic
    technology: Technology
    performance: Performance


class AnalyticsReport(RollupModel):
    portal_id: str
    analytics: PortalAnalytics
    date_range: DateRange


# =======================
# Pure rollups
# =======================
def in_range(timestamp: Optional[datetime], start: datetime, end: datetime) -> bool:
    return timestamp is not None and as_utc(start) <= as_utc(timestamp) <= as_utc(end)


def rank_counts(values: Iterable[str], limit: int) -> List[Tuple[str, int]]:
    """Count values, most frequent first; ties keep first-seen order."""
    counts: "OrderedDict[str, int]" = OrderedDict()
    for value in values:
        counts[value] = counts.get(value, 0) + 1
    ranked = sorted(counts.items(), key=lambda item: -item[1])
    return ranked[:limit]


def percentage(part: int, whole: int, digits: int = 1) -> float:
    return round(100.0 * part / whole, digits) if whole else 0.0


def conversion_rate(views: int, sessions: int) -> float:
    return (sessions / views) * 100 if views > 0 else 0.0


def average_session_duration(sessions: Sequence[ChatSession]) -> float:
    durations = [
        (as_utc(s.last_activity) - as_utc(s.created_at)).total_seconds()
        for s in sessions
        if s.created_at and s.last_activity
    ]
    return sum(durations) / len(durations) if durations else 0.0


def compute_overview(views: Sequence[PortalView], sessions: Sequence[ChatSession]) -> Overview:
    visitors = {v.visitor_id or v.user_id for v in views if v.visitor_id or v.user_id}
    return Overview(
        total_views=len(views),
        unique_visitors=len(visitors),
        chat_sessions_started=len(sessions),
        total_messages=sum(s.message_count for s in sessions),
        average_session_duration=average_session_duration(sessions),
        conversion_rate=conversion_rate(len(views), len(sessions)),
    )


def top_questions(
    sessions: Sequence[ChatSession],
    limit: int = ANALYTICS_CONFIG['top_questions'],
    min_length: int = ANALYTICS_CONFIG['min_token_length'],
) -> List[QuestionCount]:
    tokens = (
        token
        for session in sessions
        for message in session.user_messages()
        for token in message.message.lower().split()
        if len(token) >= min_length
    )
    return [QuestionCount(question=t, count=c) for t, c in rank_counts(tokens, limit)]


def top_topics(sessions: Sequence[ChatSession], limit: int = ANALYTICS_CONFIG['top_topics']) -> List[TopicCount]:
    topics = (
        message.context.topic
        for session in sessions
        for message in session.user_messages()
        if message.context.topic
    )
    return [TopicCount(topic=t, count=c) for t, c in rank_counts(topics, limit)]


def summarize_feedback(feedback: Sequence[PortalFeedback]) -> FeedbackSummary:
    ratings = [f.rating for f in feedback]
    return FeedbackSummary(
        positive=sum(1 for r in ratings if r >= 4),
        negative=sum(1 for r in ratings if r <= 2),
        average=sum(ratings) / len(ratings) if ratings else 0.0,
        total=len(ratings),
    )


def compute_engagement(sessions: Sequence[ChatSession], feedback: Sequence[PortalFeedback]) -> Engagement:
    return Engagement(
        top_questions=top_questions(sessions),
        top_topics=top_topics(sessions),
        user_feedback=summarize_feedback(feedback),
    )


def daily_timeline(
    views: Sequence[PortalView],
    sessions: Sequence[ChatSession],
    start: datetime,
    end: datetime,
) -> List[DailyBucket]:
    first, last = as_utc(start).date(), as_utc(end).date()
    buckets: "OrderedDict[date, DailyBucket]" = OrderedDict()
    day = first
    while day <= last:
        buckets[day] = DailyBucket(date=day.isoformat())
        day += timedelta(days=1)

    for view in views:
        bucket = buckets.get(as_utc(view.timestamp).date())
        if bucket is not None:
            bucket.views += 1
    for session in sessions:
        bucket = buckets.get(as_utc(session.created_at).date())
        if bucket is not None:
            bucket.sessions += 1
            bucket.messages += session.message_count
    return list(buckets.values())


def weekly_rollup(daily: Sequence[DailyBucket]) -> List[WeeklyBucket]:
    weeks: "OrderedDict[str, WeeklyBucket]" = OrderedDict()
    for bucket in daily:
        iso_year, iso_week, _ = date.fromisoformat(bucket.date).isocalendar()
        key = f"{iso_year}-W{iso_week:02d}"
        week = weeks.setdefault(key, WeeklyBucket(week=key))
        week.views += bucket.views
        week.sessions += bucket.sessions
        week.messages += bucket.messages
    return list(weeks.values())


def compute_timeline(
    views: Sequence[PortalView], sessions: Sequence[ChatSession], start: datetime, end: datetime
) -> Timeline:
    daily = daily_timeline(views, sessions, start, end)
    return Timeline(daily=daily, weekly=weekly_rollup(daily))


def compute_geographic(views: Sequence[PortalView]) -> Geographic:
    total = len(views)
    countries = rank_counts((v.country or 'Unknown' for v in views), limit=total)
    cities = rank_counts(
        (f"{v.city}\x00{v.country or 'Unknown'}" for v in views if v.city), limit=total
    )
    return Geographic(
        countries=[
            CountryShare(country=c, count=n, percentage=percentage(n, total)) for c, n in countries
        ],
        cities=[
            CityShare(city=key.split('\x00')[0], country=key.split('\x00')[1], count=n) for key, n in cities
        ],
    )


def classify_browser(user_agent: Optional[str]) -> str:
    ua = (user_agent or '').lower()
    if 'edg/' in ua or 'edge/' in ua:
        return 'Edge'
    if 'chrome/' in ua or 'crios/' in ua:
        return 'Chrome'
    if 'firefox/' in ua or 'fxios/' in ua:
        return 'Firefox'
    if 'safari/' in ua:
        return 'Safari'
    return 'Other'


def classify_device(user_agent: Optional[str]) -> str:
    ua = (user_agent or '').lower()
    if 'ipad' in ua or 'tablet' in ua or ('android' in ua and 'mobile' not in ua):
        return 'Tablet'
    if 'mobi' in ua or 'iphone' in ua or 'android' in ua:
        return 'Mobile'
    return 'Desktop'


def compute_technology(views: Sequence[PortalView]) -> Technology:
    total = len(views)
    browsers = rank_counts((classify_browser(v.user_agent) for v in views), limit=total)
    devices = rank_counts((classify_device(v.user_agent) for v in views), limit=total)
    return Technology(
        browsers=[BrowserShare(browser=b, count=n, percentage=percentage(n, total)) for b, n in browsers],
        devices=[DeviceShare(device=d, count=n, percentage=percentage(n, total)) for d, n in devices],
    )


def compute_performance(sessions: Sequence[ChatSession]) -> Performance:
    """Response time pairs each user message with the next assistant reply in its session."""
    response_times: List[float] = []
    ai_messages = 0
    fallbacks = 0
    for session in sessions:
        pending: Optional[datetime] = None
        for message in session.messages:
            if message.type == 'user':
                pending = as_utc(message.timestamp)
                continue
            ai_messages += 1
            if message.context.fallback:
                fallbacks += 1
            if pending is not None:
                response_times.append(max(0.0, (as_utc(message.timestamp) - pending).total_seconds()))
                pending = None

    error_rate = percentage(fallbacks, ai_messages, digits=2)
    return Performance(
        average_response_time=sum(response_times) / len(response_times) if response_times else 0.0,
        error_rate=error_rate,
        uptime=round(100.0 - error_rate, 2),
    )


def build_report(
    portal_id: str,
    views: Sequence[PortalView],
    sessions: Sequence[ChatSession],
    feedback: Sequence[PortalFeedback],
    start: datetime,
    end: datetime,
) -> AnalyticsReport:
    views = [v for v in views if in_range(v.timestamp, start, end)]
    sessions = [s for s in sessions if in_range(s.created_at, start, end)]
    feedback = [f for f in feedback if in_range(f.created_at, start, end)]

    return AnalyticsReport(
        portal_id=portal_id,
        analytics=PortalAnalytics(
            overview=compute_overview(views, sessions),
            engagement=compute_engagement(sessions, feedback),
            timeline=compute_timeline(views, sessions, start, end),
            geographic=compute_geographic(views),
            technology=compute_technology(views),
            performance=compute_performance(sessions),
        ),
        date_range=DateRange(from_=as_utc(start), to=as_utc(end)),
    )


# =======================
# Service
# =======================
class AnalyticsAggregator:
    """Loads a portal's event snapshots and builds reports for its owner."""

    def __init__(
        self,
        portals: PortalRepository,
        sessions: ChatSessionRepository,
        analytics: AnalyticsRepository,
        clock=utcnow,
        default_window_days: int = ANALYTICS_CONFIG['default_window_days'],
    ):
        self.portals = portals
        self.sessions = sessions
        self.analytics = analytics
        self.clock = clock
        self.default_window_days = default_window_days

    def resolve_range(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        timeframe: Optional[str] = None,
    ) -> Tuple[datetime, datetime]:
        end = as_utc(end) if end else self.clock()
        if start is None:
            days = self.default_window_days
            if timeframe:
                if timeframe.lower() not in TIMEFRAME_DAYS:
                    raise InvalidInputError(f"Unsupported timeframe: {timeframe}")
                days = TIMEFRAME_DAYS[timeframe.lower()]
            start = end - timedelta(days=days)
        start = as_utc(start)
        if start > end:
            raise InvalidInputError("'from' must not be after 'to'")
        return start, end

    async def get_report(
        self,
        portal_id: str,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        timeframe: Optional[str] = None,
    ) -> AnalyticsReport:
        portal = await self.portals.get(portal_id)
        if portal is None:
            raise PortalNotFound(portal_id=portal_id)
        if portal.user_id != user_id:
            raise ForbiddenError("Access denied to this portal analytics", portal_id=portal_id)

        start, end = self.resolve_range(start, end, timeframe)
        views = await self.analytics.list_views(portal_id)
        sessions = await self.sessions.list_for_portal(portal_id)
        feedback = await self.analytics.list_feedback(portal_id)

        report = build_report(portal_id, views, sessions, feedback, start, end)
        await metrics_inc("analytics_reports_total")
        logger.info(
            f"Built analytics for portal {portal_id}: {report.analytics.overview.total_views} views, "
            f"{report.analytics.overview.chat_sessions_started} sessions"
        )
        return report

    async def record_view(
        self,
        portal_id: str,
        visitor_id: Optional[str] = None,
        user_id: Optional[str] = None,
        referrer: Optional[str] = None,
        user_agent: Optional[str] = None,
        country: Optional[str] = None,
        city: Optional[str] = None,
    ) -> PortalView:
        if await self.portals.get(portal_id) is None:
            raise PortalNotFound(portal_id=portal_id)

        first_visit = False
        if visitor_id:
            try:
                first_visit = not await self.analytics.has_visitor_viewed(portal_id, visitor_id)
            except Exception as e:
                logger.warning(f"Visitor lookup failed for portal {portal_id}: {e}")

        now = self.clock()
        view = PortalView(
            view_id=f"view_{int(now.timestamp() * 1000)}_{secrets.token_hex(5)}",
            portal_id=portal_id,
            timestamp=now,
            visitor_id=visitor_id,
            user_id=user_id,
            referrer=referrer,
            user_agent=user_agent,
            country=country,
            city=city,
        )
        await self.analytics.record_view(view)

        deltas: Dict[str, int] = {'total_views': 1}
        if first_visit:
            deltas['unique_visitors'] = 1
        try:
            await self.analytics.increment_counters(portal_id, **deltas)
        except Exception as e:
            logger.warning(f"Failed to update portal analytics for {portal_id}: {e}")
        await metrics_inc("portal_views_total")
        return view
