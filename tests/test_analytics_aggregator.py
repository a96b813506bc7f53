"""
Tests for portal analytics rollups and the AnalyticsAggregator service.
"""

from datetime import datetime, timedelta, timezone

import pytest

from analytics.aggregator import (
    AnalyticsAggregator,
    DailyBucket,
    average_session_duration,
    build_report,
    classify_browser,
    classify_device,
    compute_geographic,
    compute_overview,
    compute_performance,
    compute_technology,
    conversion_rate,
    daily_timeline,
    summarize_feedback,
    top_questions,
    top_topics,
    weekly_rollup,
)
from chat.errors import ForbiddenError, InvalidInputError, PortalNotFound
from database.schemas import (
    AIMessage,
    AIMessageContext,
    ChatSession,
    PortalFeedback,
    PortalView,
    UserMessage,
    UserMessageContext,
)

PORTAL_ID = "portal_1"
OWNER_ID = "owner-1"

JAN_1 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)

CHROME_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36"
EDGE_UA = CHROME_UA + " Edg/120.0"
FIREFOX_UA = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"
IPHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Version/17.0 Mobile/15E148 Safari/604.1"
IPAD_UA = "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Version/17.0 Safari/604.1"
ANDROID_PHONE_UA = "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 Chrome/120.0 Mobile Safari/537.36"
ANDROID_TABLET_UA = "Mozilla/5.0 (Linux; Android 14; SM-X710) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"


def make_session(session_id, created_at, questions=(), reply_seconds=(), fallbacks=(), last_activity=None):
    """Build a session with one user/ai pair per question."""
    messages = []
    for i, (text, topic) in enumerate(questions):
        asked = created_at + timedelta(minutes=i)
        delay = reply_seconds[i] if i < len(reply_seconds) else 1.0
        messages.append(UserMessage(
            message_id=f"msg_{session_id}_{i}_user",
            message=text,
            timestamp=asked,
            context=UserMessageContext(topic=topic),
        ))
        messages.append(AIMessage(
            message_id=f"msg_{session_id}_{i}_ai",
            message="answer",
            timestamp=asked + timedelta(seconds=delay),
            context=AIMessageContext(fallback=i in fallbacks),
        ))
    if last_activity is None and messages:
        last_activity = messages[-1].timestamp
    return ChatSession(
        session_id=session_id,
        portal_id=PORTAL_ID,
        processed_cv_id="cv_1",
        created_at=created_at,
        expires_at=created_at + timedelta(hours=24),
        last_activity=last_activity,
        messages=messages,
        message_count=len(messages),
    )


def make_view(view_id, timestamp, visitor_id=None, user_id=None, user_agent=None, country=None, city=None):
    return PortalView(
        view_id=view_id,
        portal_id=PORTAL_ID,
        timestamp=timestamp,
        visitor_id=visitor_id,
        user_id=user_id,
        user_agent=user_agent,
        country=country,
        city=city,
    )


def make_feedback(feedback_id, rating, created_at=JAN_1):
    return PortalFeedback(feedback_id=feedback_id, portal_id=PORTAL_ID, rating=rating, created_at=created_at)


class TestOverview:

    def test_conversion_rate(self):
        assert conversion_rate(0, 5) == 0
        assert conversion_rate(50, 5) == 10
        assert conversion_rate(4, 1) == 25

    def test_unique_visitors_use_visitor_or_user_id(self):
        views = [
            make_view("v1", JAN_1, visitor_id="a"),
            make_view("v2", JAN_1, visitor_id="a"),
            make_view("v3", JAN_1, visitor_id="b"),
            make_view("v4", JAN_1, user_id="u1"),
            make_view("v5", JAN_1),
        ]

        overview = compute_overview(views, [])

        assert overview.total_views == 5
        assert overview.unique_visitors == 3
        assert overview.conversion_rate == 0

    def test_session_totals(self):
        sessions = [
            make_session("s1", JAN_1, [("Where did they study?", "education")]),
            make_session("s2", JAN_1, [("What skills?", "skills"), ("Any projects?", "projects")]),
        ]
        views = [make_view(f"v{i}", JAN_1) for i in range(4)]

        overview = compute_overview(views, sessions)

        assert overview.chat_sessions_started == 2
        assert overview.total_messages == 6
        assert overview.conversion_rate == 50

    def test_average_duration_ignores_sessions_without_activity(self):
        idle = make_session("idle", JAN_1)
        active = make_session("active", JAN_1, last_activity=JAN_1 + timedelta(minutes=10))

        assert idle.last_activity is None
        assert average_session_duration([idle, active]) == 600
        assert average_session_duration([idle]) == 0.0


class TestEngagement:

    def test_top_questions_rank_tokens_by_frequency(self):
        sessions = [
            make_session("s1", JAN_1, [("Tell me about their experience", "experience"), ("What about skills", "skills")]),
            make_session("s2", JAN_1, [("Tell me about education", "education")]),
        ]

        ranked = top_questions(sessions)

        assert ranked[0].question == "about"
        assert ranked[0].count == 3
        assert ranked[1].question == "tell"
        assert ranked[1].count == 2
        assert all(len(q.question) >= 4 for q in ranked)
        assert "me" not in [q.question for q in ranked]

    def test_top_questions_limit(self):
        words = " ".join(f"word{i:02d}" for i in range(15))
        sessions = [make_session("s1", JAN_1, [(words, None)])]

        assert len(top_questions(sessions)) == 10

    def test_top_topics(self):
        sessions = [
            make_session("s1", JAN_1, [("a", "skills"), ("b", "skills"), ("c", "experience")]),
            make_session("s2", JAN_1, [("d", "experience"), ("e", "skills"), ("f", None)]),
        ]

        topics = top_topics(sessions)

        assert [(t.topic, t.count) for t in topics] == [("skills", 3), ("experience", 2)]

    def test_feedback_summary(self):
        feedback = [make_feedback(f"f{r}", r) for r in (5, 4, 3, 2, 1)]

        summary = summarize_feedback(feedback)

        assert summary.positive == 2
        assert summary.negative == 2
        assert summary.average == 3.0
        assert summary.total == 5

    def test_feedback_summary_empty(self):
        summary = summarize_feedback([])

        assert summary.total == 0
        assert summary.average == 0.0


class TestTimeline:

    def test_one_bucket_per_day_inclusive(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        end = datetime(2024, 1, 3, 23, 59, 59, tzinfo=timezone.utc)
        views = [make_view(f"v{i}", start + timedelta(days=i, hours=3)) for i in range(3)]
        sessions = [make_session("s1", start + timedelta(days=1, hours=5), [("What skills?", "skills")])]

        daily = daily_timeline(views, sessions, start, end)

        assert [b.date for b in daily] == ["2024-01-01", "2024-01-02", "2024-01-03"]
        assert [b.views for b in daily] == [1, 1, 1]
        assert [b.sessions for b in daily] == [0, 1, 0]
        assert [b.messages for b in daily] == [0, 2, 0]

    def test_empty_days_are_present(self):
        start = datetime(2024, 3, 1, tzinfo=timezone.utc)
        end = datetime(2024, 3, 7, tzinfo=timezone.utc)

        daily = daily_timeline([], [], start, end)

        assert len(daily) == 7
        assert all(b.views == 0 and b.sessions == 0 for b in daily)

    def test_weekly_rollup_uses_iso_weeks(self):
        daily = [
            DailyBucket(date="2024-01-06", views=1, sessions=1, messages=2),
            DailyBucket(date="2024-01-07", views=2),
            DailyBucket(date="2024-01-08", views=3, sessions=2, messages=4),
        ]

        weekly = weekly_rollup(daily)

        assert [w.week for w in weekly] == ["2024-W01", "2024-W02"]
        assert weekly[0].views == 3
        assert weekly[0].messages == 2
        assert weekly[1].sessions == 2


class TestGeographicAndTechnology:

    def test_countries_and_cities(self):
        views = [
            make_view("v1", JAN_1, country="US", city="Austin"),
            make_view("v2", JAN_1, country="US", city="Austin"),
            make_view("v3", JAN_1, country="DE", city="Berlin"),
            make_view("v4", JAN_1),
        ]

        geographic = compute_geographic(views)

        assert [(c.country, c.count, c.percentage) for c in geographic.countries] == [
            ("US", 2, 50.0), ("DE", 1, 25.0), ("Unknown", 1, 25.0),
        ]
        assert [(c.city, c.country, c.count) for c in geographic.cities] == [
            ("Austin", "US", 2), ("Berlin", "DE", 1),
        ]

    @pytest.mark.parametrize("user_agent,expected", [
        (EDGE_UA, "Edge"),
        (CHROME_UA, "Chrome"),
        (FIREFOX_UA, "Firefox"),
        (IPHONE_UA, "Safari"),
        (None, "Other"),
        ("curl/8.4.0", "Other"),
    ])
    def test_classify_browser(self, user_agent, expected):
        assert classify_browser(user_agent) == expected

    @pytest.mark.parametrize("user_agent,expected", [
        (IPHONE_UA, "Mobile"),
        (ANDROID_PHONE_UA, "Mobile"),
        (IPAD_UA, "Tablet"),
        (ANDROID_TABLET_UA, "Tablet"),
        (CHROME_UA, "Desktop"),
        (None, "Desktop"),
    ])
    def test_classify_device(self, user_agent, expected):
        assert classify_device(user_agent) == expected

    def test_technology_shares(self):
        views = [
            make_view("v1", JAN_1, user_agent=CHROME_UA),
            make_view("v2", JAN_1, user_agent=CHROME_UA),
            make_view("v3", JAN_1, user_agent=IPHONE_UA),
            make_view("v4", JAN_1, user_agent=FIREFOX_UA),
        ]

        technology = compute_technology(views)

        assert technology.browsers[0].browser == "Chrome"
        assert technology.browsers[0].percentage == 50.0
        assert {d.device: d.count for d in technology.devices} == {"Desktop": 3, "Mobile": 1}


class TestPerformance:

    def test_response_time_and_error_rate(self):
        sessions = [
            make_session("s1", JAN_1, [("q1", None), ("q2", None)], reply_seconds=(2.0, 4.0)),
            make_session("s2", JAN_1, [("q3", None), ("q4", None)], reply_seconds=(3.0, 3.0), fallbacks=(1,)),
        ]

        performance = compute_performance(sessions)

        assert performance.average_response_time == pytest.approx(3.0)
        assert performance.error_rate == 25.0
        assert performance.uptime == 75.0

    def test_no_messages(self):
        performance = compute_performance([make_session("s1", JAN_1)])

        assert performance.average_response_time == 0.0
        assert performance.error_rate == 0.0
        assert performance.uptime == 100.0


class TestBuildReport:

    def test_events_outside_range_are_excluded(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        end = datetime(2024, 1, 3, 23, 59, 59, tzinfo=timezone.utc)
        views = [
            make_view("v_start", start),
            make_view("v_end", end),
            make_view("v_before", start - timedelta(seconds=1)),
            make_view("v_after", end + timedelta(seconds=1)),
        ]
        sessions = [
            make_session("s_in", start + timedelta(hours=1), [("What skills?", "skills")]),
            make_session("s_out", end + timedelta(days=1), [("Where did they study?", "education")]),
        ]
        feedback = [make_feedback("f_in", 5, start), make_feedback("f_out", 1, end + timedelta(days=2))]

        report = build_report(PORTAL_ID, views, sessions, feedback, start, end)

        overview = report.analytics.overview
        assert overview.total_views == 2
        assert overview.chat_sessions_started == 1
        assert overview.total_messages == 2
        assert report.analytics.engagement.user_feedback.total == 1
        assert [t.topic for t in report.analytics.engagement.top_topics] == ["skills"]
        assert len(report.analytics.timeline.daily) == 3

    def test_serializes_with_camel_case_keys(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        end = datetime(2024, 1, 2, tzinfo=timezone.utc)

        body = build_report(PORTAL_ID, [], [], [], start, end).model_dump(mode='json', by_alias=True)

        assert body["portalId"] == PORTAL_ID
        assert set(body["dateRange"]) == {"from", "to"}
        assert "totalViews" in body["analytics"]["overview"]
        assert "averageSessionDuration" in body["analytics"]["overview"]
        assert "topQuestions" in body["analytics"]["engagement"]
        assert "averageResponseTime" in body["analytics"]["performance"]


class TestAnalyticsAggregator:

    @pytest.fixture
    def aggregator(self, portals, sessions, analytics_repo, clock):
        return AnalyticsAggregator(portals, sessions, analytics_repo, clock=clock)

    def test_default_range_is_thirty_days(self, aggregator, clock):
        start, end = aggregator.resolve_range()

        assert end == clock()
        assert end - start == timedelta(days=30)

    def test_timeframe_sets_window(self, aggregator):
        start, end = aggregator.resolve_range(timeframe="week")

        assert end - start == timedelta(days=7)

    def test_unknown_timeframe_rejected(self, aggregator):
        with pytest.raises(InvalidInputError):
            aggregator.resolve_range(timeframe="decade")

    def test_inverted_range_rejected(self, aggregator):
        with pytest.raises(InvalidInputError):
            aggregator.resolve_range(
                start=datetime(2024, 2, 1, tzinfo=timezone.utc),
                end=datetime(2024, 1, 1, tzinfo=timezone.utc),
            )

    @pytest.mark.asyncio
    async def test_missing_portal(self, aggregator):
        with pytest.raises(PortalNotFound):
            await aggregator.get_report("portal_missing", OWNER_ID)

    @pytest.mark.asyncio
    async def test_only_owner_can_read(self, aggregator, seed_portal):
        await seed_portal()

        with pytest.raises(ForbiddenError):
            await aggregator.get_report(PORTAL_ID, "someone-else")

    @pytest.mark.asyncio
    async def test_report_over_stored_events(self, aggregator, seed_portal, sessions, clock):
        await seed_portal()
        await aggregator.record_view(PORTAL_ID, visitor_id="a", user_agent=CHROME_UA, country="US")
        await aggregator.record_view(PORTAL_ID, visitor_id="a", user_agent=CHROME_UA, country="US")
        await aggregator.record_view(PORTAL_ID, visitor_id="b", user_agent=IPHONE_UA, country="FR")
        await sessions.create(make_session("s1", clock() - timedelta(hours=1), [("What skills do they have?", "skills")]))

        report = await aggregator.get_report(PORTAL_ID, OWNER_ID, timeframe="week")

        overview = report.analytics.overview
        assert overview.total_views == 3
        assert overview.unique_visitors == 2
        assert overview.chat_sessions_started == 1
        assert overview.conversion_rate == pytest.approx(100 / 3)
        assert report.analytics.engagement.top_questions[0].question == "what"
        assert len(report.analytics.timeline.daily) == 8

    @pytest.mark.asyncio
    async def test_record_view_counts_unique_visitors_once(self, aggregator, seed_portal, analytics_repo):
        await seed_portal()

        await aggregator.record_view(PORTAL_ID, visitor_id="visitor-1")
        await aggregator.record_view(PORTAL_ID, visitor_id="visitor-1")
        await aggregator.record_view(PORTAL_ID, visitor_id="visitor-2")
        await aggregator.record_view(PORTAL_ID)

        counters = await analytics_repo.get_counters(PORTAL_ID)
        assert counters.total_views == 4
        assert counters.unique_visitors == 2
        assert len(await analytics_repo.list_views(PORTAL_ID)) == 4

    @pytest.mark.asyncio
    async def test_record_view_for_missing_portal(self, aggregator):
        with pytest.raises(PortalNotFound):
            await aggregator.record_view("portal_missing", visitor_id="visitor-1")
