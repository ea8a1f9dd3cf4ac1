"""
Tests for the read-only dashboard queries.
"""

import pytest

from companion.core.session_store import SessionKey

ALICE = SessionKey("alice", "a1")
BOB = SessionKey("bob", "b1")
CAROL = SessionKey("carol", "c1")
ERIN = SessionKey("erin", "e1")


def _classification(user_id="u", session_id="s", **overrides):
    payload = {
        "user_id": user_id,
        "session_id": session_id,
        "category": "ANXIETY",
        "confidence": 0.9,
        "method": "rule",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def seeded(context, add_pairs):
    add_pairs(context, ALICE, [3, 4, 5, 7, 8, 9], category="ANXIETY")
    add_pairs(context, BOB, [5, 5, 5], category="SLEEP")
    add_pairs(context, CAROL, [8, 8, 8], category="GRIEF")
    add_pairs(context, ERIN, [2, 3, 4, 5, 6, 6])
    return context


class TestHighRisk:
    """Test high-risk user detection"""

    def test_flags_distress_and_decline(self, dashboard, seeded, metrics):
        metrics.record_event("classification", _classification("dave", "d1", emotional_intensity=10))

        users = dashboard.high_risk_users()
        assert [u["user_id"] for u in users] == ["dave", "alice", "carol", "erin"]

        alice = users[1]
        assert alice["current_distress"] == 9
        assert alice["trend"] == "declining"
        assert alice["recent_categories"] == ["ANXIETY"]
        assert alice["session_count"] == 1
        assert alice["needs_intervention"] is True

        assert users[0]["trend"] == "unknown"
        assert users[2]["trend"] == "stable"

    def test_calm_users_are_not_flagged(self, dashboard, context, add_pairs):
        add_pairs(context, BOB, [5, 5, 5])
        assert dashboard.high_risk_users() == []

    def test_groups_sessions_per_user(self, dashboard, context, add_pairs):
        add_pairs(context, SessionKey("alice", "a1"), [3, 3, 3])
        add_pairs(context, SessionKey("alice", "a2"), [9, 9, 9])

        users = dashboard.high_risk_users()
        assert len(users) == 1
        assert users[0]["session_count"] == 2
        assert users[0]["current_distress"] == 9


class TestDeclining:
    """Test declining-user listing"""

    def test_sorted_by_current_intensity(self, dashboard, seeded):
        declining = dashboard.declining_users()
        assert [(d["user_id"], d["current_intensity"]) for d in declining] == [("alice", 9), ("erin", 6)]

    def test_restricted_to_given_keys(self, dashboard, seeded):
        declining = dashboard.declining_users([ERIN, BOB])
        assert [d["user_id"] for d in declining] == ["erin"]

    def test_unknown_keys_are_ignored(self, dashboard):
        assert dashboard.declining_users([SessionKey("ghost", "g1")]) == []


class TestClassificationQueries:
    """Test accuracy, issue, and confidence views"""

    def test_accuracy_from_supplied_labels(self, dashboard):
        accuracy = dashboard.classification_accuracy(
            [
                {"message_id": "1", "category": "ANXIETY", "user_feedback": "helpful", "confidence": 0.95},
                {"message_id": "2", "category": "ANXIETY", "user_feedback": "not_helpful", "confidence": 0.6},
                {"message_id": "3", "category": "SLEEP", "user_feedback": "helpful", "confidence": 0.92},
            ]
        )
        assert accuracy["overall_accuracy"] == 0.67
        assert accuracy["by_category_accuracy"] == {"ANXIETY": 0.5, "SLEEP": 1.0}
        assert accuracy["helpful_count"] == 2
        assert accuracy["unhelpful_count"] == 1
        assert accuracy["confidence_correlation"] == 1.0

    def test_accuracy_from_recorded_feedback(self, dashboard, metrics):
        metrics.record_event(
            "feedback", {"message_id": "1", "category": "X", "user_feedback": "neutral", "confidence": 0.5}
        )
        accuracy = dashboard.classification_accuracy()
        assert accuracy["total_feedback"] == 1
        assert accuracy["overall_accuracy"] == 0.0

    def test_accuracy_without_feedback(self, dashboard):
        assert dashboard.classification_accuracy()["total_feedback"] == 0

    def test_top_issues(self, dashboard, metrics):
        for category in ["ANXIETY"] * 3 + ["SLEEP"]:
            metrics.record_event("classification", _classification(category=category))

        assert dashboard.top_issues() == [
            {"category": "ANXIETY", "count": 3, "percentage": 75},
            {"category": "SLEEP", "count": 1, "percentage": 25},
        ]
        assert len(dashboard.top_issues(limit=1)) == 1

    def test_confidence_distribution(self, dashboard, metrics):
        assert dashboard.confidence_distribution() == {"very_high": 0.0, "high": 0.0, "medium": 0.0, "low": 0.0}

        for confidence in (0.95, 0.85, 0.85, 0.3):
            metrics.record_event("classification", _classification(confidence=confidence))
        assert dashboard.confidence_distribution() == {"very_high": 25.0, "high": 50.0, "medium": 0.0, "low": 25.0}

    def test_ambiguous_phrase_stats(self, dashboard, metrics):
        metrics.record_event("classification", _classification(ambiguous_phrase="can't cope", method="model"))
        metrics.record_event(
            "classification",
            _classification(ambiguous_phrase="can't cope", method="model", meets_threshold=False),
        )
        metrics.record_event("classification", _classification(ambiguous_phrase="tired"))

        stats = dashboard.ambiguous_phrase_stats()
        assert stats[0] == {"phrase": "can't cope", "count": 2, "disambiguated": 2, "disambiguation_success": 0.5}
        assert stats[1]["disambiguation_success"] == 0.0


class TestCostAnalysis:
    """Test cost projections"""

    def test_projections_and_efficiency(self, dashboard, metrics):
        metrics.record_event("classification", _classification(method="model"))
        for _ in range(3):
            metrics.record_event("classification", _classification())

        analysis = dashboard.cost_analysis(window_days=1)
        assert analysis["current_period"]["messages_processed"] == 4
        assert analysis["current_period"]["total_cost"] == pytest.approx(0.002)
        assert analysis["projections"]["daily"] == pytest.approx(0.002)
        assert analysis["projections"]["weekly"] == pytest.approx(0.014)
        assert analysis["projections"]["monthly"] == pytest.approx(0.06)
        assert analysis["efficiency"]["model_percentage"] == 25
        assert analysis["efficiency"]["rule_percentage"] == 75
        assert analysis["efficiency"]["avg_cost_per_message"] == pytest.approx(0.0005)

    def test_empty(self, dashboard):
        analysis = dashboard.cost_analysis()
        assert analysis["current_period"]["messages_processed"] == 0
        assert analysis["efficiency"]["rule_percentage"] == 0

    def test_invalid_window(self, dashboard):
        with pytest.raises(ValueError):
            dashboard.cost_analysis(window_days=-1)


class TestRiskAssessment:
    """Test per-session risk levels"""

    @pytest.mark.parametrize(
        "intensities,level",
        [([8, 9, 9], "HIGH"), ([6, 6, 7], "MEDIUM"), ([2, 3], "LOW")],
    )
    def test_levels(self, dashboard, context, add_pairs, key, intensities, level):
        add_pairs(context, key, intensities)
        risk = dashboard.assess_user_risk(key)
        assert risk["risk_level"] == level
        expected = "Consider professional referral" if level == "HIGH" else "Continue monitoring"
        assert risk["recommendation"] == expected

    def test_unknown_without_samples(self, dashboard, key):
        risk = dashboard.assess_user_risk(key)
        assert risk["risk_level"] == "UNKNOWN"
        assert risk["emotional_intensity"] is None


class TestSafetyAlerts:
    """Test prioritised safety alerts"""

    def test_priorities(self, dashboard, seeded, metrics):
        metrics.record_event("safety", {"type": "crisis", "user_id": "zed", "session_id": "z1"})
        metrics.record_event("safety", {"type": "escalation", "user_id": "zed", "session_id": "z1"})

        alerts = dashboard.safety_alerts()
        assert alerts[0]["priority"] == "critical"
        assert alerts[0]["user_id"] == "zed"
        assert alerts[0]["reason"] == "Crisis detected"

        by_user = {a["user_id"]: a["priority"] for a in alerts[1:]}
        assert by_user == {"alice": "high", "carol": "high", "erin": "medium"}

    def test_limit(self, dashboard, seeded):
        assert len(dashboard.safety_alerts(limit=1)) == 1


class TestEngagementInsights:
    """Test engagement rollup"""

    def test_completion_and_dropoff(self, dashboard, metrics):
        metrics.record_event("engagement", {"type": "session_start", "user_id": "a", "session_id": "1"})
        metrics.record_event("engagement", {"type": "session_end", "user_id": "a", "session_id": "1"})
        for _ in range(2):
            metrics.record_event("classification", _classification("b", "2"))
        metrics.record_event("engagement", {"type": "session_end", "user_id": "b", "session_id": "2"})
        metrics.record_event("engagement", {"type": "session_start", "user_id": "c", "session_id": "3"})

        insights = dashboard.engagement_insights()
        assert insights["active_users"] == 3
        assert insights["completion_rate"] == 0.67
        assert insights["dropoff_points"] == [
            {"stage": "After greeting", "count": 1},
            {"stage": "After 3 messages", "count": 1},
            {"stage": "After 10 messages", "count": 0},
        ]


def test_queries_do_not_mutate_state(dashboard, seeded, metrics):
    metrics.record_event("classification", _classification(emotional_intensity=7))
    counts = {k: seeded.store.count(k) for k in seeded.store.keys()}
    before = metrics.get_snapshot()

    dashboard.high_risk_users()
    dashboard.declining_users()
    dashboard.classification_accuracy()
    dashboard.top_issues()
    dashboard.cost_analysis()
    dashboard.confidence_distribution()
    dashboard.ambiguous_phrase_stats()
    dashboard.assess_user_risk(ALICE)
    dashboard.safety_alerts()
    dashboard.engagement_insights()

    after = metrics.get_snapshot()
    before.pop("generated_at")
    after.pop("generated_at")
    assert after == before
    assert {k: seeded.store.count(k) for k in seeded.store.keys()} == counts
