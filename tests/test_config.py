import pytest

from companion.core.config import WindowConfig, load_settings, settings
from companion.event_log import EventLog


class TestWindowConfig:
    def test_defaults(self):
        window = WindowConfig()
        assert (window.short_term, window.medium_term, window.long_term) == (5, 10, 20)
        assert window.summarization_threshold == 15
        assert window.max_turns == 40

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"short_term": 0},
            {"long_term": -1},
            {"summarization_threshold": 2.5},
            {"short_term": True},
            {"short_term": 11},
            {"medium_term": 25},
        ],
    )
    def test_rejects_invalid(self, kwargs):
        with pytest.raises(ValueError):
            WindowConfig(**kwargs)

    def test_tier_count(self):
        window = WindowConfig()
        assert window.tier_count("medium") == 10
        with pytest.raises(ValueError):
            window.tier_count("eternal")


def test_load_settings_from_env(monkeypatch):
    monkeypatch.setenv("ALLOW_ORIGINS", "http://a.test, http://b.test")
    monkeypatch.setenv("LONG_TERM_PAIRS", "30")
    monkeypatch.setenv("MODEL_CALL_COST", "0.01")
    cfg = load_settings()
    assert cfg.allow_origins == ("http://a.test", "http://b.test")
    assert cfg.window.long_term == 30
    assert cfg.model_call_cost == 0.01


def test_load_settings_rejects_bad_window(monkeypatch):
    monkeypatch.setenv("SHORT_TERM_PAIRS", "50")
    with pytest.raises(ValueError):
        load_settings()


class TestEventLog:
    def test_newest_first_and_bounded(self):
        log = EventLog(max_len=3)
        for i in range(5):
            log.add_event("turn", {"i": i})
        assert [e["payload"]["i"] for e in log.get_events()] == [4, 3, 2]
        assert len(log.get_events(limit=1)) == 1

    def test_kind_prefix_filter(self):
        log = EventLog(max_len=10)
        log.add_event("safety.crisis", {}, priority="high")
        log.add_event("turn", {})
        assert [e["kind"] for e in log.get_events(kind_prefix="safety.")] == ["safety.crisis"]

    def test_unsubscribe(self):
        log = EventLog(max_len=10)
        seen = []
        log.subscribe(seen.append)
        log.add_event("a", {})
        log.unsubscribe(seen.append)
        log.add_event("b", {})
        assert [e["kind"] for e in seen] == ["a"]

    def test_default_bound_comes_from_settings(self):
        log = EventLog()
        for i in range(settings.event_log_limit + 5):
            log.add_event("turn", {"i": i})
        events = log.get_events()
        assert len(events) == settings.event_log_limit
        assert events[0]["payload"]["i"] == settings.event_log_limit + 4
