from datetime import datetime, timedelta, timezone

import pytest

from swarm_orchestrator.core import tasks as tasks_mod
from swarm_orchestrator.core.signals import SignalCoordinator, SignalValidationError
from swarm_orchestrator.db.models import SignalPattern

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def signals(store):
    return SignalCoordinator(store, clock=lambda: NOW)


def coder(stage="implement_code", outcome="success", complexity="medium"):
    return SignalPattern(stage=stage, outcome=outcome, role="coder", complexity=complexity)


class TestEmit:
    def test_guide_defaults(self, signals):
        s = signals.emit("guide", "stage:implement_code auth")
        assert s.strength == 0.8
        assert s.decay_rate == 0.05
        assert s.created_at == NOW
        assert s.expires_at == NOW + timedelta(days=30)

    def test_warn_defaults(self, signals):
        s = signals.emit("warn", "flaky migration")
        assert s.strength == 0.7
        assert s.decay_rate == 0.15
        assert s.expires_at == NOW + timedelta(days=14)

    def test_persisted(self, signals):
        s = signals.emit("guide", "ctx", pattern=coder(), metadata={"task": "x"})
        loaded = signals.get(s.id)
        assert loaded.pattern.role == "coder"
        assert loaded.metadata == {"task": "x"}
        assert loaded.expires_at == s.expires_at

    def test_invalid_kind(self, signals):
        with pytest.raises(SignalValidationError, match="Invalid signal kind"):
            signals.emit("hint", "ctx")

    @pytest.mark.parametrize("strength", [-0.1, 1.5])
    def test_invalid_strength(self, signals, strength):
        with pytest.raises(SignalValidationError, match="between 0 and 1"):
            signals.emit("guide", "ctx", strength=strength)

    def test_invalid_outcome(self, signals):
        with pytest.raises(SignalValidationError, match="Invalid task outcome"):
            signals.emit("guide", "ctx", pattern={"outcome": "meh"})

    def test_invalid_complexity(self, signals):
        with pytest.raises(SignalValidationError, match="Invalid complexity"):
            signals.emit("guide", "ctx", pattern={"complexity": "extreme"})

    def test_link_to_task(self, signals, store, project):
        task = store.write(tasks_mod.create_task, "Login", "demo")
        s = signals.emit("guide", "ctx", project_id="demo")
        signals.link_to_task(s.id, task.id)
        graph = store.knowledge_graph("demo")
        assert any(
            r["type"] == "INFLUENCES" and r["start"] == s.id and r["end"] == task.id
            for r in graph["relationships"]
        )

    def test_link_unknown_signal(self, signals, store, project):
        task = store.write(tasks_mod.create_task, "Login", "demo")
        with pytest.raises(ValueError, match="Signal not found"):
            signals.link_to_task("guide-missing", task.id)


class TestDecay:
    def test_decay_until_removed(self, signals):
        s = signals.emit("guide", "ctx", strength=0.9, decay_rate=0.05)

        signals.decay()
        assert signals.get(s.id).strength == pytest.approx(0.855)

        cycles = 1
        while signals.get(s.id) is not None:
            signals.decay()
            cycles += 1
            assert cycles < 100
        # 0.9 * 0.95^43 is the first value at or below 0.1
        assert cycles == 43
        assert signals.query() == []

    def test_decay_reports_counts(self, signals):
        signals.emit("guide", "strong", strength=0.9)
        signals.emit("warn", "weak", strength=0.11)
        result = signals.decay()
        assert result == {"updated": 2, "expired": 1}
        assert [s.context for s in signals.query()] == ["strong"]

    def test_expired_signals_hidden_and_removed(self, signals):
        old = signals.emit("guide", "old", created_at=NOW - timedelta(days=31))
        signals.emit("guide", "fresh")
        assert [s.context for s in signals.query()] == ["fresh"]

        result = signals.decay()
        assert result["expired"] == 1
        assert signals.get(old.id) is None

    def test_weak_signals_never_returned(self, signals):
        signals.emit("guide", "faint", strength=0.1)
        assert signals.query() == []


class TestQueries:
    def test_query_filters_and_orders(self, signals):
        signals.emit("guide", "a", pattern=coder(), strength=0.5)
        signals.emit("guide", "b", pattern=coder(), strength=0.9)
        signals.emit("warn", "c", pattern=SignalPattern(role="tester"), strength=0.6)

        assert [s.context for s in signals.query()] == ["b", "c", "a"]
        assert [s.context for s in signals.query(kind="warn")] == ["c"]
        assert [s.context for s in signals.query(role="coder")] == ["b", "a"]
        assert [s.context for s in signals.query(min_strength=0.6)] == ["b", "c"]
        assert [s.context for s in signals.query(limit=1)] == ["b"]

    def test_contextual_matching(self, signals):
        signals.emit("guide", "stage:implement_code auth", strength=0.9)
        signals.emit("warn", "unrelated", pattern=coder(), strength=0.8)
        signals.emit("guide", "other", pattern=SignalPattern(role="tester", complexity="high"))
        signals.emit("guide", "nothing in common")

        result = signals.contextual("coder", "stage:implement_code")
        assert [s.context for s in result["guides"]] == ["stage:implement_code auth"]
        assert [s.context for s in result["warnings"]] == ["unrelated"]

        by_complexity = signals.contextual(None, "", "high")
        assert [s.context for s in by_complexity["guides"]] == ["other"]

    def test_contextual_capped(self, signals):
        for i in range(25):
            signals.emit("guide", f"ctx {i}", pattern=coder())
        result = signals.contextual("coder")
        assert len(result["guides"]) + len(result["warnings"]) == 20


class TestAnalysis:
    def test_correlations(self, signals):
        for _ in range(10):
            signals.emit("guide", "auth", pattern=coder())
        for _ in range(2):
            signals.emit("warn", "db", pattern=coder(outcome="failure"))

        results = signals.correlations()
        assert results[0]["frequency"] == 10
        assert results[0]["correlation"] == pytest.approx(0.8)
        assert results[0]["recommendation"] == "replicate"
        assert results[1]["frequency"] == 2
        assert results[1]["correlation"] == pytest.approx(0.7 * 0.2)
        assert results[1]["recommendation"] == "review"

    def test_temporal_trends(self, signals):
        signals.emit("guide", "a", pattern=SignalPattern(role="tester"), strength=0.9,
                     created_at=NOW - timedelta(hours=6))
        signals.emit("guide", "b", pattern=SignalPattern(role="tester"), strength=0.9)
        signals.emit("warn", "c", pattern=coder(), strength=0.3)
        signals.emit("guide", "d", pattern=SignalPattern(role="architect"), strength=0.6)

        insights = {i["role"]: i for i in signals.temporal()}
        assert insights["tester"]["trend"] == "improving"
        assert insights["tester"]["frequency"] == 2
        assert insights["tester"]["span_hours"] == 6.0
        assert insights["coder"]["trend"] == "degrading"
        assert insights["architect"]["trend"] == "stable"

    def test_analysis_summary(self, signals):
        signals.emit("guide", "a", strength=0.8)
        signals.emit("warn", "b", strength=0.4)
        summary = signals.analysis()
        assert summary["total"] == 2
        assert summary["guides"] == 1
        assert summary["warnings"] == 1
        assert summary["avg_strength"] == pytest.approx(0.6)


class TestNaiveClock:
    @pytest.fixture
    def naive(self, store):
        return SignalCoordinator(store, clock=lambda: NOW.replace(tzinfo=None))

    def test_emit_stores_utc(self, naive):
        s = naive.emit("warn", "ctx")
        assert s.created_at == NOW
        assert s.expires_at.tzinfo is not None

    def test_query_and_decay_compare_against_aware_expiry(self, naive):
        naive.emit("guide", "ctx", expires_at=NOW + timedelta(days=1))
        naive.emit("warn", "old", created_at=NOW - timedelta(days=30), expires_at="2026-02-01T00:00:00")
        assert [s.context for s in naive.query()] == ["ctx"]
        assert naive.decay() == {"updated": 1, "expired": 1}
