"""Decaying coordination signals ("pheromones") layered on the knowledge store."""

import json
import logging
import sqlite3
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from swarm_orchestrator.core.knowledge import KnowledgeStore
from swarm_orchestrator.core.tasks import require_task
from swarm_orchestrator.db import graph
from swarm_orchestrator.db.models import (
    COMPLEXITIES,
    SIGNAL_KINDS,
    SIGNAL_OUTCOMES,
    Signal,
    SignalPattern,
)

logger = logging.getLogger(__name__)

LABEL = "Pheromone"
INFLUENCES = "INFLUENCES"

# Signals at or below this strength are removed and never returned
MIN_STRENGTH = 0.1
CONTEXTUAL_LIMIT = 20
REPLICATE_THRESHOLD = 0.7
IMPROVING_THRESHOLD = 0.8
DEGRADING_THRESHOLD = 0.5

KIND_DEFAULTS = {
    "guide": {"strength": 0.8, "decay_rate": 0.05, "ttl": timedelta(days=30)},
    "warn": {"strength": 0.7, "decay_rate": 0.15, "ttl": timedelta(days=14)},
}


class SignalValidationError(ValueError):
    """Raised when a signal cannot be created as requested."""


class SignalCoordinator:
    def __init__(
        self,
        store: KnowledgeStore,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        # Naive clock readings are taken as UTC
        return _as_utc(self._clock())

    # ── Creation ─────────────────────────────────────────────────────────────

    def emit(
        self,
        kind: str,
        context: str,
        pattern: SignalPattern | dict | None = None,
        strength: float | None = None,
        decay_rate: float | None = None,
        project_id: str | None = None,
        created_at: datetime | str | None = None,
        expires_at: datetime | str | None = None,
        metadata: dict | None = None,
    ) -> Signal:
        """Create a signal, applying the kind's default strength, decay and TTL."""
        if kind not in SIGNAL_KINDS:
            raise SignalValidationError(f"Invalid signal kind: {kind}")
        defaults = KIND_DEFAULTS[kind]
        strength = defaults["strength"] if strength is None else strength
        decay_rate = defaults["decay_rate"] if decay_rate is None else decay_rate
        if not 0 <= strength <= 1:
            raise SignalValidationError("Signal strength must be between 0 and 1")
        if not 0 <= decay_rate <= 1:
            raise SignalValidationError("Signal decay rate must be between 0 and 1")

        if isinstance(pattern, dict):
            pattern = SignalPattern.from_dict(pattern)
        if pattern is not None:
            _validate_pattern(pattern)

        created = _to_datetime(created_at, "created_at") or self._now()
        expires = _to_datetime(expires_at, "expires_at") or created + defaults["ttl"]

        signal = Signal(
            id=graph.new_id(kind),
            kind=kind,
            strength=float(strength),
            decay_rate=float(decay_rate),
            context=context,
            pattern=pattern,
            project_id=project_id,
            metadata=dict(metadata or {}),
            created_at=created,
            expires_at=expires,
        )
        self.store.write(graph.save_record, signal)
        logger.debug("Emitted %s signal %s (%.2f) for %s", kind, signal.id, strength, context)
        return signal

    def link_to_task(self, signal_id: str, task_id: str):
        """Record that a signal influenced a task."""
        def _link(db):
            if not graph.get_node(db, signal_id, LABEL):
                raise ValueError(f"Signal not found: {signal_id}")
            require_task(db, task_id)
            graph.create_relationship(db, signal_id, task_id, INFLUENCES)
        self.store.write(_link)

    def get(self, signal_id: str) -> Signal | None:
        return self.store.read(graph.get_record, Signal, signal_id)

    # ── Queries ──────────────────────────────────────────────────────────────

    def query(
        self,
        kind: str | None = None,
        role: str | None = None,
        min_strength: float | None = None,
        limit: int | None = None,
    ) -> list[Signal]:
        """Active signals, strongest first."""
        signals = self.store.read(self._active_signals)
        if kind:
            signals = [s for s in signals if s.kind == kind]
        if role:
            signals = [s for s in signals if s.pattern and s.pattern.role == role]
        if min_strength is not None:
            signals = [s for s in signals if s.strength >= min_strength]
        if limit is not None:
            signals = signals[:limit]
        return signals

    def contextual(
        self,
        role: str | None,
        context: str = "",
        complexity: str | None = None,
    ) -> dict[str, list[Signal]]:
        """Guidance and warnings relevant to a role, context or complexity."""
        def _matches(s: Signal) -> bool:
            if context and context in s.context:
                return True
            if s.pattern is None:
                return False
            if role and s.pattern.role == role:
                return True
            return bool(complexity) and s.pattern.complexity == complexity

        matched = [s for s in self.store.read(self._active_signals) if _matches(s)]
        matched = matched[:CONTEXTUAL_LIMIT]
        return {
            "guides": [s for s in matched if s.kind == "guide"],
            "warnings": [s for s in matched if s.kind == "warn"],
        }

    def _active_signals(self, db: sqlite3.Connection) -> list[Signal]:
        now = self._now()
        signals = [
            graph.row_to_record(row)
            for row in graph.find_nodes(db, LABEL)
        ]
        active = [
            s for s in signals
            if s.strength > MIN_STRENGTH and (s.expires_at is None or s.expires_at > now)
        ]
        active.sort(key=lambda s: s.strength, reverse=True)
        return active

    # ── Maintenance ──────────────────────────────────────────────────────────

    def decay(self) -> dict:
        """Run one decay cycle over every signal.

        Each unexpired signal is multiplied by (1 - decay_rate); afterwards
        any signal that has expired or dropped to MIN_STRENGTH or below is
        deleted.
        """
        result = self.store.write(self._decay)
        logger.info(
            "Signal decay: %d updated, %d removed", result["updated"], result["expired"]
        )
        return result

    def _decay(self, db: sqlite3.Connection) -> dict:
        now = self._now()
        updated = 0
        doomed = []
        for row in graph.find_nodes(db, LABEL):
            props = json.loads(row["properties"])
            expires = graph.parse_dt(props.get("expires_at"))
            if expires is not None and expires <= now:
                doomed.append(row["id"])
                continue
            strength = props["strength"] * (1 - props["decay_rate"])
            strength = min(1.0, max(0.0, strength))
            graph.update_node(db, row["id"], {"strength": strength})
            updated += 1
            if strength <= MIN_STRENGTH:
                doomed.append(row["id"])
        for signal_id in doomed:
            graph.delete_node(db, signal_id)
        return {"updated": updated, "expired": len(doomed)}

    # ── Analysis ─────────────────────────────────────────────────────────────

    def correlations(self, role: str | None = None) -> list[dict]:
        """Group signals by pattern and score how reliably each recurs."""
        groups: dict[tuple, list[Signal]] = defaultdict(list)
        for s in self.query(role=role):
            if s.pattern is None:
                continue
            key = (s.pattern.stage, s.pattern.outcome, s.pattern.role, s.pattern.complexity)
            groups[key].append(s)

        results = []
        for (stage, outcome, pattern_role, complexity), members in groups.items():
            frequency = len(members)
            avg = sum(m.strength for m in members) / frequency
            score = avg * min(frequency / 10, 1)
            results.append({
                "pattern": {
                    "stage": stage,
                    "outcome": outcome,
                    "role": pattern_role,
                    "complexity": complexity,
                },
                "frequency": frequency,
                "avg_strength": round(avg, 4),
                "correlation": round(score, 4),
                "recommendation": "replicate" if score > REPLICATE_THRESHOLD else "review",
            })
        results.sort(key=lambda r: r["correlation"], reverse=True)
        return results

    def temporal(self, role: str | None = None) -> list[dict]:
        """Per-role frequency, strength and trend over time."""
        by_role: dict[str, list[Signal]] = defaultdict(list)
        for s in self.query(role=role):
            if s.pattern and s.pattern.role:
                by_role[s.pattern.role].append(s)

        insights = []
        for pattern_role, members in sorted(by_role.items()):
            avg = sum(m.strength for m in members) / len(members)
            first = min(m.created_at for m in members)
            last = max(m.created_at for m in members)
            if avg > IMPROVING_THRESHOLD:
                trend = "improving"
            elif avg < DEGRADING_THRESHOLD:
                trend = "degrading"
            else:
                trend = "stable"
            insights.append({
                "role": pattern_role,
                "frequency": len(members),
                "avg_strength": round(avg, 4),
                "first_seen": first.isoformat(),
                "last_seen": last.isoformat(),
                "span_hours": round((last - first).total_seconds() / 3600, 2),
                "trend": trend,
            })
        return insights

    def analysis(self) -> dict:
        signals = self.query()
        guides = [s for s in signals if s.kind == "guide"]
        warns = [s for s in signals if s.kind == "warn"]
        avg = sum(s.strength for s in signals) / len(signals) if signals else 0.0
        return {
            "total": len(signals),
            "guides": len(guides),
            "warnings": len(warns),
            "avg_strength": round(avg, 4),
            "correlations": self.correlations(),
            "temporal": self.temporal(),
        }


def _validate_pattern(pattern: SignalPattern):
    if pattern.outcome not in SIGNAL_OUTCOMES:
        raise SignalValidationError(f"Invalid task outcome: {pattern.outcome}")
    if pattern.complexity not in COMPLEXITIES:
        raise SignalValidationError(f"Invalid complexity: {pattern.complexity}")


def _to_datetime(value, name: str) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as e:
            raise SignalValidationError(f"Invalid {name} timestamp: {value}") from e
    return _as_utc(parsed)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
