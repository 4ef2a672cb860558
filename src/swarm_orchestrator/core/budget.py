"""Per-project token and cost budget accounting."""

import logging
from dataclasses import dataclass

from swarm_orchestrator.core import projects as projects_mod
from swarm_orchestrator.core.knowledge import KnowledgeStore

logger = logging.getLogger(__name__)

WARNING_THRESHOLD = 0.9


@dataclass
class BudgetStatus:
    state: str  # ok | warning | exceeded
    tokens_used: int
    cost_used: float
    max_tokens: int | None
    max_cost: float | None
    utilization: float

    @property
    def can_spawn(self) -> bool:
        return self.state == "ok"

    def as_dict(self) -> dict:
        return {
            "state": self.state,
            "tokens_used": self.tokens_used,
            "cost_used": self.cost_used,
            "max_tokens": self.max_tokens,
            "max_cost": self.max_cost,
            "utilization": round(self.utilization, 4),
        }


class BudgetGuard:
    """Admission control against each project's token and cost limits.

    Limits set on the project win over the configured defaults; a limit of
    None means unlimited.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        default_max_tokens: int | None = None,
        default_max_cost: float | None = None,
    ):
        self.store = store
        self.default_max_tokens = default_max_tokens
        self.default_max_cost = default_max_cost

    def check(self, project_id: str) -> BudgetStatus:
        project = self.store.read(projects_mod.require_project, project_id)
        max_tokens = project.max_tokens if project.max_tokens is not None else self.default_max_tokens
        max_cost = project.max_cost if project.max_cost is not None else self.default_max_cost

        ratios = []
        if max_tokens:
            ratios.append(project.tokens_used / max_tokens)
        if max_cost:
            ratios.append(project.cost_used / max_cost)
        utilization = max(ratios) if ratios else 0.0

        exceeded = (
            (max_tokens is not None and project.tokens_used > max_tokens)
            or (max_cost is not None and project.cost_used > max_cost)
        )
        if exceeded:
            state = "exceeded"
        elif utilization >= WARNING_THRESHOLD:
            state = "warning"
        else:
            state = "ok"

        return BudgetStatus(
            state=state,
            tokens_used=project.tokens_used,
            cost_used=project.cost_used,
            max_tokens=max_tokens,
            max_cost=max_cost,
            utilization=utilization,
        )

    def record_usage(self, project_id: str, tokens: int = 0, cost: float = 0.0) -> BudgetStatus:
        if tokens or cost:
            self.store.write(projects_mod.record_usage, project_id, tokens, cost)
        return self.check(project_id)
