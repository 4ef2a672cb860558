"""Data models for the swarm orchestrator knowledge graph."""

from dataclasses import dataclass, field
from datetime import datetime

TASK_STATUSES = ("pending", "running", "completed", "failed", "impasse", "paused")
WORKER_STATUSES = ("running", "completed", "failed", "killed")
SIGNAL_KINDS = ("guide", "warn")
SIGNAL_OUTCOMES = ("success", "failure", "partial")
COMPLEXITIES = ("low", "medium", "high")
ERROR_KINDS = ("system_failure", "workflow_step_error", "impasse", "critique_failure", "timeout")
SEVERITIES = ("low", "medium", "high", "critical")


@dataclass
class Project:
    id: str
    name: str
    repo_path: str = ""
    base_branch: str = "main"
    status: str = "active"
    slack_channel: str | None = None
    max_tokens: int | None = None
    max_cost: float | None = None
    tokens_used: int = 0
    cost_used: float = 0.0
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Task:
    id: str
    project_id: str
    title: str
    description: str = ""
    status: str = "pending"
    priority: int = 3
    retry_count: int = 0
    stage: str = "define_requirements"
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    depends_on: list[str] = field(default_factory=list)


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class Worker:
    id: str
    project_id: str
    task_id: str
    role: str
    session_id: str | None = None
    workspace: str | None = None
    branch: str | None = None
    status: str = "running"
    helper: bool = False
    exit_code: int | None = None
    tokens: int = 0
    cost: float = 0.0
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class SignalPattern:
    stage: str | None = None
    outcome: str = "success"
    role: str | None = None
    complexity: str = "medium"
    error_types: list[str] = field(default_factory=list)
    duration: float | None = None

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "outcome": self.outcome,
            "role": self.role,
            "complexity": self.complexity,
            "error_types": list(self.error_types),
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "SignalPattern | None":
        if not data:
            return None
        return cls(
            stage=data.get("stage"),
            outcome=data.get("outcome", "success"),
            role=data.get("role"),
            complexity=data.get("complexity", "medium"),
            error_types=list(data.get("error_types") or []),
            duration=data.get("duration"),
        )


@dataclass
class Signal:
    """A decaying coordination signal ("pheromone")."""

    id: str
    kind: str
    strength: float
    decay_rate: float
    context: str
    pattern: SignalPattern | None = None
    project_id: str | None = None
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None
    expires_at: datetime | None = None


@dataclass
class Decision:
    id: str
    project_id: str
    title: str
    description: str = ""
    rationale: str = ""
    status: str = "accepted"
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Contract:
    id: str
    project_id: str
    name: str
    kind: str = "openapi"
    version: str = "1.0.0"
    description: str = ""
    specification: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class CodeModule:
    id: str
    project_id: str
    name: str
    file_path: str = ""
    language: str = "python"
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ValidationTest:
    id: str
    project_id: str
    name: str
    file_path: str = ""
    framework: str = "pytest"
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Failure:
    id: str
    project_id: str
    task_id: str
    kind: str
    severity: str
    message: str = ""
    stage: str | None = None
    output_excerpt: str = ""
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Diagnostic:
    id: str
    project_id: str
    failure_id: str
    summary: str
    root_cause: str = ""
    suggestions: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class EscalatedError:
    id: str
    project_id: str
    task_id: str
    kind: str
    severity: str
    message: str = ""
    stage: str | None = None
    resolved: bool = False
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


# Graph label for each record type
LABELS: dict[type, str] = {
    Project: "Project",
    Task: "Task",
    Worker: "Worker",
    Signal: "Pheromone",
    Decision: "Decision",
    Contract: "Contract",
    CodeModule: "CodeModule",
    ValidationTest: "Test",
    Failure: "Failure",
    Diagnostic: "Diagnostic",
    EscalatedError: "EscalatedError",
}

RECORD_TYPES: dict[str, type] = {label: cls for cls, label in LABELS.items()}
