"""Per-task pipeline stage tracking and stage-to-role mapping."""

import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

STAGES = (
    "define_requirements",
    "formalize_contracts",
    "prototype_logic",
    "design_architecture",
    "implement_code",
    "execute_tests",
)

STAGE_ROLES = {
    "define_requirements": "spec_writer",
    "formalize_contracts": "formalizer",
    "prototype_logic": "prototyper",
    "design_architecture": "architect",
    "implement_code": "coder",
    "execute_tests": "tester",
}

# Stages whose pending tasks a medium-severity pause applies to
LATE_STAGES = ("design_architecture", "implement_code", "execute_tests")


class WorkflowError(ValueError):
    """Raised for invalid workflow transitions."""


@dataclass(frozen=True)
class StepConfig:
    stage: str
    role: str
    critique_required: bool
    error_recovery_enabled: bool
    guidance: str
    required_inputs: tuple[str, ...] = ()
    expected_outputs: tuple[str, ...] = ()


STEP_CONFIGS = {
    "define_requirements": StepConfig(
        "define_requirements", "spec_writer", True, True,
        "Write behaviour-driven requirements with acceptance criteria for the task.",
        required_inputs=("task description",),
        expected_outputs=("requirements document", "acceptance criteria"),
    ),
    "formalize_contracts": StepConfig(
        "formalize_contracts", "formalizer", True, True,
        "Turn the requirements into formal API and data contracts with pre- and post-conditions.",
        required_inputs=("requirements document",),
        expected_outputs=("API contract", "data schemas"),
    ),
    "prototype_logic": StepConfig(
        "prototype_logic", "prototyper", True, True,
        "Sketch the core logic as pseudocode or a throwaway prototype against the contracts.",
        required_inputs=("contracts",),
        expected_outputs=("prototype", "logic notes"),
    ),
    "design_architecture": StepConfig(
        "design_architecture", "architect", True, True,
        "Design the module structure and record architectural decisions.",
        required_inputs=("contracts", "prototype"),
        expected_outputs=("architecture decisions", "module layout"),
    ),
    "implement_code": StepConfig(
        "implement_code", "coder", False, True,
        "Implement the design, honouring the contracts, and commit the code.",
        required_inputs=("architecture decisions", "contracts"),
        expected_outputs=("source code",),
    ),
    "execute_tests": StepConfig(
        "execute_tests", "tester", False, True,
        "Write and run tests validating the implementation against the contracts.",
        required_inputs=("source code", "contracts"),
        expected_outputs=("test suite", "test results"),
    ),
}

_STAGE_KEYWORDS = (
    (r"\btests?\b|\btesting\b", "execute_tests"),
    (r"\barchitecture\b|\bdesign\b", "design_architecture"),
    (r"\bcontracts?\b|\bapi\b|\bschema\b", "formalize_contracts"),
    (r"\bprototype\b|\bpoc\b", "prototype_logic"),
    (r"\bimplement\b|\bcode\b|\bbuild\b", "implement_code"),
)


def infer_initial_stage(title: str) -> str:
    """Guess the entry stage for a task from keywords in its title."""
    lowered = title.lower()
    for pattern, stage in _STAGE_KEYWORDS:
        if re.search(pattern, lowered):
            return stage
    return STAGES[0]


def role_for_stage(stage: str) -> str:
    if stage not in STAGE_ROLES:
        raise WorkflowError(f"Unknown workflow stage: {stage}")
    return STAGE_ROLES[stage]


def next_stage(stage: str) -> str | None:
    index = STAGES.index(stage)
    if index + 1 < len(STAGES):
        return STAGES[index + 1]
    return None


@dataclass
class WorkflowState:
    task_id: str
    current_stage: str
    history: list[tuple[str, datetime]] = field(default_factory=list)
    recovery_enabled: bool = True
    completed: bool = False


class WorkflowStateMachine:
    """Owns the in-memory WorkflowState table, keyed by task id."""

    def __init__(self):
        self._states: dict[str, WorkflowState] = {}
        self._lock = threading.Lock()

    def initialize(self, task_id: str, stage: str | None = None) -> WorkflowState:
        """Create state for a task, starting at `stage` or the first stage.

        Returns the existing state unchanged if one is already held.
        """
        with self._lock:
            if task_id in self._states:
                return self._states[task_id]
            stage = stage or STAGES[0]
            if stage not in STAGES:
                raise WorkflowError(f"Unknown workflow stage: {stage}")
            state = WorkflowState(
                task_id=task_id,
                current_stage=stage,
                history=[(stage, _now())],
                recovery_enabled=STEP_CONFIGS[stage].error_recovery_enabled,
            )
            self._states[task_id] = state
            return state

    def get_state(self, task_id: str) -> WorkflowState | None:
        with self._lock:
            return self._states.get(task_id)

    def current_stage(self, task_id: str) -> str:
        return self._require(task_id).current_stage

    def role_for(self, task_id: str) -> str:
        return role_for_stage(self.current_stage(task_id))

    def step_config(self, task_id: str) -> StepConfig:
        return STEP_CONFIGS[self.current_stage(task_id)]

    def advance(self, task_id: str) -> str | None:
        """Move the task to its next stage.

        Returns the new stage, or None once the last stage has completed.
        """
        with self._lock:
            state = self._require_locked(task_id)
            if state.completed:
                raise WorkflowError(f"Workflow already completed for task {task_id}")
            following = next_stage(state.current_stage)
            if following is None:
                state.completed = True
                logger.info("Workflow completed for task %s", task_id)
                return None
            state.current_stage = following
            state.history.append((following, _now()))
            logger.info("Task %s advanced to %s", task_id, following)
            return following

    def skip_to(self, task_id: str, stage: str) -> str:
        """Jump forward to a later stage."""
        if stage not in STAGES:
            raise WorkflowError(f"Unknown workflow stage: {stage}")
        with self._lock:
            state = self._require_locked(task_id)
            if STAGES.index(stage) <= STAGES.index(state.current_stage):
                raise WorkflowError(
                    f"Cannot move task {task_id} backwards from {state.current_stage} to {stage}"
                )
            state.current_stage = stage
            state.history.append((stage, _now()))
            return stage

    def set_recovery_enabled(self, task_id: str, enabled: bool):
        with self._lock:
            self._require_locked(task_id).recovery_enabled = enabled

    def is_recovery_enabled(self, task_id: str, stage: str | None = None) -> bool:
        """Whether automatic error recovery may run for the task.

        Tasks without state fall back to the stage's configured default.
        """
        state = self.get_state(task_id)
        if state is not None:
            return state.recovery_enabled
        return STEP_CONFIGS[stage or STAGES[0]].error_recovery_enabled

    def invalidate(self, task_id: str) -> bool:
        """Forget a task's state. Returns True if state was held."""
        with self._lock:
            return self._states.pop(task_id, None) is not None

    def clear(self):
        with self._lock:
            self._states.clear()

    def _require(self, task_id: str) -> WorkflowState:
        with self._lock:
            return self._require_locked(task_id)

    def _require_locked(self, task_id: str) -> WorkflowState:
        state = self._states.get(task_id)
        if state is None:
            raise WorkflowError(f"No workflow state for task {task_id}")
        return state


def _now() -> datetime:
    return datetime.now(timezone.utc)
