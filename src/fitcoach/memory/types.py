"""
memory/types.py — Conversation State Data Models

Everything the Conversation State Manager persists for a session. All models
are pydantic so the session stores can serialise them explicitly
(model_dump(mode="json") → ISO-8601 timestamps) and restore them exactly.

Ownership:
    ConversationState   one per session, owned by ConversationStateManager
    TaskContext         at most one non-terminal per session (active_task)
    ClarificationContext present iff the dialogue state is AWAITING_CLARIFICATION
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"          # a dependency failed; never attempted


TERMINAL_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED})


class TaskStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"      # every step completed
    FAILED = "failed"            # at least one step failed or was skipped


class DialogueState(str, Enum):
    NONE = "NONE"
    AWAITING_CLARIFICATION = "AWAITING_CLARIFICATION"


# ─────────────────────────────────────────────────────────────────────────────
# Messages
# ─────────────────────────────────────────────────────────────────────────────


class ChatMessage(BaseModel):
    role: Role
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    tool_calls: list[dict[str, Any]] = Field(default_factory=list)
    tool_result: Optional[dict[str, Any]] = None

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: Optional[list[dict[str, Any]]] = None) -> "ChatMessage":
        return cls(role=Role.ASSISTANT, content=content, tool_calls=tool_calls or [])

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(role=Role.SYSTEM, content=content)


# ─────────────────────────────────────────────────────────────────────────────
# Tasks
# ─────────────────────────────────────────────────────────────────────────────


class TaskStep(BaseModel):
    step_id: str
    name: str
    description: str = ""
    required_tools: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)   # names of earlier steps
    status: StepStatus = StepStatus.PENDING
    output: Any = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES


class StepSpec(BaseModel):
    """Planner output for one step, before it is given an id."""
    name: str
    description: str = ""
    tools: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    parameters: dict[str, Any] = Field(default_factory=dict)


class StepPatch(BaseModel):
    """Partial update applied by ConversationStateManager.update_task_step()."""
    status: Optional[StepStatus] = None
    output: Any = None
    error: Optional[str] = None


class TaskContext(BaseModel):
    task_id: str
    type: str
    steps: list[TaskStep] = Field(default_factory=list)
    status: TaskStatus = TaskStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != TaskStatus.ACTIVE

    def step(self, step_id: str) -> Optional[TaskStep]:
        for s in self.steps:
            if s.step_id == step_id:
                return s
        return None

    def step_by_name(self, name: str) -> Optional[TaskStep]:
        for s in self.steps:
            if s.name == name:
                return s
        return None

    @property
    def completed_count(self) -> int:
        return sum(1 for s in self.steps if s.status == StepStatus.COMPLETED)

    @property
    def current_index(self) -> int:
        """1-based index of the first non-terminal step (len(steps) when done)."""
        for i, s in enumerate(self.steps):
            if not s.is_terminal:
                return i + 1
        return len(self.steps)


# ─────────────────────────────────────────────────────────────────────────────
# Profile & preferences
# ─────────────────────────────────────────────────────────────────────────────


class UserProfile(BaseModel):
    name: Optional[str] = None
    fitness_level: str = "beginner"
    goals: list[str] = Field(default_factory=lambda: ["general_fitness"])
    equipment: list[str] = Field(default_factory=lambda: ["bodyweight"])
    workout_frequency: str = "2-3 times per week"
    session_duration: str = "30-45 minutes"
    injuries: list[str] = Field(default_factory=list)

    def summary(self) -> str:
        return (
            f"Fitness level: {self.fitness_level}; "
            f"goals: {', '.join(self.goals) or 'none'}; "
            f"equipment: {', '.join(self.equipment) or 'none'}; "
            f"frequency: {self.workout_frequency}; "
            f"session length: {self.session_duration}"
        )


class Preferences(BaseModel):
    units: str = "metric"
    preferred_time: Optional[str] = None
    difficulty: str = "moderate"


class WorkoutContext(BaseModel):
    active_workout_id: Optional[str] = None
    recent_exercises: list[str] = Field(default_factory=list)


# ─────────────────────────────────────────────────────────────────────────────
# Clarification dialogue
# ─────────────────────────────────────────────────────────────────────────────


class ClarificationOption(BaseModel):
    label: str
    value: str


class ClarificationContext(BaseModel):
    original_intent_name: str
    clarification_question: str
    options: list[ClarificationOption]
    related_data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    def render(self) -> str:
        lines = [self.clarification_question]
        lines.extend(f"{i}. {opt.label}" for i, opt in enumerate(self.options, start=1))
        return "\n".join(lines)


# ─────────────────────────────────────────────────────────────────────────────
# Conversation state
# ─────────────────────────────────────────────────────────────────────────────


class StateMetadata(BaseModel):
    version: int = 0
    flags: dict[str, bool] = Field(default_factory=dict)


class ConversationState(BaseModel):
    session_id: str
    user_id: str
    messages: list[ChatMessage] = Field(default_factory=list)
    active_task: Optional[TaskContext] = None
    last_task: Optional[TaskContext] = None
    user_profile: UserProfile = Field(default_factory=UserProfile)
    preferences: Preferences = Field(default_factory=Preferences)
    workout_context: WorkoutContext = Field(default_factory=WorkoutContext)
    clarification: Optional[ClarificationContext] = None
    metadata: StateMetadata = Field(default_factory=StateMetadata)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def dialogue_state(self) -> DialogueState:
        # Derived, so the clarification invariant cannot drift.
        if self.clarification is not None:
            return DialogueState.AWAITING_CLARIFICATION
        return DialogueState.NONE
