"""
memory/ — Conversation working memory

Public API:
    from fitcoach.memory import ConversationStateManager, InMemorySessionStore, SqliteSessionStore

Component overview:
    ConversationState         everything persisted for one session
    SessionStore              load / save / delete boundary (memory, sqlite)
    ConversationStateManager  history, tasks, profile, clarification, AI context
"""

from fitcoach.memory.session_store import InMemorySessionStore, SessionStore, SqliteSessionStore
from fitcoach.memory.state_manager import ConversationStateManager
from fitcoach.memory.types import (
    ChatMessage,
    ClarificationContext,
    ClarificationOption,
    ConversationState,
    DialogueState,
    Role,
    StepPatch,
    StepSpec,
    StepStatus,
    TaskContext,
    TaskStatus,
    TaskStep,
    UserProfile,
)

__all__ = [
    "ConversationStateManager",
    "SessionStore",
    "InMemorySessionStore",
    "SqliteSessionStore",
    "ChatMessage",
    "ClarificationContext",
    "ClarificationOption",
    "ConversationState",
    "DialogueState",
    "Role",
    "StepPatch",
    "StepSpec",
    "StepStatus",
    "TaskContext",
    "TaskStatus",
    "TaskStep",
    "UserProfile",
]
