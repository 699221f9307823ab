"""
Context Keeper

Persistent context memory for an AI coding assistant: projects, sessions,
goals, decisions, errors and knowledge in PostgreSQL, exposed as MCP tools.
"""

__version__ = "0.1.0"

# Configuration
from contextkeeper.config import Settings

# Errors
from contextkeeper.errors import (
    ConstraintError,
    ContextKeeperError,
    IntegrationError,
    NotFoundError,
    TransientError,
    UnknownToolError,
    ValidationError,
)

# Core models
from contextkeeper.models import (
    Artifact,
    CodeSnapshot,
    ConversationMessage,
    Decision,
    ErrorLog,
    GithubBackup,
    KnowledgeContext,
    Project,
    Relationship,
    Session,
    SessionReminder,
    SessionTask,
    Task,
)

__all__ = [
    # Version
    "__version__",
    # Models
    "Project",
    "Session",
    "SessionTask",
    "Task",
    "ConversationMessage",
    "Decision",
    "ErrorLog",
    "CodeSnapshot",
    "KnowledgeContext",
    "Relationship",
    "Artifact",
    "GithubBackup",
    "SessionReminder",
    # Config
    "Settings",
    # Errors
    "ContextKeeperError",
    "ValidationError",
    "ConstraintError",
    "NotFoundError",
    "TransientError",
    "IntegrationError",
    "UnknownToolError",
]
