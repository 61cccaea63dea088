"""
Database module for persistence.

Provides SQLAlchemy models, session helpers and the repository pattern for
the hypothesis graph.
"""

from why_stack.db.models import (
    ActivityLogModel,
    Base,
    EvidenceModel,
    HypothesisEdgeModel,
    HypothesisModel,
    RefutationModel,
    UserModel,
    WatcherModel,
)
from why_stack.db.repository import (
    ActivityRepository,
    EdgeRepository,
    EvidenceRepository,
    HypothesisRepository,
    RefutationRepository,
    UserRepository,
    WatcherRepository,
)
from why_stack.db.session import create_engine, create_schema, create_session_factory

__all__ = [
    "Base",
    "ActivityLogModel",
    "EvidenceModel",
    "HypothesisEdgeModel",
    "HypothesisModel",
    "RefutationModel",
    "UserModel",
    "WatcherModel",
    "ActivityRepository",
    "EdgeRepository",
    "EvidenceRepository",
    "HypothesisRepository",
    "RefutationRepository",
    "UserRepository",
    "WatcherRepository",
    "create_engine",
    "create_schema",
    "create_session_factory",
]
