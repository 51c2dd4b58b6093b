"""Store collaborator contract and implementations."""

from experiments_core.store.base import ExperimentsStore, fold_variant_metrics
from experiments_core.store.memory import InMemoryExperimentsStore
from experiments_core.store.sql import SQLAlchemyExperimentsStore

__all__ = [
    "ExperimentsStore",
    "InMemoryExperimentsStore",
    "SQLAlchemyExperimentsStore",
    "fold_variant_metrics",
]
