"""Persistence for the progression engine"""
from talentika_progression.db.store import (
    CatalogProvider,
    InMemoryStore,
    ProgressionStore,
    StateChange,
)

__all__ = ["CatalogProvider", "InMemoryStore", "ProgressionStore", "StateChange"]
