"""
ideastore - semantic idea storage with reminders.

Ideas are short titled notes. Each one is embedded on write so it can be
found by meaning, filtered by owner, category, priority, status, tags and
date, and can carry reminders that a scheduler delivers when due.

Quick start:
    from ideastore import CreateIdeaInput, get_config_dir, load_or_create_config, open_store

    async with open_store(load_or_create_config(get_config_dir())) as store:
        await store.create(CreateIdeaInput(title="...", content="...", user_id="u1"))
        for result in await store.search("..."):
            print(result.score, result.idea.title)
"""

from .api import IdeaStore, open_store
from .backend import StoreBundle, create_stores
from .config import StoreConfig, get_config_dir, load_or_create_config
from .errors import (
    IdeaStoreError,
    IndexInconsistency,
    InvalidInput,
    ProviderUnavailable,
    Result,
    StorageError,
    ValidationError,
    capture,
)
from .protocol import IdeaRepository, RecordStore, VectorIndex
from .reminders import ReminderScheduler
from .types import (
    CreateIdeaInput,
    DateRange,
    Idea,
    IdeaFilter,
    Reminder,
    ReminderInput,
    SearchResult,
    StoreStats,
    UpdateIdeaInput,
)

__version__ = "0.1.0"
__all__ = [
    "IdeaStore",
    "open_store",
    "StoreBundle",
    "create_stores",
    "StoreConfig",
    "get_config_dir",
    "load_or_create_config",
    "IdeaStoreError",
    "ValidationError",
    "InvalidInput",
    "ProviderUnavailable",
    "IndexInconsistency",
    "StorageError",
    "Result",
    "capture",
    "IdeaRepository",
    "RecordStore",
    "VectorIndex",
    "ReminderScheduler",
    "Idea",
    "Reminder",
    "CreateIdeaInput",
    "UpdateIdeaInput",
    "ReminderInput",
    "IdeaFilter",
    "DateRange",
    "SearchResult",
    "StoreStats",
]
