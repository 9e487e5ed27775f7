"""Wires the store, library and criteria components together."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .config_loader import Settings
from .evaluator import RuleEvaluator
from .flags import FlagRegistry
from .library import LibraryResolver, LibrarySource, StaticLibrarySource
from .procedures import ProcedureLifecycle
from .repository import RuleRepository
from .store import CriteriaStore, InMemoryStore, JsonFileStore

logger = logging.getLogger(__name__)


@dataclass
class CriteriaService:
    store: CriteriaStore
    library_source: LibrarySource
    rules: RuleRepository
    procedures: ProcedureLifecycle
    evaluator: RuleEvaluator
    flags: FlagRegistry

    def resolver(self) -> LibraryResolver:
        """A fresh resolver, so label caches live for one request only."""
        return LibraryResolver(self.library_source)


def build_service(
    store: Optional[CriteriaStore] = None,
    library_source: Optional[LibrarySource] = None,
) -> CriteriaService:
    store = store if store is not None else InMemoryStore()
    library_source = library_source if library_source is not None else StaticLibrarySource()
    rules = RuleRepository(store, library_source)
    procedures = ProcedureLifecycle(store, rules)
    evaluator = RuleEvaluator(store, rules, procedures)
    flags = FlagRegistry(store, rules)
    return CriteriaService(store, library_source, rules, procedures, evaluator, flags)


def service_from_settings(settings: Settings) -> CriteriaService:
    if settings.store.backend == "json":
        if not settings.store.path:
            raise ValueError("store.path is required for the json store backend")
        store: CriteriaStore = JsonFileStore(settings.store.path)
    else:
        store = InMemoryStore()

    if settings.library.path:
        library_source: LibrarySource = StaticLibrarySource.from_file(settings.library.path)
    else:
        logger.warning("No library seed configured; labels will resolve to 'Unknown'")
        library_source = StaticLibrarySource()

    return build_service(store, library_source)
