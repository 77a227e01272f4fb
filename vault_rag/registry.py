"""
Process-wide registry of RAG engines, keyed by a stable identifier
(typically the vault root or a session id).

Engines are created on first request and torn down explicitly when the
owning session ends; nothing depends on garbage collection.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from vault_rag.rag.engine import RAGEngine

LOG = logging.getLogger("vault_rag.registry")


class EngineRegistry:
    """Owns RAGEngine instances and their teardown."""

    def __init__(self) -> None:
        self._engines: Dict[str, RAGEngine] = {}
        self._lock = asyncio.Lock()

    def get(self, key: str) -> Optional[RAGEngine]:
        return self._engines.get(key)

    def register(self, key: str, engine: RAGEngine) -> None:
        if key in self._engines:
            raise KeyError(f"An engine is already registered for {key!r}")
        self._engines[key] = engine
        LOG.debug("Registered engine %s", key)

    async def get_or_create(self, key: str, factory: Callable[[], RAGEngine]) -> RAGEngine:
        """Return the engine for ``key``, building it with ``factory`` on first use."""
        engine = self._engines.get(key)
        if engine is not None:
            return engine
        async with self._lock:
            engine = self._engines.get(key)
            if engine is None:
                engine = factory()
                self._engines[key] = engine
                LOG.info("Created engine for %s", key)
        return engine

    async def teardown(self, key: str) -> bool:
        """
        Cancel the engine's running pass, wait for it, and release its resources.

        Returns False when no engine is registered under ``key``.
        """
        engine = self._engines.pop(key, None)
        if engine is None:
            return False
        await engine.close()
        LOG.info("Tore down engine for %s", key)
        return True

    async def teardown_all(self) -> None:
        for key in list(self._engines):
            await self.teardown(key)

    def keys(self) -> List[str]:
        return sorted(self._engines)

    def __contains__(self, key: object) -> bool:
        return key in self._engines

    def __len__(self) -> int:
        return len(self._engines)
