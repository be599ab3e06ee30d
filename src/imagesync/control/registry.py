"""
Engine registry.

Lets the UI layer and the platform background trigger share one engine per
purpose, and with it the in-memory retry ledger and download accounting.
The registry is an explicit object owned by the composition root, not a
module-level singleton.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from imagesync.auth.identity import IdentityProvider
from imagesync.config import SyncConfiguration, validate_config
from imagesync.errors import EngineNotInitializedError
from imagesync.storage.base import MetadataStore, SettingsStore
from imagesync.sync.engine import SyncEngine

DEFAULT_PURPOSE = "image-sync"


class EngineRegistry:
    """
    Sync engines keyed by purpose.

    ``get()`` with a configuration creates the engine on first use; later
    calls (with or without one) return the existing instance.
    """

    def __init__(
        self,
        *,
        settings_store: SettingsStore,
        metadata_store: MetadataStore,
        identity_provider: IdentityProvider | None = None,
        **engine_options: Any,
    ):
        self.settings_store = settings_store
        self.metadata_store = metadata_store
        self.identity_provider = identity_provider
        self._engine_options = engine_options
        self._engines: dict[str, SyncEngine] = {}

    def get(
        self,
        purpose: str = DEFAULT_PURPOSE,
        config: SyncConfiguration | Mapping[str, Any] | None = None,
    ) -> SyncEngine:
        """Return the engine for ``purpose``, creating it if a config is given."""
        engine = self._engines.get(purpose)
        if engine is not None:
            return engine

        if config is None:
            raise EngineNotInitializedError(
                f"No sync engine for '{purpose}'. Provide a configuration on first call."
            )

        if not isinstance(config, SyncConfiguration):
            config = validate_config(config)

        engine = SyncEngine(
            config,
            settings_store=self.settings_store,
            metadata_store=self.metadata_store,
            identity_provider=self.identity_provider,
            **self._engine_options,
        )
        self._engines[purpose] = engine
        return engine

    def register(self, engine: SyncEngine, purpose: str = DEFAULT_PURPOSE) -> None:
        """Register an externally constructed engine."""
        if purpose in self._engines and self._engines[purpose] is not engine:
            raise ValueError(f"An engine is already registered for '{purpose}'")
        self._engines[purpose] = engine

    async def remove(self, purpose: str = DEFAULT_PURPOSE) -> bool:
        """Stop and forget the engine for ``purpose``. Returns False if absent."""
        engine = self._engines.pop(purpose, None)
        if engine is None:
            return False
        await engine.stop()
        return True

    async def reset(self) -> None:
        """Stop and forget every engine."""
        for purpose in list(self._engines):
            await self.remove(purpose)

    def purposes(self) -> list[str]:
        return list(self._engines)

    def __contains__(self, purpose: object) -> bool:
        return purpose in self._engines
