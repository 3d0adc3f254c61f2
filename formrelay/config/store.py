"""
Integration Config Store for FormRelay.

In-memory store of IntegrationConfig records keyed by config id.

Records are owned by the form builder backend; this store holds the
working copy used for dispatch. Health-counter updates for one config
are serialised with a per-config asyncio.Lock; updates to different
configs never contend.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

from .schemas import IntegrationConfig

logger = logging.getLogger(__name__)


class IntegrationConfigStore:
    """
    Store for per-form integration subscriptions.

    Records are replaced, never mutated in place, so readers always see
    a consistent snapshot of a config.
    """

    def __init__(self, configs: list[IntegrationConfig] | None = None):
        self._configs: dict[str, IntegrationConfig] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        for config in configs or ():
            self.put(config)

    # ==================== Records ====================

    def put(self, config: IntegrationConfig) -> None:
        """Insert or replace a config."""
        self._configs[config.id] = config

    def remove(self, config_id: str) -> bool:
        """Remove a config. Returns False if it did not exist."""
        self._locks.pop(config_id, None)
        return self._configs.pop(config_id, None) is not None

    def get(self, config_id: str) -> IntegrationConfig | None:
        return self._configs.get(config_id)

    def for_form(self, form_id: str) -> list[IntegrationConfig]:
        """All configs for a form, enabled or not, in insertion order."""
        return [c for c in self._configs.values() if c.form_id == form_id]

    def __iter__(self) -> Iterator[IntegrationConfig]:
        return iter(list(self._configs.values()))

    def __len__(self) -> int:
        return len(self._configs)

    def __contains__(self, config_id: object) -> bool:
        return config_id in self._configs

    # ==================== Health counters ====================

    def lock_for(self, config_id: str) -> asyncio.Lock:
        """Get the lock guarding a config's health counters."""
        lock = self._locks.get(config_id)
        if lock is None:
            lock = self._locks[config_id] = asyncio.Lock()
        return lock

    async def record_success(self, config_id: str, at: datetime | None = None) -> IntegrationConfig | None:
        """Reset the error count and stamp the last delivery time."""
        async with self.lock_for(config_id):
            current = self._configs.get(config_id)
            if current is None:
                return None
            updated = current.model_copy(
                update={
                    "last_delivery_at": at or datetime.now(UTC),
                    "consecutive_error_count": 0,
                    "last_error": None,
                }
            )
            self._configs[config_id] = updated
            return updated

    async def record_failure(self, config_id: str, error: str) -> IntegrationConfig | None:
        """Increment the consecutive error count and keep the error text."""
        async with self.lock_for(config_id):
            current = self._configs.get(config_id)
            if current is None:
                return None
            updated = current.model_copy(
                update={
                    "consecutive_error_count": current.consecutive_error_count + 1,
                    "last_error": error,
                }
            )
            self._configs[config_id] = updated
            return updated

    # ==================== Loading ====================

    @classmethod
    def from_file(cls, path: str | Path) -> IntegrationConfigStore:
        """
        Load configs from a JSON file holding a list of config objects.

        Raises:
            FileNotFoundError: If the file does not exist
            pydantic.ValidationError: If a record is invalid
        """
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        configs = [IntegrationConfig.model_validate(item) for item in raw]
        logger.info(f"Loaded {len(configs)} integration config(s) from {path}")
        return cls(configs)
