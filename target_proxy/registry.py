from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

import yaml
from pydantic import ValidationError

from target_proxy.config import TargetConfig
from target_proxy.gateway.errors import TargetNotFoundError
from target_proxy.utils.persistence import YamlFileStore

logger = logging.getLogger("uvicorn.error")

TargetChangeListener = Callable[[str], None]


def load_targets(store: YamlFileStore) -> list[TargetConfig]:
    """Read target records from ``store``, skipping entries that fail validation."""
    try:
        raw = store.load_mapping()
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logger.warning(
            "registry_load_skipped reason=read_error path=%s error=%s",
            store.path,
            exc,
        )
        return []

    entries = raw.get("targets", [])
    if not isinstance(entries, list):
        logger.warning(
            "registry_load_skipped reason=invalid_targets path=%s", store.path
        )
        return []

    targets: list[TargetConfig] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            logger.warning("registry_entry_skipped index=%d reason=not_a_mapping", index)
            continue
        try:
            targets.append(TargetConfig.model_validate(entry))
        except ValidationError as exc:
            logger.warning(
                "registry_entry_skipped index=%d reason=invalid error_count=%d",
                index,
                exc.error_count(),
            )
    return targets


class TargetRegistry:
    """Mutable collection of targets handing out point-in-time copies.

    The lock is held only to search or mutate the list; callers always get
    copies, so later edits never change a target a request already resolved.
    """

    def __init__(
        self,
        targets: list[TargetConfig] | None = None,
        *,
        store: YamlFileStore | None = None,
    ) -> None:
        self._targets: list[TargetConfig] = list(targets or [])
        self._lock = threading.Lock()
        self._store = store
        self._listeners: list[TargetChangeListener] = []

    @classmethod
    def from_path(cls, path: str | Path | None) -> TargetRegistry:
        if path is None:
            return cls()
        store = YamlFileStore(path)
        targets = load_targets(store)
        logger.info("registry_loaded path=%s targets=%d", store.path, len(targets))
        return cls(targets, store=store)

    def add_listener(self, listener: TargetChangeListener) -> None:
        self._listeners.append(listener)

    def resolve(self, target_id: str) -> TargetConfig | None:
        with self._lock:
            for target in self._targets:
                if target.id == target_id:
                    return target.model_copy(deep=True)
        return None

    def list_targets(self) -> list[TargetConfig]:
        with self._lock:
            return [target.model_copy(deep=True) for target in self._targets]

    def add(self, target: TargetConfig) -> TargetConfig:
        stored = target.model_copy(deep=True)
        if not stored.id:
            stored.id = uuid4().hex
        with self._lock:
            self._targets.append(stored)
            self._persist_locked()
        logger.info("registry_target_added target_id=%s", stored.id)
        return stored.model_copy(deep=True)

    def update(self, target: TargetConfig) -> TargetConfig:
        if not target.id:
            raise TargetNotFoundError("Target id is required for an update.")
        stored = target.model_copy(deep=True)
        with self._lock:
            index = self._index_locked(target.id)
            self._targets[index] = stored
            self._persist_locked()
        logger.info("registry_target_updated target_id=%s", target.id)
        self._notify(target.id)
        return stored.model_copy(deep=True)

    def delete(self, target_id: str) -> None:
        with self._lock:
            index = self._index_locked(target_id)
            del self._targets[index]
            self._persist_locked()
        logger.info("registry_target_deleted target_id=%s", target_id)
        self._notify(target_id)

    def _index_locked(self, target_id: str) -> int:
        for index, existing in enumerate(self._targets):
            if existing.id == target_id:
                return index
        raise TargetNotFoundError(f"Unknown target '{target_id}'.")

    def _persist_locked(self) -> None:
        if self._store is None:
            return
        payload: dict[str, Any] = {
            "targets": [target.to_record() for target in self._targets]
        }
        self._store.write_mapping(payload)

    def _notify(self, target_id: str) -> None:
        for listener in self._listeners:
            listener(target_id)
