# ABOUTME: Copy-on-write store of per-application SyncState snapshots
# ABOUTME: Publishes whole immutable states and optionally mirrors them to a JSON file

"""
State store.

Readers (the MCP status tools) and writers (reconciliation workers) share
one mapping of application name to SyncState. Writers never mutate a state:
they publish a new one, and ``publish`` replaces the whole mapping in one
assignment. A reader that grabbed ``all()`` keeps a consistent view even if
workers publish while it iterates.

When a snapshot path is configured the mapping is written after every
publish (temp file, then atomic rename) and read back at startup, so status
survives a restart. The snapshot is a status cache only: the loop never
skips work because of it.
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType

import structlog
from pydantic import TypeAdapter, ValidationError

from gitops_reconciler.models import SyncState

logger = structlog.get_logger(__name__)

_SNAPSHOT = TypeAdapter(dict[str, SyncState])


class StateStore:
    def __init__(self, snapshot_path: Path | None = None) -> None:
        self._snapshot_path = snapshot_path
        self._states: Mapping[str, SyncState] = MappingProxyType({})

    def get(self, application: str) -> SyncState | None:
        return self._states.get(application)

    def all(self) -> Mapping[str, SyncState]:
        """Immutable view of every published state at this instant."""
        return self._states

    def names(self) -> list[str]:
        return sorted(self._states)

    def publish(self, state: SyncState) -> SyncState:
        updated = dict(self._states)
        updated[state.application] = state
        self._states = MappingProxyType(updated)
        self._persist()
        return state

    def remove(self, application: str) -> SyncState | None:
        if application not in self._states:
            return None
        updated = dict(self._states)
        removed = updated.pop(application)
        self._states = MappingProxyType(updated)
        self._persist()
        return removed

    def load(self) -> int:
        """
        Restore states from the snapshot file.

        A missing file is an empty store; an unreadable one is logged and
        ignored. Returns the number of states restored.
        """
        if self._snapshot_path is None or not self._snapshot_path.exists():
            return 0
        try:
            states = _SNAPSHOT.validate_json(self._snapshot_path.read_bytes())
        except (OSError, ValidationError) as e:
            logger.warning("Ignoring unreadable state snapshot", path=str(self._snapshot_path), error=str(e))
            return 0
        self._states = MappingProxyType(states)
        logger.info("Restored state snapshot", path=str(self._snapshot_path), applications=len(states))
        return len(states)

    def _persist(self) -> None:
        if self._snapshot_path is None:
            return
        path = self._snapshot_path
        payload = _SNAPSHOT.dump_json(dict(self._states), indent=2)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
            os.replace(tmp, path)
        except OSError as e:
            logger.warning("Could not write state snapshot", path=str(path), error=str(e))
