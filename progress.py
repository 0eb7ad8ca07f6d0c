# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Sync progress state and media library permission gate."""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)


class Authorization(Enum):
    NOT_DETERMINED = "not_determined"
    AUTHORIZED = "authorized"
    DENIED = "denied"


class PermissionGateInterface(ABC):
    """Platform media library authorization."""

    @abstractmethod
    def query_authorization(self) -> Authorization: ...
    @abstractmethod
    def request_authorization(self) -> Authorization: ...


class StoredPermissionGate(PermissionGateInterface):
    """
    Permission gate that asks once and remembers the answer on disk.

    Usage:
        gate = StoredPermissionGate(path, prompt=lambda: True)
        gate.request_authorization()  # prompts only while undetermined
    """

    def __init__(self, path: str | Path, prompt: Callable[[], bool]):
        self.path = Path(path)
        self.prompt = prompt
        self._lock = threading.Lock()

    def query_authorization(self) -> Authorization:
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return Authorization.NOT_DETERMINED
        except ValueError:
            logger.warning("Ignoring unreadable permission file %s", self.path)
            return Authorization.NOT_DETERMINED
        if not isinstance(data, dict):
            logger.warning("Ignoring unreadable permission file %s", self.path)
            return Authorization.NOT_DETERMINED
        try:
            return Authorization(data.get("media_library"))
        except ValueError:
            return Authorization.NOT_DETERMINED

    def request_authorization(self) -> Authorization:
        with self._lock:
            status = self.query_authorization()
            if status is not Authorization.NOT_DETERMINED:
                return status
            status = Authorization.AUTHORIZED if self.prompt() else Authorization.DENIED
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps({"media_library": status.value}))
            logger.info("Media library access %s", status.value)
            return status

    def revoke(self):
        """Forget the stored decision so the next request prompts again."""
        with self._lock:
            self.path.unlink(missing_ok=True)


@dataclass(frozen=True)
class ProgressSnapshot:
    is_syncing: bool = False
    total_to_sync: int = 0
    synced_count: int = 0
    has_media_permission: bool = False

    @property
    def fraction(self) -> float:
        if not self.total_to_sync:
            return 0.0
        return min(1.0, self.synced_count / self.total_to_sync)


Listener = Callable[[ProgressSnapshot], None]


class SyncProgress:
    """
    Observable progress of the current pass.

    Mutated by the reconciler from worker threads; readers get immutable
    snapshots, either by polling snapshot() or through subscribe().
    Listeners run on the mutating thread, outside the internal lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._state = ProgressSnapshot()
        self._listeners: list[Listener] = []

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return self._state

    @property
    def is_syncing(self) -> bool:
        return self.snapshot().is_syncing

    @property
    def has_media_permission(self) -> bool:
        return self.snapshot().has_media_permission

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _update(
        self, change: Callable[[ProgressSnapshot], ProgressSnapshot]
    ) -> ProgressSnapshot:
        with self._lock:
            self._state = state = change(self._state)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(state)
            except Exception:
                logger.exception("Progress listener failed")
        return state

    def start_pass(self) -> None:
        self._update(
            lambda s: replace(s, is_syncing=True, total_to_sync=0, synced_count=0)
        )

    def begin(self, total: int) -> None:
        self._update(lambda s: replace(s, total_to_sync=total, synced_count=0))

    def increment(self) -> None:
        self._update(lambda s: replace(s, synced_count=s.synced_count + 1))

    def finish_pass(self) -> None:
        self._update(
            lambda s: replace(s, is_syncing=False, total_to_sync=0, synced_count=0)
        )

    def set_media_permission(self, granted: bool) -> None:
        self._update(lambda s: replace(s, has_media_permission=granted))
