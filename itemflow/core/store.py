"""Aggregate persistence collaborators.

The engine only ever reads and writes whole flow aggregates (graph + items).
Every write is a compare-and-swap on the aggregate ``version``: a writer that
read version N can only store version N+1.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Protocol

from filelock import FileLock
from filelock import Timeout as FileLockTimeout
from pydantic import ValidationError

from itemflow.core.config import EngineConfig
from itemflow.core.errors import (
    ConcurrentModificationError,
    FlowNotFoundError,
    PersistenceError,
)
from itemflow.core.models import FlowAggregate

logger = logging.getLogger(__name__)

# Flow ids become file names; prevents path traversal like "../../etc/passwd"
_VALID_FLOW_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class AggregateStore(Protocol):
    """Persistence collaborator."""

    def get_aggregate(self, flow_id: str) -> FlowAggregate: ...

    def put_aggregate(
        self, flow_id: str, aggregate: FlowAggregate, expected_version: int | None = None
    ) -> int: ...


class InMemoryAggregateStore:
    """Thread-safe store keeping serialized snapshots in a dict.

    Snapshots are stored as JSON so callers never share mutable state with
    the store.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshots: dict[str, str] = {}

    def get_aggregate(self, flow_id: str) -> FlowAggregate:
        with self._lock:
            raw = self._snapshots.get(flow_id)
        if raw is None:
            raise FlowNotFoundError(flow_id)
        return FlowAggregate.model_validate_json(raw)

    def put_aggregate(
        self, flow_id: str, aggregate: FlowAggregate, expected_version: int | None = None
    ) -> int:
        with self._lock:
            current = self._current_version(flow_id)
            if expected_version is not None and expected_version != current:
                raise ConcurrentModificationError(flow_id, expected_version, current)
            stored = aggregate.model_copy(update={"version": current + 1})
            self._snapshots[flow_id] = stored.model_dump_json(by_alias=True)
            return stored.version

    def _current_version(self, flow_id: str) -> int:
        raw = self._snapshots.get(flow_id)
        if raw is None:
            return 0
        return FlowAggregate.model_validate_json(raw).version


class JsonFileAggregateStore:
    """One JSON file per flow under ``root``, guarded by a file lock.

    Writes go to a temporary file that replaces the target atomically, so
    readers never see a half-written aggregate.
    """

    def __init__(self, root: Path | str, lock_timeout: float = 30):
        self.root = Path(root)
        self.lock_timeout = lock_timeout

    @classmethod
    def from_config(cls, config: EngineConfig) -> JsonFileAggregateStore:
        return cls(config.store_dir, lock_timeout=config.lock_timeout)

    def _path(self, flow_id: str) -> Path:
        if not _VALID_FLOW_ID.match(flow_id):
            raise PersistenceError(f"Invalid flow id: '{flow_id}'")
        return self.root / f"{flow_id}.json"

    def _lock(self, path: Path) -> FileLock:
        return FileLock(str(path) + ".lock", timeout=self.lock_timeout)

    def _read(self, flow_id: str, path: Path) -> FlowAggregate | None:
        if not path.exists():
            return None
        try:
            return FlowAggregate.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as e:
            raise PersistenceError(f"Corrupt aggregate for flow '{flow_id}': {e}") from e

    def get_aggregate(self, flow_id: str) -> FlowAggregate:
        path = self._path(flow_id)
        if not self.root.is_dir():
            raise FlowNotFoundError(flow_id)
        try:
            with self._lock(path):
                aggregate = self._read(flow_id, path)
        except FileLockTimeout as e:
            raise PersistenceError(f"Timed out locking flow '{flow_id}'") from e
        except OSError as e:
            raise PersistenceError(f"Failed to read flow '{flow_id}': {e}") from e
        if aggregate is None:
            raise FlowNotFoundError(flow_id)
        return aggregate

    def put_aggregate(
        self, flow_id: str, aggregate: FlowAggregate, expected_version: int | None = None
    ) -> int:
        path = self._path(flow_id)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            with self._lock(path):
                existing = self._read(flow_id, path)
                current = existing.version if existing is not None else 0
                if expected_version is not None and expected_version != current:
                    raise ConcurrentModificationError(flow_id, expected_version, current)

                stored = aggregate.model_copy(update={"version": current + 1})
                fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=f".{flow_id}.", suffix=".tmp")
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as f:
                        f.write(stored.model_dump_json(by_alias=True, indent=2))
                    os.replace(tmp_name, path)
                except BaseException:
                    Path(tmp_name).unlink(missing_ok=True)
                    raise
        except FileLockTimeout as e:
            raise PersistenceError(f"Timed out locking flow '{flow_id}'") from e
        except OSError as e:
            raise PersistenceError(f"Failed to write flow '{flow_id}': {e}") from e

        logger.debug(f"Stored flow {flow_id} at version {stored.version}")
        return stored.version
