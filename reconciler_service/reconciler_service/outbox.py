"""Durable intent log for sagas.

Each write appends a full snapshot of the saga as one JSON line. Loading
keeps the last snapshot per saga id, so a crash between two writes loses at
most the transition that was in flight.
"""

import threading
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .logger import logger
from .saga import SagaRecord


class Outbox:
    """Append-only JSON-lines store of saga snapshots."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()

    def record(self, saga: SagaRecord) -> None:
        """Append the current state of a saga."""
        line = saga.model_dump_json()
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
                fh.flush()

    def load(self) -> dict[str, SagaRecord]:
        """Return the latest snapshot of every saga in the log."""
        sagas: dict[str, SagaRecord] = {}
        if not self.path.exists():
            return sagas
        with self._lock, self.path.open("r", encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    saga = SagaRecord.model_validate_json(line)
                except ValidationError as exc:
                    # A torn final line is expected after a crash mid-write.
                    logger.warning(f"Skipping unreadable outbox line | path={self.path} | line={lineno} | error={exc}")
                    continue
                sagas[saga.saga_id] = saga
        return sagas

    def get(self, saga_id: str) -> Optional[SagaRecord]:
        return self.load().get(saga_id)

    def claim(self, saga_id: str) -> bool:
        """Mark a saga as being driven by this process.

        Returns:
            bool: False if another thread already holds the saga.
        """
        with self._lock:
            if saga_id in self._in_flight:
                return False
            self._in_flight.add(saga_id)
            return True

    def release(self, saga_id: str) -> None:
        with self._lock:
            self._in_flight.discard(saga_id)

    def pending(self) -> list[SagaRecord]:
        """Sagas that were interrupted, await retry, or are mid-compensation.

        Sagas currently driven by a thread of this process are left out.
        """
        sagas = self.load()
        with self._lock:
            in_flight = set(self._in_flight)
        return sorted(
            (saga for saga in sagas.values() if not saga.finished and saga.saga_id not in in_flight),
            key=lambda saga: saga.created_at,
        )

    def compact(self) -> int:
        """Rewrite the log keeping only unfinished sagas.

        Returns:
            int: Number of finished sagas dropped.
        """
        sagas = self.load()
        keep = [saga for saga in sagas.values() if not saga.finished]
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with self._lock:
            with tmp_path.open("w", encoding="utf-8") as fh:
                for saga in keep:
                    fh.write(saga.model_dump_json() + "\n")
            tmp_path.replace(self.path)
        dropped = len(sagas) - len(keep)
        logger.info(f"Outbox compacted | path={self.path} | kept={len(keep)} | dropped={dropped}")
        return dropped
