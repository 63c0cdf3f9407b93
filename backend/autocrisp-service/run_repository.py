"""
AutoCrisp Design Service - Run History

Keeps finished design runs in memory so exports can be fetched after the
request that produced them. Bounded: the oldest runs are evicted first.
"""

from __future__ import annotations

from collections import OrderedDict
from threading import Lock
from typing import List

from models import DesignRun


class RunRepository:
    def save_run(self, run: DesignRun) -> DesignRun:
        raise NotImplementedError

    def get_run(self, run_id: str) -> DesignRun:
        raise NotImplementedError

    def list_run_ids(self) -> List[str]:
        raise NotImplementedError


class InMemoryRunRepository(RunRepository):
    def __init__(self, max_entries: int = 100) -> None:
        self.max_entries = max(1, max_entries)
        self._store: "OrderedDict[str, DesignRun]" = OrderedDict()
        self._lock = Lock()

    def save_run(self, run: DesignRun) -> DesignRun:
        with self._lock:
            self._store[run.run_id] = run
            self._store.move_to_end(run.run_id)
            while len(self._store) > self.max_entries:
                self._store.popitem(last=False)
        return run

    def get_run(self, run_id: str) -> DesignRun:
        with self._lock:
            run = self._store.get(run_id)
        if run is None:
            raise KeyError(f"Design run not found: {run_id}")
        return run

    def list_run_ids(self) -> List[str]:
        with self._lock:
            return list(self._store.keys())
