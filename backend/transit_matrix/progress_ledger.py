from __future__ import annotations

from datetime import UTC, datetime

from .models import ProgressEntry, TimePeriod, TransportMode
from .record_store import RecordStore

KEY_PREFIX = "progress_"
LAST_RUN_KEY = "last_route_calculation"


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")


def ledger_key(group_key: str, period: TimePeriod, mode: TransportMode) -> str:
    return f"{KEY_PREFIX}{group_key}_{period.value}_{mode.value}"


class ProgressLedger:
    """Per (group, period, mode) completion counters, persisted in the store's metadata table.

    Advisory only: resume decisions are confirmed against record statuses.
    """

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    def get(
        self,
        group_key: str,
        period: TimePeriod,
        mode: TransportMode = TransportMode.WALK,
    ) -> ProgressEntry | None:
        raw = self._store.get_metadata(ledger_key(group_key, period, mode))
        if not isinstance(raw, dict):
            return None
        return ProgressEntry(group_key=group_key, period=period, mode=mode, **_counters(raw))

    def put(self, entry: ProgressEntry) -> ProgressEntry:
        previous = self.get(entry.group_key, entry.period, entry.mode)
        completed = entry.completed
        if previous is not None:
            completed = max(completed, previous.completed)
        stored = entry.model_copy(
            update={
                "completed": completed,
                "total": max(entry.total, completed),
                "last_update": entry.last_update or _utc_now_iso(),
            }
        )
        self._store.put_metadata(
            ledger_key(stored.group_key, stored.period, stored.mode),
            {
                "completed": stored.completed,
                "total": stored.total,
                "lastUpdate": stored.last_update,
            },
        )
        return stored

    def clear(self) -> int:
        return self._store.delete_metadata(KEY_PREFIX)

    def record_run(self, payload: dict) -> None:
        self._store.put_metadata(LAST_RUN_KEY, {"timestamp": _utc_now_iso(), **payload})

    def last_run(self) -> dict | None:
        raw = self._store.get_metadata(LAST_RUN_KEY)
        return raw if isinstance(raw, dict) else None


def _counters(raw: dict) -> dict:
    return {
        "completed": max(0, int(raw.get("completed", 0) or 0)),
        "total": max(0, int(raw.get("total", 0) or 0)),
        "last_update": raw.get("lastUpdate"),
    }
