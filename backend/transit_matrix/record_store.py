"""SQLite-backed record store for zones, route records and derived read-models.

One row per (from_id, to_id, period, mode). Outcome columns are only ever
written together with a finished status; the only way back to PENDING is
:meth:`RecordStore.reset_to_pending`, which clears every outcome column.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any

from .models import (
    Leg,
    Partition,
    PartitionKind,
    ReachabilityScore,
    RoutePair,
    RouteRecord,
    RouteStatus,
    StatusCounts,
    TimePeriod,
    TransportMode,
    Zone,
)

# Stored in max_seconds for the open-ended last partition.
OPEN_BOUND_SENTINEL = -1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS zones (
    id TEXT PRIMARY KEY,
    group_key TEXT NOT NULL,
    lat REAL NOT NULL,
    lon REAL NOT NULL,
    routing_lat REAL,
    routing_lon REAL,
    name TEXT
);
CREATE INDEX IF NOT EXISTS idx_zones_group ON zones(group_key);

CREATE TABLE IF NOT EXISTS routes (
    from_id TEXT NOT NULL,
    to_id TEXT NOT NULL,
    period TEXT NOT NULL,
    mode TEXT NOT NULL DEFAULT 'WALK',
    status TEXT NOT NULL DEFAULT 'PENDING',
    duration INTEGER,
    transfers INTEGER,
    walk_distance REAL,
    legs TEXT,
    PRIMARY KEY (from_id, to_id, period, mode),
    CHECK (from_id <> to_id)
);
CREATE INDEX IF NOT EXISTS idx_routes_period_status ON routes(period, mode, status);

CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS partitions (
    kind TEXT NOT NULL,
    period TEXT NOT NULL,
    ordinal INTEGER NOT NULL,
    min_seconds INTEGER NOT NULL,
    max_seconds INTEGER NOT NULL,
    color TEXT NOT NULL,
    label TEXT NOT NULL,
    PRIMARY KEY (kind, period, ordinal)
);

CREATE TABLE IF NOT EXISTS reachability (
    period TEXT NOT NULL,
    mode TEXT NOT NULL,
    zone_id TEXT NOT NULL,
    score REAL NOT NULL,
    rank INTEGER NOT NULL,
    within15 INTEGER NOT NULL,
    within30 INTEGER NOT NULL,
    within45 INTEGER NOT NULL,
    median_duration REAL NOT NULL,
    mean_duration REAL NOT NULL,
    reachable_count INTEGER NOT NULL,
    PRIMARY KEY (period, mode, zone_id)
);
"""


@dataclass(frozen=True)
class RouteFilter:
    """Selects route rows. Unset fields do not constrain the query."""

    from_ids: Sequence[str] | None = None
    to_ids: Sequence[str] | None = None
    period: TimePeriod | None = None
    mode: TransportMode | None = None
    statuses: Sequence[RouteStatus] | None = None

    def where(self) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        # json_each keeps arbitrarily large id sets out of the placeholder limit.
        if self.from_ids is not None:
            clauses.append("from_id IN (SELECT value FROM json_each(?))")
            params.append(json.dumps(list(self.from_ids)))
        if self.to_ids is not None:
            clauses.append("to_id IN (SELECT value FROM json_each(?))")
            params.append(json.dumps(list(self.to_ids)))
        if self.period is not None:
            clauses.append("period = ?")
            params.append(TimePeriod(self.period).value)
        if self.mode is not None:
            clauses.append("mode = ?")
            params.append(TransportMode(self.mode).value)
        if self.statuses is not None:
            clauses.append("status IN (SELECT value FROM json_each(?))")
            params.append(json.dumps([RouteStatus(s).value for s in self.statuses]))
        sql = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        return sql, params

    @classmethod
    def within_group(
        cls,
        zone_ids: Sequence[str],
        *,
        period: TimePeriod | None = None,
        mode: TransportMode | None = None,
        statuses: Sequence[RouteStatus] | None = None,
    ) -> RouteFilter:
        ids = list(zone_ids)
        return cls(from_ids=ids, to_ids=ids, period=period, mode=mode, statuses=statuses)


def _row_to_record(row: sqlite3.Row) -> RouteRecord:
    status = RouteStatus(row["status"])
    legs: list[Leg] | None = None
    detail: str | None = None
    if status is RouteStatus.OK:
        raw = json.loads(row["legs"]) if row["legs"] else []
        legs = [Leg.model_validate(item) for item in raw]
    elif status in (RouteStatus.ERROR, RouteStatus.NO_ROUTE):
        detail = row["legs"]
    return RouteRecord(
        from_id=row["from_id"],
        to_id=row["to_id"],
        period=TimePeriod(row["period"]),
        mode=TransportMode(row["mode"]),
        status=status,
        duration=row["duration"],
        transfers=row["transfers"],
        walk_distance=row["walk_distance"],
        legs=legs,
        detail=detail,
    )


class RecordStore:
    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._conn = sqlite3.connect(self.path, timeout=10, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if self.path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> RecordStore:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.close()

    # zones

    def upsert_zones(self, zones: Iterable[Zone]) -> int:
        rows = [
            (z.id, z.group_key, z.lat, z.lon, z.routing_lat, z.routing_lon, z.name)
            for z in zones
        ]
        with self._lock, self._conn:
            self._conn.executemany(
                """
                INSERT INTO zones (id, group_key, lat, lon, routing_lat, routing_lon, name)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    group_key = excluded.group_key,
                    lat = excluded.lat,
                    lon = excluded.lon,
                    routing_lat = excluded.routing_lat,
                    routing_lon = excluded.routing_lon,
                    name = excluded.name
                """,
                rows,
            )
        return len(rows)

    def list_zones(self, group_key: str | None = None) -> list[Zone]:
        sql = "SELECT * FROM zones"
        params: list[Any] = []
        if group_key is not None:
            sql += " WHERE group_key = ?"
            params.append(group_key)
        sql += " ORDER BY group_key, id"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [Zone.model_validate(dict(row)) for row in rows]

    def zones_by_group(self) -> dict[str, list[Zone]]:
        grouped: dict[str, list[Zone]] = {}
        for zone in self.list_zones():
            grouped.setdefault(zone.group_key, []).append(zone)
        return grouped

    def zone_count(self) -> int:
        with self._lock:
            return int(self._conn.execute("SELECT COUNT(*) FROM zones").fetchone()[0])

    def delete_zones(self) -> int:
        with self._lock, self._conn:
            return self._conn.execute("DELETE FROM zones").rowcount

    # routes

    def insert_pending(self, pairs: Iterable[RoutePair]) -> int:
        """Create PENDING rows for pairs that do not exist yet. Returns rows created."""
        rows = [(p.from_id, p.to_id, p.period.value, p.mode.value) for p in pairs]
        with self._lock, self._conn:
            before = self._conn.total_changes
            self._conn.executemany(
                "INSERT OR IGNORE INTO routes (from_id, to_id, period, mode) VALUES (?, ?, ?, ?)",
                rows,
            )
            return self._conn.total_changes - before

    def select_pairs(self, route_filter: RouteFilter) -> list[RoutePair]:
        where, params = route_filter.where()
        sql = f"SELECT from_id, to_id, period, mode FROM routes{where} ORDER BY from_id, to_id"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [
            RoutePair(row["from_id"], row["to_id"], TimePeriod(row["period"]), TransportMode(row["mode"]))
            for row in rows
        ]

    def bulk_read_pending(self, route_filter: RouteFilter | None = None) -> list[RoutePair]:
        base = route_filter or RouteFilter()
        return self.select_pairs(
            RouteFilter(
                from_ids=base.from_ids,
                to_ids=base.to_ids,
                period=base.period,
                mode=base.mode,
                statuses=(RouteStatus.PENDING,),
            )
        )

    def upsert(self, record: RouteRecord) -> None:
        """Write one finished outcome. PENDING is never written through here."""
        if record.status is RouteStatus.PENDING:
            raise ValueError("upsert only accepts finished records; use reset_to_pending instead")
        if record.status is RouteStatus.OK:
            legs_value: str | None = json.dumps([leg.model_dump(exclude_none=True) for leg in record.legs or []])
        else:
            legs_value = record.detail
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO routes (from_id, to_id, period, mode, status, duration, transfers, walk_distance, legs)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(from_id, to_id, period, mode) DO UPDATE SET
                    status = excluded.status,
                    duration = excluded.duration,
                    transfers = excluded.transfers,
                    walk_distance = excluded.walk_distance,
                    legs = excluded.legs
                """,
                (
                    record.from_id,
                    record.to_id,
                    record.period.value,
                    record.mode.value,
                    record.status.value,
                    record.duration,
                    record.transfers,
                    record.walk_distance,
                    legs_value,
                ),
            )

    def get_record(self, pair: RoutePair) -> RouteRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM routes WHERE from_id = ? AND to_id = ? AND period = ? AND mode = ?",
                (pair.from_id, pair.to_id, pair.period.value, pair.mode.value),
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def read_records(self, route_filter: RouteFilter | None = None) -> list[RouteRecord]:
        where, params = (route_filter or RouteFilter()).where()
        with self._lock:
            rows = self._conn.execute(f"SELECT * FROM routes{where} ORDER BY from_id, to_id", params).fetchall()
        return [_row_to_record(row) for row in rows]

    def count_by_status(self, route_filter: RouteFilter | None = None) -> StatusCounts:
        where, params = (route_filter or RouteFilter()).where()
        with self._lock:
            rows = self._conn.execute(
                f"SELECT status, COUNT(*) AS n FROM routes{where} GROUP BY status",
                params,
            ).fetchall()
        by_status = {row["status"]: int(row["n"]) for row in rows}
        return StatusCounts(
            total=sum(by_status.values()),
            pending=by_status.get(RouteStatus.PENDING.value, 0),
            ok=by_status.get(RouteStatus.OK.value, 0),
            no_route=by_status.get(RouteStatus.NO_ROUTE.value, 0),
            error=by_status.get(RouteStatus.ERROR.value, 0),
        )

    def ok_durations(self, period: TimePeriod | None = None, mode: TransportMode | None = None) -> list[int]:
        where, params = RouteFilter(period=period, mode=mode, statuses=(RouteStatus.OK,)).where()
        with self._lock:
            rows = self._conn.execute(
                f"SELECT duration FROM routes{where} AND duration IS NOT NULL ORDER BY duration ASC",
                params,
            ).fetchall()
        return [int(row[0]) for row in rows]

    def routes_by_origin(self, period: TimePeriod, mode: TransportMode) -> dict[str, list[RouteRecord]]:
        grouped: dict[str, list[RouteRecord]] = {}
        for record in self.read_records(RouteFilter(period=period, mode=mode)):
            grouped.setdefault(record.from_id, []).append(record)
        return grouped

    def reset_to_pending(self, route_filter: RouteFilter | None = None) -> int:
        """Bulk administrative reset; clears all outcome columns with the status."""
        where, params = (route_filter or RouteFilter()).where()
        where = f"{where} AND status != 'PENDING'" if where else " WHERE status != 'PENDING'"
        with self._lock, self._conn:
            return self._conn.execute(
                f"""
                UPDATE routes
                SET status = 'PENDING', duration = NULL, transfers = NULL, walk_distance = NULL, legs = NULL
                {where}
                """,
                params,
            ).rowcount

    def reset_pairs(self, pairs: Iterable[RoutePair]) -> int:
        rows = [(p.from_id, p.to_id, p.period.value, p.mode.value) for p in pairs]
        with self._lock, self._conn:
            before = self._conn.total_changes
            self._conn.executemany(
                """
                UPDATE routes
                SET status = 'PENDING', duration = NULL, transfers = NULL, walk_distance = NULL, legs = NULL
                WHERE from_id = ? AND to_id = ? AND period = ? AND mode = ? AND status != 'PENDING'
                """,
                rows,
            )
            return self._conn.total_changes - before

    def delete_routes(self) -> int:
        with self._lock, self._conn:
            return self._conn.execute("DELETE FROM routes").rowcount

    # metadata

    def get_metadata(self, key: str) -> Any | None:
        with self._lock:
            row = self._conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
        return json.loads(row["value"]) if row is not None else None

    def put_metadata(self, key: str, value: Any) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
                (key, json.dumps(value)),
            )

    def delete_metadata(self, prefix: str | None = None) -> int:
        with self._lock, self._conn:
            if prefix is None:
                return self._conn.execute("DELETE FROM metadata").rowcount
            return self._conn.execute(
                "DELETE FROM metadata WHERE substr(key, 1, ?) = ?",
                (len(prefix), prefix),
            ).rowcount

    # partitions

    def count_partitions(self, kind: PartitionKind, period_key: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM partitions WHERE kind = ? AND period = ?",
                (kind, period_key),
            ).fetchone()
        return int(row[0])

    def replace_partitions(self, kind: PartitionKind, period_key: str, partitions: Sequence[Partition]) -> None:
        rows = [
            (
                kind,
                period_key,
                p.ordinal,
                p.min_seconds,
                OPEN_BOUND_SENTINEL if p.max_seconds is None else p.max_seconds,
                p.color,
                p.label,
            )
            for p in partitions
        ]
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM partitions WHERE kind = ? AND period = ?", (kind, period_key))
            self._conn.executemany(
                """
                INSERT INTO partitions (kind, period, ordinal, min_seconds, max_seconds, color, label)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )

    def load_partitions(self, kind: PartitionKind, period_key: str) -> list[Partition]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM partitions WHERE kind = ? AND period = ? ORDER BY ordinal",
                (kind, period_key),
            ).fetchall()
        return [
            Partition(
                ordinal=row["ordinal"],
                min_seconds=row["min_seconds"],
                max_seconds=None if row["max_seconds"] == OPEN_BOUND_SENTINEL else row["max_seconds"],
                color=row["color"],
                label=row["label"],
            )
            for row in rows
        ]

    def delete_partitions(self, kind: PartitionKind | None = None) -> int:
        with self._lock, self._conn:
            if kind is None:
                return self._conn.execute("DELETE FROM partitions").rowcount
            return self._conn.execute("DELETE FROM partitions WHERE kind = ?", (kind,)).rowcount

    # reachability

    def count_reachability(self, period: TimePeriod, mode: TransportMode) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM reachability WHERE period = ? AND mode = ?",
                (period.value, mode.value),
            ).fetchone()
        return int(row[0])

    def replace_reachability(
        self,
        period: TimePeriod,
        mode: TransportMode,
        scores: Iterable[ReachabilityScore],
    ) -> None:
        rows = [
            (
                period.value,
                mode.value,
                s.zone_id,
                s.score,
                s.rank,
                s.within15,
                s.within30,
                s.within45,
                s.median_duration,
                s.mean_duration,
                s.reachable_count,
            )
            for s in scores
        ]
        with self._lock, self._conn:
            self._conn.execute(
                "DELETE FROM reachability WHERE period = ? AND mode = ?",
                (period.value, mode.value),
            )
            self._conn.executemany(
                """
                INSERT INTO reachability (
                    period, mode, zone_id, score, rank, within15, within30, within45,
                    median_duration, mean_duration, reachable_count
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )

    def load_reachability(self, period: TimePeriod, mode: TransportMode) -> list[ReachabilityScore]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM reachability WHERE period = ? AND mode = ? ORDER BY rank",
                (period.value, mode.value),
            ).fetchall()
        return [
            ReachabilityScore(
                zone_id=row["zone_id"],
                score=row["score"],
                rank=row["rank"],
                within15=row["within15"],
                within30=row["within30"],
                within45=row["within45"],
                median_duration=row["median_duration"],
                mean_duration=row["mean_duration"],
                reachable_count=row["reachable_count"],
            )
            for row in rows
        ]

    def delete_reachability(self) -> int:
        with self._lock, self._conn:
            return self._conn.execute("DELETE FROM reachability").rowcount

    # maintenance

    def table_counts(self) -> dict[str, int]:
        with self._lock:
            return {
                table: int(self._conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
                for table in ("zones", "routes", "metadata", "partitions", "reachability")
            }

    def vacuum(self) -> None:
        if self.path == ":memory:":
            return
        with self._lock:
            self._conn.execute("VACUUM")
