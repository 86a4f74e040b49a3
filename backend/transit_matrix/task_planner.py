from __future__ import annotations

import random
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field

from .logging_utils import log_event
from .models import ALL_PERIODS, RoutePair, RouteStatus, StatusCounts, TimePeriod, TransportMode, Zone
from .progress_ledger import ProgressLedger
from .record_store import RecordStore, RouteFilter


@dataclass
class WorkGroup:
    group_key: str
    period: TimePeriod
    mode: TransportMode
    zones: list[Zone]
    counts: StatusCounts = field(default_factory=StatusCounts)

    @property
    def zone_ids(self) -> list[str]:
        return [z.id for z in self.zones]


def generate_route_pairs(
    zone_ids: Sequence[str],
    periods: Iterable[TimePeriod] = ALL_PERIODS,
    modes: Iterable[TransportMode] = (TransportMode.WALK,),
) -> Iterator[RoutePair]:
    """Every ordered pair of distinct zones, for each period and mode: K*(K-1) per period/mode."""
    ids = list(dict.fromkeys(zone_ids))
    for mode in modes:
        for period in periods:
            for from_id in ids:
                for to_id in ids:
                    if from_id != to_id:
                        yield RoutePair(from_id, to_id, period, mode)


def seed_route_pairs(
    store: RecordStore,
    periods: Iterable[TimePeriod] = ALL_PERIODS,
    modes: Iterable[TransportMode] = (TransportMode.WALK,),
) -> int:
    zone_ids = [z.id for z in store.list_zones()]
    created = store.insert_pending(generate_route_pairs(zone_ids, tuple(periods), tuple(modes)))
    log_event("routes_seeded", zone_count=len(zone_ids), routes_created=created)
    return created


def plan_work_groups(
    store: RecordStore,
    *,
    periods: Sequence[TimePeriod] = ALL_PERIODS,
    mode: TransportMode = TransportMode.WALK,
    resume: bool = False,
    ledger: ProgressLedger | None = None,
) -> list[WorkGroup]:
    """Ordered (group, period) work list.

    Only pairs whose endpoints share a group are covered; pairs spanning two
    groups are never scheduled from here. In resume mode a group/period is
    skipped when the store shows nothing PENDING for it, whatever the ledger says.
    """
    grouped = store.zones_by_group()
    ordered_periods = [p for p in ALL_PERIODS if p in set(periods)]
    groups: list[WorkGroup] = []
    for group_key in sorted(grouped):
        zones = grouped[group_key]
        for period in ordered_periods:
            group = WorkGroup(group_key=group_key, period=period, mode=mode, zones=zones)
            if resume:
                group.counts = store.count_by_status(
                    RouteFilter.within_group(group.zone_ids, period=period, mode=mode)
                )
                recorded = ledger.get(group_key, period, mode) if ledger is not None else None
                if group.counts.completed >= group.counts.total:
                    log_event(
                        "work_group_skipped",
                        group=group_key,
                        period=period.value,
                        completed=group.counts.completed,
                        total=group.counts.total,
                        ledger_completed=recorded.completed if recorded else None,
                    )
                    continue
            groups.append(group)
    return groups


def pending_pairs(
    store: RecordStore,
    group: WorkGroup,
    *,
    statuses: Sequence[RouteStatus] = (RouteStatus.PENDING,),
) -> list[RoutePair]:
    return store.select_pairs(
        RouteFilter.within_group(group.zone_ids, period=group.period, mode=group.mode, statuses=statuses)
    )


def select_origins(zone_ids: Sequence[str], count: int, rng: random.Random) -> set[str]:
    """Random subset of origin zones for smoke runs."""
    pool = sorted(set(zone_ids))
    return set(rng.sample(pool, min(count, len(pool))))


def cap_tasks(tasks: list[RoutePair], limit: int | None, rng: random.Random) -> list[RoutePair]:
    if limit is None or len(tasks) <= limit:
        return tasks
    return rng.sample(tasks, max(0, limit))
