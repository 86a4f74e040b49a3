from __future__ import annotations

import random

from transit_matrix.models import (
    ProgressEntry,
    RoutePair,
    RouteRecord,
    RouteStatus,
    TimePeriod,
    TransportMode,
    Zone,
)
from transit_matrix.progress_ledger import LAST_RUN_KEY, ProgressLedger, ledger_key
from transit_matrix.record_store import RecordStore
from transit_matrix.task_planner import (
    cap_tasks,
    generate_route_pairs,
    pending_pairs,
    plan_work_groups,
    seed_route_pairs,
    select_origins,
)


def _zone(zone_id: str, group: str) -> Zone:
    return Zone(id=zone_id, group_key=group, lat=60.0 + int(zone_id[-2:]) / 1000, lon=24.9)


def _no_route(pair: RoutePair) -> RouteRecord:
    return RouteRecord(
        from_id=pair.from_id,
        to_id=pair.to_id,
        period=pair.period,
        mode=pair.mode,
        status=RouteStatus.NO_ROUTE,
    )


def test_generate_route_pairs_has_no_self_pairs() -> None:
    ids = [f"z{i:02d}" for i in range(7)]
    pairs = list(generate_route_pairs(ids, periods=(TimePeriod.MORNING,)))

    assert len(pairs) == 7 * 6
    assert all(p.from_id != p.to_id for p in pairs)
    assert len(set(pairs)) == len(pairs)


def test_generate_route_pairs_covers_each_period_and_mode() -> None:
    pairs = list(
        generate_route_pairs(
            ["a", "b", "c"],
            periods=(TimePeriod.MORNING, TimePeriod.MIDNIGHT),
            modes=(TransportMode.WALK, TransportMode.BICYCLE),
        )
    )
    assert len(pairs) == 3 * 2 * 2 * 2


def test_seed_route_pairs_creates_k_times_k_minus_one_rows_per_period() -> None:
    with RecordStore(":memory:") as store:
        store.upsert_zones([_zone("z01", "a"), _zone("z02", "a"), _zone("z03", "b")])
        created = seed_route_pairs(store)

        assert created == 3 * 2 * 3
        assert seed_route_pairs(store) == 0


def test_non_resume_plan_is_ordered_by_group_then_canonical_period() -> None:
    with RecordStore(":memory:") as store:
        store.upsert_zones([_zone("z01", "vantaa"), _zone("z02", "espoo")])
        groups = plan_work_groups(store, periods=(TimePeriod.MIDNIGHT, TimePeriod.MORNING))

        assert [(g.group_key, g.period) for g in groups] == [
            ("espoo", TimePeriod.MORNING),
            ("espoo", TimePeriod.MIDNIGHT),
            ("vantaa", TimePeriod.MORNING),
            ("vantaa", TimePeriod.MIDNIGHT),
        ]


def test_resume_skips_complete_groups_and_keeps_remaining_work() -> None:
    with RecordStore(":memory:") as store:
        # Group A: 5 zones -> 20 pairs, all done. Group B: 4 zones -> 12 pairs, 3 done.
        zones = [_zone(f"a{i:02d}", "A") for i in range(5)] + [_zone(f"b{i:02d}", "B") for i in range(4)]
        store.upsert_zones(zones)
        seed_route_pairs(store, periods=(TimePeriod.MORNING,))

        group_a = [z.id for z in zones if z.group_key == "A"]
        group_b = [z.id for z in zones if z.group_key == "B"]
        for pair in generate_route_pairs(group_a, periods=(TimePeriod.MORNING,)):
            store.upsert(_no_route(pair))
        for pair in list(generate_route_pairs(group_b, periods=(TimePeriod.MORNING,)))[:3]:
            store.upsert(_no_route(pair))

        ledger = ProgressLedger(store)
        groups = plan_work_groups(store, periods=(TimePeriod.MORNING,), resume=True, ledger=ledger)

        assert [g.group_key for g in groups] == ["B"]
        assert groups[0].counts.total == 12
        assert groups[0].counts.completed == 3
        tasks = pending_pairs(store, groups[0])
        assert len(tasks) == 9
        assert all(t.from_id.startswith("b") and t.to_id.startswith("b") for t in tasks)


def test_resume_trusts_the_store_over_a_stale_ledger() -> None:
    with RecordStore(":memory:") as store:
        store.upsert_zones([_zone("a01", "A"), _zone("a02", "A")])
        seed_route_pairs(store, periods=(TimePeriod.MORNING,))
        ledger = ProgressLedger(store)
        ledger.put(ProgressEntry(group_key="A", period=TimePeriod.MORNING, completed=2, total=2))

        groups = plan_work_groups(store, periods=(TimePeriod.MORNING,), resume=True, ledger=ledger)

        assert [g.group_key for g in groups] == ["A"]


def test_inter_group_pairs_are_not_scheduled() -> None:
    with RecordStore(":memory:") as store:
        store.upsert_zones([_zone("a01", "A"), _zone("a02", "A"), _zone("b01", "B")])
        seed_route_pairs(store, periods=(TimePeriod.MORNING,))

        scheduled = [p for g in plan_work_groups(store, periods=(TimePeriod.MORNING,)) for p in pending_pairs(store, g)]

        assert len(scheduled) == 2
        assert RoutePair("a01", "b01", TimePeriod.MORNING) not in scheduled


def test_ledger_completed_never_decreases() -> None:
    with RecordStore(":memory:") as store:
        ledger = ProgressLedger(store)
        ledger.put(ProgressEntry(group_key="A", period=TimePeriod.EVENING, completed=7, total=10))
        stored = ledger.put(ProgressEntry(group_key="A", period=TimePeriod.EVENING, completed=4, total=10))
        raw = store.get_metadata(ledger_key("A", TimePeriod.EVENING, TransportMode.WALK))

        assert stored.completed == 7
        assert raw["completed"] == 7
        assert raw["total"] == 10
        assert "lastUpdate" in raw
        assert ledger.get("A", TimePeriod.EVENING).completed == 7  # type: ignore[union-attr]
        assert ledger.get("A", TimePeriod.MORNING) is None


def test_ledger_records_last_run_summary() -> None:
    with RecordStore(":memory:") as store:
        ledger = ProgressLedger(store)
        ledger.record_run({"processed": 3, "ok": 2})

        last = ledger.last_run()
        assert last is not None
        assert last["processed"] == 3
        assert "timestamp" in last
        assert store.get_metadata(LAST_RUN_KEY) == last


def test_sampling_is_reproducible_with_a_seed() -> None:
    tasks = list(generate_route_pairs([f"z{i}" for i in range(6)], periods=(TimePeriod.MORNING,)))

    first = cap_tasks(tasks, 5, random.Random(7))
    second = cap_tasks(tasks, 5, random.Random(7))

    assert first == second
    assert len(first) == 5
    assert cap_tasks(tasks, None, random.Random(1)) == tasks
    assert select_origins(["a", "b", "c"], 2, random.Random(3)) == select_origins(["c", "b", "a"], 2, random.Random(3))
    assert select_origins(["a", "b"], 10, random.Random(3)) == {"a", "b"}
