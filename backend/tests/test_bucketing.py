from __future__ import annotations

import pytest

from transit_matrix.bucketing import (
    DECILE_COLORS,
    TIME_BUCKET_COLORS,
    classify_duration,
    compute_deciles,
    compute_time_buckets,
    decile_partitions,
    decile_sizes,
    fixed_time_buckets,
    format_decile_label,
)
from transit_matrix.events import EventRecorder, ProgressEmitter
from transit_matrix.models import RoutePair, RouteRecord, RouteStatus, TimePeriod, TransportMode
from transit_matrix.pipeline_errors import AlreadyComputedError, NoDataError
from transit_matrix.record_store import RecordStore


def _store_with_durations(durations: list[int], period: TimePeriod = TimePeriod.MORNING) -> RecordStore:
    store = RecordStore(":memory:")
    for i, duration in enumerate(durations):
        store.upsert(
            RouteRecord(
                from_id=f"o{i}",
                to_id=f"d{i}",
                period=period,
                status=RouteStatus.OK,
                duration=duration,
                transfers=0,
                walk_distance=100.0,
                legs=[],
            )
        )
    return store


def _assert_total_partition(partitions) -> None:  # noqa: ANN001
    assert partitions[0].min_seconds == 0
    assert partitions[-1].max_seconds is None
    assert [p.ordinal for p in partitions] == list(range(1, len(partitions) + 1))
    for current, nxt in zip(partitions, partitions[1:]):
        assert current.max_seconds == nxt.min_seconds


def test_fixed_time_buckets_bounds_and_labels() -> None:
    buckets = fixed_time_buckets()

    assert [(b.min_seconds, b.max_seconds) for b in buckets] == [
        (0, 900),
        (900, 1800),
        (1800, 2700),
        (2700, 3600),
        (3600, 4500),
        (4500, None),
    ]
    assert [b.label for b in buckets] == ["15min", "30min", "45min", "1h", "1h 15min", ">1h 15min"]
    assert [b.color for b in buckets] == list(TIME_BUCKET_COLORS)
    _assert_total_partition(buckets)


def test_decile_sizes_spread_the_remainder_over_the_first_groups() -> None:
    assert decile_sizes(97) == [10, 10, 10, 10, 10, 10, 10, 9, 9, 9]
    assert decile_sizes(100) == [10] * 10
    assert decile_sizes(3) == [1, 1, 1, 0, 0, 0, 0, 0, 0, 0]


def test_decile_partitions_are_total_and_ordered() -> None:
    durations = [300 + 30 * i for i in range(97)]
    deciles = decile_partitions(durations)

    assert len(deciles) == 10
    _assert_total_partition(deciles)
    # Second decile starts at the 11th smallest sample.
    assert deciles[1].min_seconds == durations[10]
    assert deciles[9].min_seconds == durations[88]
    assert [d.color for d in deciles] == list(DECILE_COLORS)
    assert deciles[-1].label.startswith(">")


def test_decile_partitions_with_fewer_samples_than_deciles() -> None:
    deciles = decile_partitions([1200, 600, 900])

    assert len(deciles) == 10
    _assert_total_partition(deciles)
    assert [d.min_seconds for d in deciles] == [0, 900, 1200, 1200, 1200, 1200, 1200, 1200, 1200, 1200]


def test_decile_partitions_reject_empty_samples() -> None:
    with pytest.raises(NoDataError):
        decile_partitions([])


def test_decile_labels() -> None:
    assert format_decile_label(480, 900) == "8-15 min"
    assert format_decile_label(900, 900) == "15 min"
    assert format_decile_label(3600, None) == ">60 min"


def test_every_duration_lands_in_exactly_one_partition() -> None:
    deciles = decile_partitions([120, 480, 900, 900, 1500, 2400, 3600, 4000, 5000, 7200, 9000])
    for duration in (0, 119, 120, 899, 900, 4999, 9000, 50_000):
        hits = [
            p.ordinal
            for p in deciles
            if p.min_seconds <= duration and (p.max_seconds is None or duration < p.max_seconds)
        ]
        assert len(hits) == 1
        assert classify_duration(duration, deciles) == hits[0]

    buckets = fixed_time_buckets()
    assert classify_duration(0, buckets) == 1
    assert classify_duration(899, buckets) == 1
    assert classify_duration(900, buckets) == 2
    assert classify_duration(100_000, buckets) == 6


def test_compute_time_buckets_guard_and_force() -> None:
    store = _store_with_durations([600, 1200, 2000])
    emitter = ProgressEmitter()
    recorder = EventRecorder(emitter)

    first = compute_time_buckets(store, emitter=emitter)
    with pytest.raises(AlreadyComputedError):
        compute_time_buckets(store, emitter=emitter)
    forced = compute_time_buckets(store, force=True, emitter=emitter)

    assert len(first) == 6
    assert forced == first
    assert store.count_partitions("time_buckets", "ALL") == 6
    assert store.get_metadata("time_buckets_calculated_at_ALL") == {"sample_size": 3}
    assert len(recorder.of_type("error")) == 1
    assert len(recorder.of_type("complete")) == 2
    store.close()


def test_compute_deciles_per_period_and_across_periods() -> None:
    store = _store_with_durations([100 * (i + 1) for i in range(20)], TimePeriod.MORNING)
    store.upsert(
        RouteRecord(
            from_id="x",
            to_id="y",
            period=TimePeriod.EVENING,
            status=RouteStatus.OK,
            duration=10_000,
            transfers=0,
            walk_distance=0.0,
            legs=[],
        )
    )

    morning = compute_deciles(store, period=TimePeriod.MORNING)
    overall = compute_deciles(store)

    assert store.load_partitions("deciles", "MORNING") == morning
    assert store.load_partitions("deciles", "ALL") == overall
    assert morning[9].min_seconds == 1900
    assert overall[9].min_seconds == 2000
    assert store.count_partitions("deciles", "EVENING") == 0
    store.close()


def test_compute_without_successful_routes_raises_no_data() -> None:
    store = RecordStore(":memory:")
    store.insert_pending([RoutePair("a", "b", TimePeriod.MORNING)])

    with pytest.raises(NoDataError):
        compute_deciles(store)
    with pytest.raises(NoDataError):
        compute_time_buckets(store, period=TimePeriod.MORNING)
    assert store.count_partitions("deciles", "ALL") == 0
    store.close()


def test_partitions_pool_durations_across_modes() -> None:
    store = _store_with_durations([600, 1200])
    store.upsert(
        RouteRecord(
            from_id="o0",
            to_id="d0",
            period=TimePeriod.MORNING,
            mode=TransportMode.BICYCLE,
            status=RouteStatus.OK,
            duration=300,
            transfers=0,
            walk_distance=0.0,
            legs=[],
        )
    )

    deciles = compute_deciles(store, period=TimePeriod.MORNING)

    assert store.get_metadata("deciles_calculated_at_MORNING") == {"sample_size": 3}
    assert [d.min_seconds for d in deciles[:3]] == [0, 600, 1200]
    store.close()
