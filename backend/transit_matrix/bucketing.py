"""Duration partitions for heatmap colouring.

Both variants are total over ``[0, inf)``: partition ``i`` covers
``[min_seconds, max_seconds)``, each ``max_seconds`` equals the next
partition's ``min_seconds`` and the last partition is open-ended.
"""

from __future__ import annotations

from collections.abc import Sequence

from .events import ProgressEmitter, Stage
from .logging_utils import log_event
from .models import Partition, PartitionKind, TimePeriod
from .pipeline_errors import AlreadyComputedError, NoDataError
from .record_store import RecordStore

ALL_PERIODS_KEY = "ALL"

TIME_BUCKET_STEP_S = 900
TIME_BUCKET_COUNT = 6
TIME_BUCKET_COLORS: tuple[str, ...] = (
    "#1b9e77",
    "#66c2a5",
    "#fc8d62",
    "#8da0cb",
    "#4574b4",
    "#1e3a8a",
)

DECILE_COUNT = 10
# Fastest to slowest.
DECILE_COLORS: tuple[str, ...] = (
    "#E76F51",
    "#F4A261",
    "#F9C74F",
    "#90BE6D",
    "#43AA8B",
    "#277DA1",
    "#4D5061",
    "#6C5B7B",
    "#8B5A8C",
    "#355C7D",
)


def period_key(period: TimePeriod | None) -> str:
    return ALL_PERIODS_KEY if period is None else TimePeriod(period).value


def format_duration_label(seconds: int) -> str:
    """900 -> '15min', 3600 -> '1h', 4500 -> '1h 15min'."""
    minutes = int(round(seconds / 60))
    hours, rest = divmod(minutes, 60)
    if hours and rest:
        return f"{hours}h {rest}min"
    if hours:
        return f"{hours}h"
    return f"{rest}min"


def _minutes(seconds: int) -> int:
    return int(round(seconds / 60))


def format_decile_label(min_seconds: int, max_seconds: int | None) -> str:
    lo = _minutes(min_seconds)
    if max_seconds is None:
        return f">{lo} min"
    hi = _minutes(max_seconds)
    if lo == hi:
        return f"{lo} min"
    return f"{lo}-{hi} min"


def fixed_time_buckets() -> list[Partition]:
    buckets: list[Partition] = []
    for i in range(TIME_BUCKET_COUNT):
        lo = i * TIME_BUCKET_STEP_S
        is_last = i == TIME_BUCKET_COUNT - 1
        hi = None if is_last else lo + TIME_BUCKET_STEP_S
        buckets.append(
            Partition(
                ordinal=i + 1,
                min_seconds=lo,
                max_seconds=hi,
                color=TIME_BUCKET_COLORS[i],
                label=f">{format_duration_label(lo)}" if hi is None else format_duration_label(hi),
            )
        )
    return buckets


def decile_sizes(total: int) -> list[int]:
    """Equal-frequency group sizes; the first ``total % 10`` groups take one extra item."""
    base, remainder = divmod(total, DECILE_COUNT)
    return [base + 1 if i < remainder else base for i in range(DECILE_COUNT)]


def decile_partitions(durations: Sequence[int]) -> list[Partition]:
    ordered = sorted(int(d) for d in durations)
    if not ordered:
        raise NoDataError("No successful routes found. Please run route calculation first.")

    # Lower bound of each decile. The first is pinned to 0 for totality; deciles
    # left empty by a short sample collapse onto the largest duration.
    starts: list[int] = []
    index = 0
    for size in decile_sizes(len(ordered)):
        starts.append(ordered[index] if index < len(ordered) else ordered[-1])
        index += size
    starts[0] = 0

    partitions: list[Partition] = []
    for i, lo in enumerate(starts):
        hi = starts[i + 1] if i + 1 < DECILE_COUNT else None
        partitions.append(
            Partition(
                ordinal=i + 1,
                min_seconds=lo,
                max_seconds=hi,
                color=DECILE_COLORS[i],
                label=format_decile_label(lo, hi),
            )
        )
    return partitions


def classify_duration(duration: float, partitions: Sequence[Partition]) -> int:
    """Ordinal of the partition containing ``duration`` (half-open intervals)."""
    if duration < 0:
        raise ValueError("duration must be non-negative")
    for p in partitions:
        if p.max_seconds is None or duration < p.max_seconds:
            if duration >= p.min_seconds:
                return p.ordinal
    raise ValueError("partitions do not cover the duration")


def _compute(
    store: RecordStore,
    *,
    kind: PartitionKind,
    stage: Stage,
    period: TimePeriod | None,
    force: bool,
    emitter: ProgressEmitter | None,
) -> list[Partition]:
    emitter = emitter or ProgressEmitter()
    key = period_key(period)
    emitter.emit_start(stage, 4, f"Calculating {kind.replace('_', ' ')}...", {"period": key})
    try:
        existing = store.count_partitions(kind, key)
        if existing and not force:
            raise AlreadyComputedError(
                f"{kind} already exist for {key} ({existing} rows). Use force to recalculate.",
                kind=kind,
                period=key,
            )

        emitter.emit_progress(stage, 1, 4, "Querying successful routes...")
        # one partition set per period, shared by every mode
        durations = store.ok_durations(period, mode=None)
        if not durations:
            raise NoDataError("No successful routes found. Please run route calculation first.", period=key)

        emitter.emit_progress(stage, 2, 4, f"Found {len(durations)} successful routes")
        partitions = fixed_time_buckets() if kind == "time_buckets" else decile_partitions(durations)

        emitter.emit_progress(stage, 3, 4, "Saving partitions...")
        store.replace_partitions(kind, key, partitions)
        store.put_metadata(f"{kind}_calculated_at_{key}", {"sample_size": len(durations)})
    except Exception as exc:
        emitter.emit_error(stage, exc, f"Failed to calculate {kind}")
        raise

    log_event("partitions_computed", kind=kind, period=key, sample_size=len(durations), replaced=existing)
    emitter.emit_complete(
        stage,
        f"{kind} calculated from {len(durations)} routes",
        {"period": key, "count": len(partitions), "sample_size": len(durations)},
    )
    return partitions


def compute_time_buckets(
    store: RecordStore,
    *,
    period: TimePeriod | None = None,
    force: bool = False,
    emitter: ProgressEmitter | None = None,
) -> list[Partition]:
    return _compute(
        store,
        kind="time_buckets",
        stage="calculate_time_buckets",
        period=period,
        force=force,
        emitter=emitter,
    )


def compute_deciles(
    store: RecordStore,
    *,
    period: TimePeriod | None = None,
    force: bool = False,
    emitter: ProgressEmitter | None = None,
) -> list[Partition]:
    return _compute(
        store,
        kind="deciles",
        stage="calculate_deciles",
        period=period,
        force=force,
        emitter=emitter,
    )
