from __future__ import annotations

import statistics
from collections.abc import Mapping, Sequence

from .events import ProgressEmitter
from .logging_utils import log_event
from .models import ReachabilityScore, RouteRecord, RouteStatus, TimePeriod, TransportMode
from .pipeline_errors import AlreadyComputedError, NoDataError
from .record_store import RecordStore

STAGE = "calculate_reachability"

THRESHOLD_15_S = 15 * 60
THRESHOLD_30_S = 30 * 60
THRESHOLD_45_S = 45 * 60

WEIGHT_15 = 0.4
WEIGHT_30 = 0.3
WEIGHT_45 = 0.2
WEIGHT_MEAN = 0.1


def _ok_durations(records: Sequence[RouteRecord]) -> list[int]:
    return sorted(
        int(r.duration) for r in records if r.status is RouteStatus.OK and r.duration is not None
    )


def score_reachability(
    routes_by_origin: Mapping[str, Sequence[RouteRecord]],
    all_zone_ids: Sequence[str],
) -> dict[str, ReachabilityScore]:
    """Composite 0-1 accessibility score and rank for every zone in ``all_zone_ids``.

    Zones without OK routes score 0 and still receive a rank. Ranks follow the
    score (descending); equal scores are ordered by zone id.
    """
    zone_ids = list(dict.fromkeys(all_zone_ids))
    destinations = max(len(zone_ids) - 1, 1)
    durations_by_zone = {zid: _ok_durations(routes_by_origin.get(zid, ())) for zid in zone_ids}
    longest = max((d[-1] for d in durations_by_zone.values() if d), default=0)

    unranked: list[tuple[str, float, dict[str, float | int]]] = []
    for zone_id in zone_ids:
        durations = durations_by_zone[zone_id]
        if not durations:
            unranked.append((zone_id, 0.0, {}))
            continue
        within15 = sum(1 for d in durations if d <= THRESHOLD_15_S)
        within30 = sum(1 for d in durations if d <= THRESHOLD_30_S)
        within45 = sum(1 for d in durations if d <= THRESHOLD_45_S)
        mean = statistics.fmean(durations)
        score = (
            WEIGHT_15 * within15 / destinations
            + WEIGHT_30 * within30 / destinations
            + WEIGHT_45 * within45 / destinations
            + WEIGHT_MEAN * (1 - mean / max(longest, 1))
        )
        unranked.append(
            (
                zone_id,
                min(1.0, max(0.0, score)),
                {
                    "within15": within15,
                    "within30": within30,
                    "within45": within45,
                    # lower-middle element for even-length samples
                    "median_duration": float(durations[(len(durations) - 1) // 2]),
                    "mean_duration": mean,
                    "reachable_count": len(durations),
                },
            )
        )

    ranked = sorted(unranked, key=lambda item: (-item[1], item[0]))
    return {
        zone_id: ReachabilityScore(zone_id=zone_id, score=score, rank=rank, **metrics)
        for rank, (zone_id, score, metrics) in enumerate(ranked, start=1)
    }


def compute_reachability(
    store: RecordStore,
    *,
    period: TimePeriod = TimePeriod.MORNING,
    mode: TransportMode = TransportMode.WALK,
    force: bool = False,
    emitter: ProgressEmitter | None = None,
) -> list[ReachabilityScore]:
    emitter = emitter or ProgressEmitter()
    emitter.emit_start(STAGE, 4, "Calculating reachability scores...", {"period": period.value, "mode": mode.value})
    try:
        existing = store.count_reachability(period, mode)
        if existing and not force:
            raise AlreadyComputedError(
                f"Reachability already calculated for {period.value}/{mode.value}. Use force to recalculate.",
                period=period.value,
                mode=mode.value,
            )

        zone_ids = [z.id for z in store.list_zones()]
        if not zone_ids:
            raise NoDataError("No zones found", reason_code="no_zones")
        emitter.emit_progress(STAGE, 1, 4, f"Processing {len(zone_ids)} zones...")

        routes_by_origin = store.routes_by_origin(period, mode)
        if not any(_ok_durations(records) for records in routes_by_origin.values()):
            raise NoDataError(
                "No route data found. Run route calculation first.",
                period=period.value,
                mode=mode.value,
            )
        emitter.emit_progress(STAGE, 2, 4, "Computing scores...")
        scores = sorted(score_reachability(routes_by_origin, zone_ids).values(), key=lambda s: s.rank)

        emitter.emit_progress(STAGE, 3, 4, "Saving scores...")
        store.replace_reachability(period, mode, scores)
    except Exception as exc:
        emitter.emit_error(STAGE, exc, "Failed to calculate reachability")
        raise

    with_data = sum(1 for s in scores if s.reachable_count)
    log_event(
        "reachability_computed",
        period=period.value,
        mode=mode.value,
        zone_count=len(scores),
        zones_with_data=with_data,
        best_zone=scores[0].zone_id if scores else None,
    )
    emitter.emit_complete(
        STAGE,
        f"Reachability calculated for {with_data} zones (period: {period.value})",
        {
            "zones_processed": len(scores),
            "zones_with_data": with_data,
            "best": scores[0].zone_id if scores else None,
            "worst": scores[-1].zone_id if scores else None,
        },
    )
    return scores
