from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date
from typing import Any

from .events import ProgressEmitter
from .logging_utils import log_event
from .models import (
    ALL_PERIODS,
    ProgressEntry,
    RoutePair,
    RouteStatus,
    RunSummary,
    TimePeriod,
    TransportMode,
    Zone,
)
from .pipeline_errors import MissingCredentialError, NoDataError, RateLimitExceeded
from .progress_ledger import ProgressLedger
from .record_store import RecordStore, RouteFilter
from .routing_otp import OTPClient, RetryPolicy, RouteClassifier, RouteOutcome, next_service_day
from .settings import RoutingConfig
from .task_planner import cap_tasks, pending_pairs, plan_work_groups, select_origins

STAGE = "build_routes"


def ensure_credentials(config: RoutingConfig) -> None:
    if config.requires_api_key and not config.api_key:
        raise MissingCredentialError(
            "Missing DIGITRANSIT_API_KEY or HSL_API_KEY environment variable (required for remote OTP)"
        )


def client_from_config(config: RoutingConfig) -> OTPClient:
    return OTPClient(
        base_url=config.url,
        api_key=config.api_key,
        timeout_s=config.request_timeout_s,
        num_itineraries=config.num_itineraries,
    )


@dataclass
class _Tally:
    processed: int = 0
    ok: int = 0
    no_route: int = 0
    errors: int = 0
    rate_limited: int = 0

    def add(self, outcome: RouteOutcome) -> None:
        self.processed += 1
        if outcome.status is RouteStatus.OK:
            self.ok += 1
        elif outcome.status is RouteStatus.NO_ROUTE:
            self.no_route += 1
        else:
            self.errors += 1
        if outcome.rate_limited:
            self.rate_limited += 1


class RouteScheduler:
    """Drains route pairs through the routing service with bounded concurrency.

    Tasks run in fixed-size chunks; each chunk fans out under a semaphore and
    is joined before the next one starts, so exactly one progress event is
    emitted per chunk. :meth:`request_stop` takes effect between chunks: the
    in-flight chunk always finishes and persists.
    """

    def __init__(
        self,
        config: RoutingConfig,
        *,
        store: RecordStore,
        client: OTPClient,
        emitter: ProgressEmitter | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        target_date: date | None = None,
    ) -> None:
        ensure_credentials(config)
        self.config = config
        self._store = store
        self._emitter = emitter or ProgressEmitter()
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._stop_requested = False
        self.classifier = RouteClassifier(
            client=client,
            target_date=target_date or next_service_day(),
            policy=RetryPolicy(
                max_retries=config.max_rate_limit_retries,
                backoff_base_ms=config.backoff_base_ms,
                backoff_max_ms=config.backoff_max_ms,
            ),
            sleep=sleep,
        )

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self) -> None:
        self._stop_requested = True

    async def _jitter(self) -> None:
        delay_ms = self.config.rate_limit_delay_ms
        if self.config.is_local or delay_ms <= 0:
            return
        await self._sleep(self._rng.uniform(0, delay_ms) / 1000.0)

    async def _run_one(
        self,
        pair: RoutePair,
        zones: Mapping[str, Zone],
        sem: asyncio.Semaphore,
        tally: _Tally,
    ) -> None:
        async with sem:
            origin = zones.get(pair.from_id)
            destination = zones.get(pair.to_id)
            if origin is None or destination is None:
                missing = pair.from_id if origin is None else pair.to_id
                outcome = RouteOutcome(status=RouteStatus.ERROR, detail=f"zone coordinates not found: {missing}")
            else:
                await self._jitter()
                try:
                    outcome = await self.classifier.fetch(
                        pair,
                        origin.query_point,
                        destination.query_point,
                        pair.period.target_time,
                    )
                except RateLimitExceeded as e:
                    outcome = RouteOutcome(
                        status=RouteStatus.ERROR,
                        detail=f"{e.reason_code}: {e}",
                        rate_limited=True,
                    )
                except Exception as e:
                    outcome = RouteOutcome(status=RouteStatus.ERROR, detail=f"{type(e).__name__}: {e}")
            self._store.upsert(outcome.to_record(pair))
            tally.add(outcome)

    async def run(
        self,
        tasks: Sequence[RoutePair],
        zones: Mapping[str, Zone],
        *,
        context: dict[str, Any] | None = None,
    ) -> RunSummary:
        total = len(tasks)
        tally = _Tally()
        t0 = time.perf_counter()
        sem = asyncio.Semaphore(max(1, self.config.concurrency))
        chunk_size = max(1, self.config.chunk_size)
        cancelled = False

        for start in range(0, total, chunk_size):
            if self._stop_requested:
                cancelled = True
                break
            chunk = tasks[start : start + chunk_size]
            await asyncio.gather(*[self._run_one(pair, zones, sem, tally) for pair in chunk])

            elapsed_ms = (time.perf_counter() - t0) * 1000.0
            eta_ms = elapsed_ms * (total - tally.processed) / tally.processed if tally.processed else None
            self._emitter.emit_progress(
                STAGE,
                tally.processed,
                total,
                f"{tally.processed}/{total} routes",
                {
                    **(context or {}),
                    "processed": tally.processed,
                    "ok": tally.ok,
                    "no_route": tally.no_route,
                    "errors": tally.errors,
                    "rate_limited": tally.rate_limited,
                    "elapsed_ms": round(elapsed_ms, 2),
                    "eta_ms": round(eta_ms, 2) if eta_ms is not None else None,
                },
            )

        return RunSummary(
            processed=tally.processed,
            ok=tally.ok,
            no_route=tally.no_route,
            errors=tally.errors,
            rate_limited=tally.rate_limited,
            elapsed_ms=round((time.perf_counter() - t0) * 1000.0, 2),
            cancelled=cancelled,
        )


async def build_routes(
    store: RecordStore,
    config: RoutingConfig,
    *,
    periods: Sequence[TimePeriod] = ALL_PERIODS,
    mode: TransportMode = TransportMode.WALK,
    resume: bool = False,
    retry_failed: bool = False,
    limit: int | None = None,
    origin_sample: int | None = None,
    seed: int | None = None,
    emitter: ProgressEmitter | None = None,
    client: OTPClient | None = None,
    scheduler: RouteScheduler | None = None,
) -> RunSummary:
    """Run every (group, period) work group through the scheduler.

    ``retry_failed`` reselects ERROR records instead of PENDING ones; they are
    reset to PENDING immediately before dispatch.
    """
    emitter = emitter or ProgressEmitter()
    ensure_credentials(config)

    zones_by_group = store.zones_by_group()
    if not zones_by_group:
        raise NoDataError("No zones found. Ingest zones before calculating routes.", reason_code="no_zones")
    zone_map = {z.id: z for zones in zones_by_group.values() for z in zones}

    rng = random.Random(seed)
    owns_client = scheduler is None and client is None
    if scheduler is None:
        scheduler = RouteScheduler(
            config,
            store=store,
            client=client or client_from_config(config),
            emitter=emitter,
            rng=rng,
        )

    ledger = ProgressLedger(store)
    groups = plan_work_groups(store, periods=periods, mode=mode, resume=resume and not retry_failed, ledger=ledger)
    chosen_origins = select_origins(list(zone_map), origin_sample, rng) if origin_sample else None
    statuses = (RouteStatus.ERROR,) if retry_failed else (RouteStatus.PENDING,)
    remaining = limit

    emitter.emit_start(
        STAGE,
        message="Resuming route calculation..." if resume else "Starting route calculation...",
        metadata={
            "groups": sorted(zones_by_group),
            "work_groups": [f"{g.group_key}:{g.period.value}" for g in groups],
            "periods": [p.value for p in periods],
            "mode": mode.value,
            "is_local": config.is_local,
            "concurrency": config.concurrency,
            "resume": resume,
            "retry_failed": retry_failed,
        },
    )
    log_event(
        "route_run_started",
        work_group_count=len(groups),
        mode=mode.value,
        resume=resume,
        retry_failed=retry_failed,
        is_local=config.is_local,
        concurrency=config.concurrency,
    )

    total = RunSummary()
    t0 = time.perf_counter()
    try:
        for group in groups:
            if scheduler.stop_requested:
                total = total.merge(RunSummary(cancelled=True))
                break
            tasks = pending_pairs(store, group, statuses=statuses)
            if chosen_origins is not None:
                tasks = [t for t in tasks if t.from_id in chosen_origins]
            tasks = cap_tasks(tasks, remaining, rng)
            if remaining is not None:
                remaining -= len(tasks)
            if retry_failed and tasks:
                store.reset_pairs(tasks)

            context = {"group": group.group_key, "period": group.period.value, "mode": group.mode.value}
            result = await scheduler.run(tasks, zone_map, context=context) if tasks else RunSummary()
            total = total.merge(result)

            counts = store.count_by_status(
                RouteFilter.within_group(group.zone_ids, period=group.period, mode=group.mode)
            )
            ledger.put(
                ProgressEntry(
                    group_key=group.group_key,
                    period=group.period,
                    mode=group.mode,
                    completed=counts.completed,
                    total=counts.total,
                )
            )
            log_event("work_group_finished", **context, **result.model_dump())
            if result.cancelled or (remaining is not None and remaining <= 0):
                break
    except Exception as exc:
        emitter.emit_error(STAGE, exc, "Route calculation failed")
        raise
    finally:
        if owns_client:
            await scheduler.classifier.client.aclose()

    total = total.model_copy(update={"elapsed_ms": round((time.perf_counter() - t0) * 1000.0, 2)})
    ledger.record_run(
        {
            "periods": [p.value for p in periods],
            "mode": mode.value,
            "resumed": resume,
            "retry_failed": retry_failed,
            "limit": limit,
            "origin_sample": origin_sample,
            **total.model_dump(),
        }
    )
    emitter.emit_complete(
        STAGE,
        f"{total.processed} routes processed: {total.ok} ok, {total.no_route} no route, {total.errors} errors",
        total.model_dump(),
    )
    log_event("route_run_finished", **total.model_dump())
    return total
