from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Sequence

from transit_matrix.bucketing import compute_deciles, compute_time_buckets
from transit_matrix.clearing import ClearOptions, clear_data, reset_routes
from transit_matrix.events import ProgressEmitter, ProgressEvent
from transit_matrix.logging_utils import set_console_level
from transit_matrix.models import ALL_PERIODS, RouteStatus, TimePeriod, TransportMode, Zone
from transit_matrix.progress_ledger import ProgressLedger
from transit_matrix.reachability import compute_reachability
from transit_matrix.record_store import RecordStore, RouteFilter
from transit_matrix.route_batch import RouteScheduler, build_routes, client_from_config
from transit_matrix.routing_otp import OTPClient
from transit_matrix.run_store import export_read_models
from transit_matrix.settings import RoutingConfig, routing_config_from_settings, settings
from transit_matrix.task_planner import seed_route_pairs

PERIOD_CHOICES = [p.value for p in ALL_PERIODS]
MODE_CHOICES = [m.value for m in TransportMode]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Zone-to-zone transit matrix pipeline.")
    parser.add_argument("--db", default=None, help="SQLite database path (defaults to DB_PATH).")
    parser.add_argument("--quiet", action="store_true", help="Do not print progress events; console log shows warnings only.")
    sub = parser.add_subparsers(dest="command", required=True)

    seed = sub.add_parser("seed", help="Load zones from JSON and create PENDING route rows.")
    seed.add_argument("--zones-file", required=True)
    seed.add_argument("--period", action="append", choices=PERIOD_CHOICES, default=None)
    seed.add_argument("--mode", action="append", choices=MODE_CHOICES, default=None)

    routes = sub.add_parser("routes", help="Calculate PENDING routes through OTP.")
    routes.add_argument("--period", action="append", choices=PERIOD_CHOICES, default=None)
    routes.add_argument("--mode", choices=MODE_CHOICES, default=TransportMode.WALK.value)
    routes.add_argument("--resume", action="store_true")
    routes.add_argument("--retry-failed", action="store_true")
    routes.add_argument("--limit", type=int, default=None, help="Process at most this many routes.")
    routes.add_argument("--zones", type=int, default=None, help="Only use this many random origin zones.")
    routes.add_argument("--seed", type=int, default=None)

    for name in ("time-buckets", "deciles"):
        p = sub.add_parser(name, help=f"Calculate {name}.")
        p.add_argument("--period", choices=PERIOD_CHOICES, default=None, help="Omit to use every period.")
        p.add_argument("--force", action="store_true")

    reach = sub.add_parser("reachability", help="Calculate per-zone reachability scores.")
    reach.add_argument("--period", choices=PERIOD_CHOICES, default=TimePeriod.MORNING.value)
    reach.add_argument("--mode", choices=MODE_CHOICES, default=TransportMode.WALK.value)
    reach.add_argument("--force", action="store_true")

    reset = sub.add_parser("reset", help="Reset routes to PENDING or clear stored data.")
    reset.add_argument("--period", choices=PERIOD_CHOICES, default=None)
    reset.add_argument("--mode", choices=MODE_CHOICES, default=None)
    reset.add_argument("--status", action="append", choices=[s.value for s in RouteStatus], default=None)
    reset.add_argument("--all", action="store_true", help="Delete zones, routes, metadata and read-models.")

    sub.add_parser("status", help="Print route status counts.")

    export = sub.add_parser("export", help="Write read-models as JSON files.")
    export.add_argument("--out-dir", default=None)
    return parser


def _print_event(event: ProgressEvent) -> None:
    if event.type == "progress":
        line = f"[{event.stage}] {event.current}/{event.total} {event.message or ''}"
    elif event.type == "error":
        line = f"[{event.stage}] error: {event.error}"
    else:
        line = f"[{event.stage}] {event.type}: {event.message or ''}"
    print(line.rstrip(), file=sys.stderr)


def load_zones(path: str) -> list[Zone]:
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get("zones")
    if not isinstance(payload, list):
        raise ValueError("zones file must be a JSON list or an object with a 'zones' list")
    return [Zone.model_validate(item) for item in payload]


def _periods(values: list[str] | None) -> tuple[TimePeriod, ...]:
    return tuple(TimePeriod(v) for v in values) if values else ALL_PERIODS


async def run_routes(
    args: argparse.Namespace,
    store: RecordStore,
    config: RoutingConfig,
    emitter: ProgressEmitter,
    *,
    client: OTPClient | None = None,
) -> dict[str, Any]:
    own_client = client is None
    client = client or client_from_config(config)
    scheduler = RouteScheduler(config, store=store, client=client, emitter=emitter)
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, scheduler.request_stop)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False
    try:
        summary = await build_routes(
            store,
            config,
            periods=_periods(args.period),
            mode=TransportMode(args.mode),
            resume=args.resume,
            retry_failed=args.retry_failed,
            limit=args.limit,
            origin_sample=args.zones,
            seed=args.seed,
            emitter=emitter,
            scheduler=scheduler,
        )
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
        if own_client:
            await client.aclose()
    return summary.model_dump()


def run_command(args: argparse.Namespace, *, client: OTPClient | None = None) -> dict[str, Any]:
    emitter = ProgressEmitter()
    if args.quiet:
        set_console_level(logging.WARNING)
    else:
        emitter.subscribe(_print_event)

    with RecordStore(args.db or settings.db_path) as store:
        if args.command == "seed":
            zones = load_zones(args.zones_file)
            store.upsert_zones(zones)
            modes = tuple(TransportMode(m) for m in args.mode) if args.mode else (TransportMode.WALK,)
            created = seed_route_pairs(store, _periods(args.period), modes)
            return {"zones": len(zones), "routes_created": created}

        if args.command == "routes":
            return asyncio.run(run_routes(args, store, routing_config_from_settings(), emitter, client=client))

        if args.command in ("time-buckets", "deciles"):
            compute = compute_time_buckets if args.command == "time-buckets" else compute_deciles
            period = TimePeriod(args.period) if args.period else None
            partitions = compute(store, period=period, force=args.force, emitter=emitter)
            return {"partitions": [p.model_dump() for p in partitions]}

        if args.command == "reachability":
            scores = compute_reachability(
                store,
                period=TimePeriod(args.period),
                mode=TransportMode(args.mode),
                force=args.force,
                emitter=emitter,
            )
            return {"zones": len(scores), "top": [s.model_dump() for s in scores[:10]]}

        if args.command == "reset":
            if args.all:
                return {"deleted": clear_data(store, ClearOptions(), emitter=emitter)}
            route_filter = RouteFilter(
                period=TimePeriod(args.period) if args.period else None,
                mode=TransportMode(args.mode) if args.mode else None,
                statuses=[RouteStatus(s) for s in args.status] if args.status else None,
            )
            return {"reset": reset_routes(store, route_filter, emitter=emitter)}

        if args.command == "status":
            return {
                "zones": store.zone_count(),
                "routes": store.count_by_status().model_dump(),
                "by_period": {
                    p.value: store.count_by_status(RouteFilter(period=p)).model_dump() for p in ALL_PERIODS
                },
                "last_run": ProgressLedger(store).last_run(),
            }

        if args.command == "export":
            written = export_read_models(store, args.out_dir, emitter=emitter)
            return {"files": {name: str(path) for name, path in written.items()}}

    raise ValueError(f"unknown command: {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    result = run_command(args)
    print(json.dumps(result, indent=2))
    return 1 if result.get("cancelled") else 0


if __name__ == "__main__":
    raise SystemExit(main())
