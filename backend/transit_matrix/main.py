from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from .bucketing import compute_deciles, compute_time_buckets, period_key
from .clearing import reset_routes
from .events import EventRecorder, ProgressEmitter
from .logging_utils import log_event
from .models import (
    ALL_PERIODS,
    PartitionKind,
    PartitionRequest,
    PartitionsResponse,
    ReachabilityRequest,
    ReachabilityResponse,
    ResetRequest,
    RunRoutesRequest,
    RunRoutesResponse,
    StatusResponse,
    TimePeriod,
    TransportMode,
    Zone,
)
from .pipeline_errors import (
    AlreadyComputedError,
    MissingCredentialError,
    NoDataError,
    PipelineError,
    normalize_reason_code,
)
from .progress_ledger import ProgressLedger
from .reachability import compute_reachability
from .record_store import RecordStore, RouteFilter
from .route_batch import build_routes, client_from_config
from .routing_otp import OTPClient
from .run_store import manifest_dir, write_manifest
from .settings import RoutingConfig, routing_config_from_settings, settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.store = RecordStore(settings.db_path)
    app.state.otp = client_from_config(routing_config_from_settings())
    yield
    await app.state.otp.aclose()
    app.state.store.close()


app = FastAPI(title="Transit Matrix Pipeline", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def record_store(request: Request) -> RecordStore:
    store: RecordStore | None = getattr(request.app.state, "store", None)  # type: ignore[attr-defined]
    if store is None:
        raise HTTPException(status_code=503, detail="record store not initialised")
    return store


def otp_client(request: Request) -> OTPClient:
    client: OTPClient | None = getattr(request.app.state, "otp", None)  # type: ignore[attr-defined]
    if client is None:
        raise HTTPException(status_code=503, detail="OTP client not initialised")
    return client


def routing_config() -> RoutingConfig:
    return routing_config_from_settings()


StoreDep = Annotated[RecordStore, Depends(record_store)]
OTPDep = Annotated[OTPClient, Depends(otp_client)]
ConfigDep = Annotated[RoutingConfig, Depends(routing_config)]


def _http_error(exc: PipelineError) -> HTTPException:
    if isinstance(exc, NoDataError):
        status = 404
    elif isinstance(exc, AlreadyComputedError):
        status = 409
    elif isinstance(exc, MissingCredentialError):
        status = 503
    else:
        status = 400
    return HTTPException(
        status_code=status,
        detail={"reason_code": normalize_reason_code(exc.reason_code), "message": exc.message},
    )


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "Backend is running. Visit /docs for the API UI.", "docs": "/docs"}


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/status", response_model=StatusResponse)
async def status(store: StoreDep) -> StatusResponse:
    return StatusResponse(
        zones=store.zone_count(),
        routes=store.count_by_status(),
        by_period={p.value: store.count_by_status(RouteFilter(period=p)) for p in ALL_PERIODS},
        last_run=ProgressLedger(store).last_run(),
    )


@app.get("/zones", response_model=list[Zone])
async def list_zones(store: StoreDep, group: str | None = None) -> list[Zone]:
    return store.list_zones(group)


def _partitions_or_404(store: RecordStore, kind: PartitionKind, period: TimePeriod | None) -> PartitionsResponse:
    key = period_key(period)
    partitions = store.load_partitions(kind, key)
    if not partitions:
        raise HTTPException(status_code=404, detail=f"{kind} not calculated for {key}")
    return PartitionsResponse(kind=kind, period=key, partitions=partitions)


@app.get("/time-buckets", response_model=PartitionsResponse)
async def get_time_buckets(store: StoreDep, period: TimePeriod | None = None) -> PartitionsResponse:
    return _partitions_or_404(store, "time_buckets", period)


@app.get("/deciles", response_model=PartitionsResponse)
async def get_deciles(store: StoreDep, period: TimePeriod | None = None) -> PartitionsResponse:
    return _partitions_or_404(store, "deciles", period)


@app.get("/reachability/{period}", response_model=ReachabilityResponse)
async def get_reachability(
    period: TimePeriod,
    store: StoreDep,
    mode: TransportMode = TransportMode.WALK,
) -> ReachabilityResponse:
    scores = store.load_reachability(period, mode)
    if not scores:
        raise HTTPException(status_code=404, detail=f"reachability not calculated for {period.value}/{mode.value}")
    return ReachabilityResponse(period=period, mode=mode, scores=scores)


@app.post("/routes/run", response_model=RunRoutesResponse)
async def run_routes(
    req: RunRoutesRequest,
    store: StoreDep,
    client: OTPDep,
    config: ConfigDep,
) -> RunRoutesResponse:
    run_id = str(uuid.uuid4())
    emitter = ProgressEmitter()
    recorder = EventRecorder(emitter)
    try:
        summary = await build_routes(
            store,
            config,
            periods=req.periods,
            mode=req.mode,
            resume=req.resume,
            retry_failed=req.retry_failed,
            limit=req.limit,
            origin_sample=req.origin_sample,
            seed=req.seed,
            emitter=emitter,
            client=client,
        )
    except PipelineError as e:
        raise _http_error(e) from e

    manifest_path = write_manifest(
        run_id,
        {
            "type": "route_run",
            "request": req.model_dump(mode="json"),
            "is_local": config.is_local,
            "concurrency": config.concurrency,
            "summary": summary.model_dump(),
            "progress_events": len(recorder.of_type("progress")),
        },
    )
    log_event(
        "route_run_request",
        run_id=run_id,
        processed=summary.processed,
        errors=summary.errors,
        manifest=str(manifest_path),
    )
    return RunRoutesResponse(run_id=run_id, summary=summary)


@app.post("/time-buckets", response_model=PartitionsResponse)
async def post_time_buckets(req: PartitionRequest, store: StoreDep) -> PartitionsResponse:
    try:
        partitions = compute_time_buckets(store, period=req.period, force=req.force)
    except PipelineError as e:
        raise _http_error(e) from e
    return PartitionsResponse(kind="time_buckets", period=period_key(req.period), partitions=partitions)


@app.post("/deciles", response_model=PartitionsResponse)
async def post_deciles(req: PartitionRequest, store: StoreDep) -> PartitionsResponse:
    try:
        partitions = compute_deciles(store, period=req.period, force=req.force)
    except PipelineError as e:
        raise _http_error(e) from e
    return PartitionsResponse(kind="deciles", period=period_key(req.period), partitions=partitions)


@app.post("/reachability", response_model=ReachabilityResponse)
async def post_reachability(req: ReachabilityRequest, store: StoreDep) -> ReachabilityResponse:
    period = req.period
    try:
        scores = compute_reachability(store, period=period, mode=req.mode, force=req.force)
    except PipelineError as e:
        raise _http_error(e) from e
    return ReachabilityResponse(period=period, mode=req.mode, scores=scores)


@app.post("/routes/reset")
async def post_reset(req: ResetRequest, store: StoreDep) -> dict[str, int]:
    reset = reset_routes(store, RouteFilter(period=req.period, mode=req.mode, statuses=req.statuses))
    return {"reset": reset}


def _manifest_path_for_id(run_id: str) -> Path:
    try:
        uuid.UUID(run_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail="invalid run_id") from e

    base = manifest_dir().resolve()
    resolved = (manifest_dir() / f"{run_id}.json").resolve()
    if not resolved.is_relative_to(base):
        raise HTTPException(status_code=400, detail="invalid run_id path")
    return resolved


@app.get("/runs/{run_id}/manifest")
async def get_manifest(run_id: str):
    path = _manifest_path_for_id(run_id)
    if not path.exists():
        raise HTTPException(status_code=404, detail="manifest not found")
    return FileResponse(str(path), media_type="application/json")
