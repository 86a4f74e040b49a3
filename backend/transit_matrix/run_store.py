from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .bucketing import ALL_PERIODS_KEY
from .events import ProgressEmitter
from .logging_utils import log_event
from .models import ALL_PERIODS, PartitionKind, TransportMode
from .record_store import RecordStore
from .settings import settings

EXPORT_STAGE = "export_read_models"


def manifest_dir() -> Path:
    return Path(settings.out_dir) / "manifests"


def write_manifest(run_id: str, manifest: dict[str, Any]) -> Path:
    out_dir = manifest_dir()
    out_dir.mkdir(parents=True, exist_ok=True)

    enriched = {
        "run_id": run_id,
        "created_at": datetime.now(UTC).isoformat(),
        **manifest,
    }

    path = out_dir / f"{run_id}.json"
    path.write_text(json.dumps(enriched, indent=2), encoding="utf-8")
    return path


def _write_json(path: Path, payload: Any) -> None:
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _partition_payload(store: RecordStore, kind: PartitionKind) -> dict[str, list[dict[str, Any]]]:
    payload: dict[str, list[dict[str, Any]]] = {}
    for key in (ALL_PERIODS_KEY, *(p.value for p in ALL_PERIODS)):
        partitions = store.load_partitions(kind, key)
        if partitions:
            # Open upper bound serialises as null.
            payload[key] = [p.model_dump() for p in partitions]
    return payload


def export_read_models(
    store: RecordStore,
    out_dir: str | Path | None = None,
    *,
    modes: tuple[TransportMode, ...] = (TransportMode.WALK, TransportMode.BICYCLE),
    emitter: ProgressEmitter | None = None,
) -> dict[str, Path]:
    """Write the persisted partitions and reachability scores as JSON files.

    Partitions keep ordinal order and scores keep rank order. Read-models that
    were never computed are skipped.
    """
    emitter = emitter or ProgressEmitter()
    target = Path(out_dir) if out_dir is not None else Path(settings.out_dir) / "read_models"
    emitter.emit_start(EXPORT_STAGE, message=f"Exporting read-models to {target}...")
    written: dict[str, Path] = {}
    try:
        target.mkdir(parents=True, exist_ok=True)
        for kind in ("time_buckets", "deciles"):
            payload = _partition_payload(store, kind)
            if payload:
                path = target / f"{kind}.json"
                _write_json(path, payload)
                written[path.name] = path

        for period in ALL_PERIODS:
            for mode in modes:
                scores = store.load_reachability(period, mode)
                if not scores:
                    continue
                path = target / f"reachability-{period.value}-{mode.value}.json"
                _write_json(path, [s.model_dump() for s in scores])
                written[path.name] = path
    except Exception as exc:
        emitter.emit_error(EXPORT_STAGE, exc, "Failed to export read-models")
        raise

    log_event("read_models_exported", out_dir=str(target), files=sorted(written))
    emitter.emit_complete(EXPORT_STAGE, f"Exported {len(written)} files", {"files": sorted(written)})
    return written
