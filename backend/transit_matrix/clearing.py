from __future__ import annotations

from dataclasses import dataclass

from .events import ProgressEmitter
from .logging_utils import log_event
from .progress_ledger import ProgressLedger
from .record_store import RecordStore, RouteFilter

STAGE = "clear_data"


@dataclass(frozen=True)
class ClearOptions:
    """What to clear. With every flag unset, everything is cleared."""

    routes: bool = False
    zones: bool = False
    metadata: bool = False
    partitions: bool = False
    reachability: bool = False

    @property
    def clear_all(self) -> bool:
        return not (self.routes or self.zones or self.metadata or self.partitions or self.reachability)

    def describe(self) -> str:
        if self.clear_all:
            return "all"
        names = [
            name
            for name, flag in (
                ("routes", self.routes),
                ("zones", self.zones),
                ("metadata", self.metadata),
                ("partitions", self.partitions),
                ("reachability", self.reachability),
            )
            if flag
        ]
        return ", ".join(names)


def reset_routes(
    store: RecordStore,
    route_filter: RouteFilter | None = None,
    *,
    emitter: ProgressEmitter | None = None,
) -> int:
    """Return matching records to PENDING with every outcome field cleared.

    Progress ledger entries are dropped too; they only ever grow and would
    otherwise overstate completion after the reset.
    """
    emitter = emitter or ProgressEmitter()
    emitter.emit_start(STAGE, message="Resetting routes to PENDING...")
    try:
        reset = store.reset_to_pending(route_filter)
        ledger_entries = ProgressLedger(store).clear()
    except Exception as exc:
        emitter.emit_error(STAGE, exc, "Failed to reset routes")
        raise
    log_event("routes_reset", reset=reset, ledger_entries_cleared=ledger_entries)
    emitter.emit_complete(STAGE, f"Reset {reset} routes", {"routes": reset})
    return reset


def clear_data(
    store: RecordStore,
    options: ClearOptions | None = None,
    *,
    emitter: ProgressEmitter | None = None,
) -> dict[str, int]:
    options = options or ClearOptions()
    emitter = emitter or ProgressEmitter()
    emitter.emit_start(STAGE, message=f"Clearing {options.describe()}...")

    cleared: dict[str, int] = {}
    try:
        if options.clear_all:
            cleared["routes"] = store.delete_routes()
            cleared["zones"] = store.delete_zones()
            cleared["metadata"] = store.delete_metadata()
            cleared["partitions"] = store.delete_partitions()
            cleared["reachability"] = store.delete_reachability()
        else:
            if options.zones:
                # Routes reference zones, so they go first.
                cleared["routes"] = store.delete_routes()
                cleared["zones"] = store.delete_zones()
            elif options.routes:
                cleared["routes"] = store.reset_to_pending()
                ProgressLedger(store).clear()
            if options.metadata:
                cleared["metadata"] = store.delete_metadata()
            if options.partitions:
                cleared["partitions"] = store.delete_partitions()
            if options.reachability:
                cleared["reachability"] = store.delete_reachability()
        store.vacuum()
    except Exception as exc:
        emitter.emit_error(STAGE, exc, "Failed to clear data")
        raise

    log_event("data_cleared", scope=options.describe(), **cleared)
    emitter.emit_complete(STAGE, "Cleared data successfully", dict(cleared))
    return cleared
