from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from scripts.route_matrix import build_parser, load_zones, main, run_command
from transit_matrix.settings import settings


class FakeOTP:
    def __init__(self) -> None:
        self.calls = 0

    async def plan(self, **kwargs: Any) -> dict[str, Any]:  # noqa: ARG002
        self.calls += 1
        return {
            "data": {
                "plan": {
                    "itineraries": [
                        {"duration": 700 + 100 * self.calls, "numberOfTransfers": 1, "walkDistance": 90.0, "legs": []}
                    ]
                }
            }
        }

    async def aclose(self) -> None:
        return None


def _zones_file(tmp_path: Path) -> Path:
    path = tmp_path / "zones.json"
    path.write_text(
        json.dumps(
            {
                "zones": [
                    {"id": "00100", "group_key": "helsinki", "lat": 60.168, "lon": 24.931},
                    {"id": "00120", "group_key": "helsinki", "lat": 60.163, "lon": 24.940},
                    {
                        "id": "02100",
                        "group_key": "espoo",
                        "lat": 60.176,
                        "lon": 24.807,
                        "routing_lat": 60.1755,
                        "routing_lon": 24.8071,
                    },
                    {"id": "02130", "group_key": "espoo", "lat": 60.183, "lon": 24.830},
                ]
            }
        ),
        encoding="utf-8",
    )
    return path


def test_parser_defaults() -> None:
    args = build_parser().parse_args(["routes"])
    assert args.period is None
    assert args.mode == "WALK"
    assert not args.resume
    assert not args.retry_failed
    assert args.limit is None
    assert args.zones is None

    reach = build_parser().parse_args(["reachability"])
    assert reach.period == "MORNING"


def test_load_zones_accepts_list_or_object(tmp_path: Path) -> None:
    zones = load_zones(str(_zones_file(tmp_path)))
    assert [z.id for z in zones] == ["00100", "00120", "02100", "02130"]
    assert zones[2].query_point == (60.1755, 24.8071)

    plain = tmp_path / "plain.json"
    plain.write_text(json.dumps([{"id": "x", "group_key": "g", "lat": 60.0, "lon": 25.0}]), encoding="utf-8")
    assert len(load_zones(str(plain))) == 1


def test_cli_pipeline_end_to_end(tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.setattr(settings, "out_dir", str(tmp_path / "out"))
    monkeypatch.setattr(settings, "use_local_otp", True)
    db = str(tmp_path / "cli.db")
    parser = build_parser()

    assert main(["--db", db, "--quiet", "seed", "--zones-file", str(_zones_file(tmp_path)), "--period", "MORNING"]) == 0
    seeded = json.loads(capsys.readouterr().out)
    assert seeded == {"zones": 4, "routes_created": 12}

    fake = FakeOTP()
    summary = run_command(parser.parse_args(["--db", db, "--quiet", "routes", "--period", "MORNING"]), client=fake)
    # Only pairs inside a city are routed: 2 + 2.
    assert summary["processed"] == 4
    assert summary["ok"] == 4
    assert fake.calls == 4

    status = run_command(parser.parse_args(["--db", db, "--quiet", "status"]))
    assert status["zones"] == 4
    assert status["routes"]["ok"] == 4
    assert status["routes"]["pending"] == 8
    assert status["last_run"]["processed"] == 4

    buckets = run_command(parser.parse_args(["--db", db, "--quiet", "time-buckets"]))
    assert len(buckets["partitions"]) == 6
    deciles = run_command(parser.parse_args(["--db", db, "--quiet", "deciles", "--period", "MORNING"]))
    assert len(deciles["partitions"]) == 10
    reach = run_command(parser.parse_args(["--db", db, "--quiet", "reachability"]))
    assert reach["zones"] == 4

    export_dir = tmp_path / "export"
    exported = run_command(parser.parse_args(["--db", db, "--quiet", "export", "--out-dir", str(export_dir)]))
    assert set(exported["files"]) == {"time_buckets.json", "deciles.json", "reachability-MORNING-WALK.json"}

    reset = run_command(parser.parse_args(["--db", db, "--quiet", "reset", "--status", "OK"]))
    assert reset == {"reset": 4}

    wiped = run_command(parser.parse_args(["--db", db, "--quiet", "reset", "--all"]))
    assert wiped["deleted"]["zones"] == 4
