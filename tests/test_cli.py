import json

import pytest

import cli
from tsp.controlplane import DockerControl
from tsp.db import EventLog
from tsp.models import RouteEntry, RouteSnapshot
from tsp.pipeline import Orchestrator
from tsp.restore import RouteRestorer
from tsp.settings import Settings
from tsp.snapshot import SnapshotStore


@pytest.fixture
def factory(runtime):
    listeners = {8080}

    def _make(s, e):
        return Orchestrator(
            s,
            e,
            runtime=runtime,
            control=DockerControl(runtime, s, e),
            restorer=RouteRestorer(s, e, listening=lambda p: p in listeners),
        )

    return _make


def _errors(settings):
    return EventLog(settings.db_path, None, echo=False).latest(10, level="ERROR")


def test_missing_state_dir_exits_1(capsys):
    assert cli.main(["backup"], base=Settings(state_dir="")) == 1
    assert "TSP_STATE_DIR" in capsys.readouterr().err


def test_restore_without_backup_exits_1(settings, runtime, factory, clock):
    runtime.add_tailscale()
    assert cli.main(["--quiet", "restore"], base=settings, orchestrator_factory=factory) == 1
    assert "No ports found in backup file" in _errors(settings)[0]["message"]


def test_restore_prints_report(settings, events, runtime, factory, clock, capsys):
    runtime.add_tailscale()
    SnapshotStore(settings.serve_json, events).persist(
        RouteSnapshot(routes={8080: RouteEntry(backend="http://127.0.0.1:8080")})
    )
    capsys.readouterr()

    assert cli.main(["--quiet", "restore"], base=settings, orchestrator_factory=factory) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["applied_ports"] == [8080]
    assert out["failed"] == 0


def test_unknown_container_exits_1(settings, runtime, factory, clock):
    runtime.add_tailscale()
    assert cli.main(["--quiet", "--container", "nope", "backup"], base=settings, orchestrator_factory=factory) == 1
    assert "Could not find a running Tailscale container" in _errors(settings)[0]["message"]


def test_backup_with_nothing_served_still_succeeds(settings, runtime, factory, clock):
    runtime.add_tailscale()
    assert cli.main(["--quiet", "backup"], base=settings, orchestrator_factory=factory) == 0
    assert _errors(settings) == []


def test_events_command(settings, events, capsys):
    events.warn("Failed to configure port 9000", port=9000)
    capsys.readouterr()

    assert cli.main(["--quiet", "events", "--level", "WARN"], base=settings) == 0
    rows = json.loads(capsys.readouterr().out)
    assert rows[0]["port"] == 9000


def test_update_flags_override_settings(settings):
    args = cli.build_parser().parse_args(
        ["--container", "ts", "update", "--no-watchtower", "--no-app-updates", "--stabilization-wait", "5"]
    )
    s = cli.resolve_settings(args, settings)
    assert s.ts_container == "ts"
    assert s.enable_watchtower is False
    assert s.enable_app_updates is False
    assert s.enable_serve is True
    assert s.stabilization_wait_s == 5


def test_startup_timeout_flag(settings):
    args = cli.build_parser().parse_args(["startup", "--container-timeout", "60"])
    assert cli.resolve_settings(args, settings).container_timeout_s == 60


def test_stdout_holds_only_json_when_not_quiet(settings, events, runtime, factory, clock, capsys):
    runtime.add_tailscale()
    SnapshotStore(settings.serve_json, events).persist(
        RouteSnapshot(routes={8080: RouteEntry(backend="http://127.0.0.1:8080")})
    )
    capsys.readouterr()

    assert cli.main(["restore"], base=settings, orchestrator_factory=factory) == 0
    captured = capsys.readouterr()
    assert json.loads(captured.out)["applied_ports"] == [8080]
    assert "Configured port 8080" in captured.err
