import pytest

from tsp.errors import ServiceNotFound
from tsp.locator import ServiceLocator
from tsp.runtime import ServiceHandle

from conftest import TS_CONTAINER


def _which_calls(runtime):
    return [c for c in runtime.calls if c[0] == "exec" and c[2][0] == "which"]


def test_image_match_wins_over_name_match(settings, events, runtime):
    runtime.add("tailscale-dashboard", image="nginx:latest")
    runtime.add("vpn", image="tailscale/tailscale:v1.76")

    handle = ServiceLocator(runtime, settings, events).find()

    assert handle.name == "vpn"
    assert _which_calls(runtime) == []


def test_name_match_when_no_image_matches(settings, events, runtime):
    runtime.add("web", image="nginx:latest")
    runtime.add("my-tailscale", image="ghcr.io/custom/ts:1")

    assert ServiceLocator(runtime, settings, events).find().name == "my-tailscale"


def test_exec_probe_is_last_resort(settings, events, runtime):
    runtime.add("web", image="nginx:latest")
    runtime.add("gateway", image="ghcr.io/custom/vpn:1")
    runtime.binaries["gateway"] = {"tailscale"}

    assert ServiceLocator(runtime, settings, events).find().name == "gateway"
    assert len(_which_calls(runtime)) == 2


def test_stopped_containers_are_ignored(settings, events, runtime):
    runtime.add_tailscale(status="exited")
    assert ServiceLocator(runtime, settings, events).find() is None


def test_manual_container(settings, events, runtime):
    runtime.add_tailscale()
    runtime.add("sidecar", image="busybox")
    s = settings.with_overrides(ts_container="sidecar")

    assert ServiceLocator(runtime, s, events).find().name == "sidecar"
    assert ServiceLocator(runtime, settings.with_overrides(ts_container="nope"), events).find() is None


def test_locate_times_out(settings, events, runtime, clock):
    with pytest.raises(ServiceNotFound):
        ServiceLocator(runtime, settings, events).locate()
    assert clock.sleeps == [5.0] * 6


def test_locate_waits_for_container_to_appear(settings, events, runtime, clock):
    def _appear(now, s):
        if now >= 1010 and TS_CONTAINER not in runtime.containers:
            runtime.add_tailscale()

    clock.hooks.append(_appear)
    handle = ServiceLocator(runtime, settings, events).locate()

    assert handle.name == TS_CONTAINER
    assert sum(clock.sleeps) == 10


def test_relocate_reports_recreated_container(settings, events, runtime, clock):
    runtime.add_tailscale()
    loc = ServiceLocator(runtime, settings, events)
    before = loc.locate()

    runtime.recreate(TS_CONTAINER)
    after = loc.relocate(before)

    assert after.name == before.name
    assert after.id != before.id
    assert any(e["message"].startswith("Container changed") for e in events.run_events())


def test_relocate_unchanged(settings, events, runtime, clock):
    runtime.add_tailscale()
    loc = ServiceLocator(runtime, settings, events)
    before = loc.locate()
    assert loc.relocate(before) == before
    assert any(e["message"].startswith("Container unchanged") for e in events.run_events())


def test_ready_polls_status(settings, events, runtime, clock):
    runtime.add_tailscale()
    runtime.ts_ready = False

    def _login(now, s):
        if now >= 1004:
            runtime.ts_ready = True

    clock.hooks.append(_login)
    assert ServiceLocator(runtime, settings, events).ready(ServiceHandle(TS_CONTAINER))
    assert sum(clock.sleeps) == 4


def test_ready_gives_up(settings, events, runtime, clock):
    runtime.add_tailscale()
    runtime.ts_ready = False
    assert not ServiceLocator(runtime, settings, events).ready(ServiceHandle(TS_CONTAINER), timeout_s=10)
    assert events.latest(1)[0]["level"] == "WARN"
