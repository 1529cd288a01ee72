from __future__ import annotations

import socket
import time
from typing import Callable, Iterable

from .runtime import WorkloadDescriptor, WorkloadState


def port_listening(port: int, host: str = "127.0.0.1", timeout_s: float = 1.0) -> bool:
    """True if something accepts TCP connections on host:port."""
    try:
        with socket.create_connection((host, int(port)), timeout=timeout_s):
            return True
    except OSError:
        return False


def wait_until(check: Callable[[], bool], timeout_s: float, interval_s: float) -> bool:
    """Poll ``check`` until it returns True or timeout elapses.

    The check always runs at least once, so a zero timeout is a single probe.
    """
    deadline = time.monotonic() + max(0.0, timeout_s)
    while True:
        if check():
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        time.sleep(min(interval_s, remaining) if interval_s > 0 else remaining)


def workload_ready(w: WorkloadDescriptor) -> bool:
    # Without a healthcheck, running is as good as it gets.
    if w.health:
        return w.health == "healthy"
    return w.state == WorkloadState.RUNNING


def owners_of_ports(workloads: Iterable[WorkloadDescriptor], ports: Iterable[int]) -> list[str]:
    """Names of workloads that publish any of the given host ports, in port order."""
    wanted = list(ports)
    names: list[str] = []
    seen: set[str] = set()
    listing = list(workloads)
    for port in wanted:
        for w in listing:
            if port in w.observed_ports or port in w.configured_ports:
                if w.name not in seen:
                    seen.add(w.name)
                    names.append(w.name)
                break
    return names


def wait_for_workloads(runtime, ports: Iterable[int], timeout_s: float, interval_s: float, events) -> bool:
    """Wait until every workload publishing one of ``ports`` is ready.

    A timeout is logged and reported as False; callers proceed anyway.
    """
    names = owners_of_ports(runtime.list_workloads(), ports)
    if not names:
        events.info(f"No containers found for ports, waiting {interval_s}s and proceeding...")
        time.sleep(interval_s)
        return True

    events.info(f"Found {len(names)} containers to monitor: {' '.join(names)}")
    start = time.monotonic()

    def _all_ready() -> bool:
        status: list[str] = []
        ok = True
        for name in names:
            w = runtime.get(name)
            ready = w is not None and workload_ready(w)
            ok = ok and ready
            status.append(f"{name}:{'OK' if ready else 'WAIT'}")
        elapsed = int(time.monotonic() - start)
        if ok:
            events.info(f"All containers healthy: {' '.join(status)}")
        else:
            events.info(f"Status: {' '.join(status)} ({elapsed}s/{int(timeout_s)}s)")
        return ok

    if wait_until(_all_ready, timeout_s, interval_s):
        return True
    events.warn("Timeout waiting for containers, proceeding anyway...")
    return False
