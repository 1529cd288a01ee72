from __future__ import annotations

import time

from .db import EventLog
from .docker_ops import DockerRuntime
from .errors import ServiceNotFound
from .health import wait_until
from .runtime import ServiceHandle, WorkloadState
from .serve import ServeClient
from .settings import Settings


class ServiceLocator:
    """Finds the running proxy container.

    Detection order, cheapest first:
      1) explicitly configured container name
      2) image match (``tailscale/tailscale``)
      3) container name match
      4) exec probe: does the container have the binary
    """

    def __init__(self, runtime: DockerRuntime, settings: Settings, events: EventLog) -> None:
        self.runtime = runtime
        self.settings = settings
        self.events = events

    def find(self) -> ServiceHandle | None:
        if self.settings.ts_container:
            w = self.runtime.get(self.settings.ts_container)
            if w and w.state == WorkloadState.RUNNING:
                return ServiceHandle(name=w.name, id=w.id)
            return None

        running = [w for w in self.runtime.running() if w.state == WorkloadState.RUNNING]

        image_match = self.settings.ts_image_match.lower()
        for w in running:
            if image_match and image_match in w.image.lower():
                return ServiceHandle(name=w.name, id=w.id)

        name_match = self.settings.ts_name_match.lower()
        for w in running:
            if name_match and name_match in w.name.lower():
                return ServiceHandle(name=w.name, id=w.id)

        for w in running:
            code, _ = self.runtime.exec(w.name, ["which", self.settings.ts_binary])
            if code == 0:
                return ServiceHandle(name=w.name, id=w.id)
        return None

    def locate(self, timeout_s: float | None = None) -> ServiceHandle:
        timeout_s = self.settings.locate_timeout_s if timeout_s is None else timeout_s
        if self.settings.ts_container:
            self.events.info(f"Using manually specified container: {self.settings.ts_container}")
        else:
            self.events.info("Auto-detecting Tailscale container...")

        found: list[ServiceHandle] = []

        def _attempt() -> bool:
            h = self.find()
            if h:
                found.append(h)
            return h is not None

        if not wait_until(_attempt, timeout_s, self.settings.locate_interval_s):
            raise ServiceNotFound(
                f"Could not find a running Tailscale container within {int(timeout_s)}s. "
                "Set TSP_TS_CONTAINER manually."
            )
        handle = found[-1]
        self.events.info(f"Detected Tailscale container: {handle.name}", workload=handle.name)
        return handle

    def relocate(self, previous: ServiceHandle | None, timeout_s: float | None = None) -> ServiceHandle:
        """Resolve afresh after anything that may have recreated the container."""
        self.events.info("Re-detecting Tailscale container after update...")
        handle = self.locate(timeout_s)
        if handle.changed_from(previous):
            self.events.info(f"Container changed: {previous.name} ({previous.id[:12]}) -> {handle.name} ({handle.id[:12]})")
        else:
            self.events.info(f"Container unchanged: {handle.name}")
        return handle

    def ready(self, handle: ServiceHandle, timeout_s: float | None = None) -> bool:
        timeout_s = self.settings.ready_timeout_s if timeout_s is None else timeout_s
        client = ServeClient(self.runtime, handle, self.settings.ts_binary)
        self.events.info(f"Waiting for Tailscale to be ready (timeout: {int(timeout_s)}s)...")
        start = time.monotonic()
        if wait_until(client.is_ready, timeout_s, self.settings.ready_interval_s):
            self.events.info(f"Tailscale is ready ({int(time.monotonic() - start)}s)")
            return True
        self.events.warn(f"Tailscale did not become ready within {int(timeout_s)}s")
        return False
