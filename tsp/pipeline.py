from __future__ import annotations

import os
import time
from typing import Any

from .controlplane import ControlPlane, probe_control_plane
from .db import EventLog
from .docker_ops import DockerRuntime
from .errors import NothingToRestore, ServiceNotFound, ServiceNotReady, StateDirMissing
from .health import wait_for_workloads
from .locator import ServiceLocator
from .models import RouteSnapshot
from .remediation import Remediator
from .restore import RestoreReport, RouteRestorer
from .runtime import ServiceHandle, WorkloadState
from .serve import ServeClient
from .settings import Settings
from .snapshot import SnapshotStore
from .updates import UpdateDriver, UpdateResult


def ensure_state_dir(settings: Settings) -> str:
    if not settings.state_dir:
        raise StateDirMissing("TSP_STATE_DIR is not set. Example: TSP_STATE_DIR=/opt/tailscale-serve-preserve")
    os.makedirs(settings.state_dir, exist_ok=True)
    return settings.state_dir


class Orchestrator:
    """Wires the components together for each command.

    The proxy handle is never stored here: each flow resolves it, hands it to
    the steps that need it and resolves it again after anything that can
    recreate containers.
    """

    def __init__(
        self,
        settings: Settings,
        events: EventLog,
        runtime: DockerRuntime | None = None,
        control: ControlPlane | None = None,
        restorer: RouteRestorer | None = None,
    ) -> None:
        self.settings = settings
        self.events = events
        self.runtime = runtime or DockerRuntime(init_markers=settings.init_markers)
        self._control = control
        self._restorer = restorer
        self.locator = ServiceLocator(self.runtime, settings, events)
        self.store = SnapshotStore(settings.serve_json, events, keep=settings.snapshot_keep)

    @property
    def control(self) -> ControlPlane:
        if self._control is None:
            self._control = probe_control_plane(self.runtime, self.settings, self.events)
        return self._control

    @property
    def remediator(self) -> Remediator:
        return Remediator(self.control, self.settings, self.events)

    @property
    def restorer(self) -> RouteRestorer:
        if self._restorer is None:
            control = self.control
            self._restorer = RouteRestorer(
                self.settings, self.events, deploys_pending=lambda: bool(control.deploying_units())
            )
        return self._restorer

    def serve_client(self, handle: ServiceHandle) -> ServeClient:
        return ServeClient(self.runtime, handle, self.settings.ts_binary)

    def _require_running(self, handle: ServiceHandle) -> None:
        w = self.runtime.get(handle.name)
        if w is None or w.state != WorkloadState.RUNNING:
            raise ServiceNotFound(f"Container '{handle.name}' is not running")

    def _connect(self, previous: ServiceHandle | None = None, timeout_s: float | None = None) -> ServeClient:
        handle = self.locator.relocate(previous, timeout_s) if previous else self.locator.locate(timeout_s)
        self._require_running(handle)
        if not self.locator.ready(handle):
            raise ServiceNotReady(f"Tailscale in '{handle.name}' did not become ready")
        return self.serve_client(handle)

    def _report(self, report: RestoreReport) -> RestoreReport:
        if report.failed or report.missing:
            self.events.warn(report.summary())
        else:
            self.events.info(report.summary())
        return report

    def update(self) -> RestoreReport | None:
        s = self.settings
        self.events.info("==> Starting update with Tailscale Serve preservation")
        control = self.control

        serve: ServeClient | None = None
        if s.enable_serve:
            handle = self.locator.locate()
            self._require_running(handle)
            serve = self.serve_client(handle)
            if serve.version() is None:
                raise ServiceNotReady(f"Cannot communicate with Tailscale in '{handle.name}'")
            self.store.backup(serve)
            self.events.info("==> Stopping Tailscale Serve listeners")
            if not serve.reset():
                self.events.warn("Failed to reset serve (may not be configured)")

        result: UpdateResult = UpdateDriver(control, self.remediator, s, self.events).run()
        self.remediator.fix_restart_policies()

        report: RestoreReport | None = None
        if serve is not None:
            serve = self._connect(previous=serve.handle)
            self.remediator.run_all()
            report = self._restore_from_store(serve)
        else:
            self.remediator.run_all()

        if result.failed:
            self.events.warn(f"Apps that failed to update: {' '.join(result.failed)}")
        self.events.info("==> Update completed")
        return report

    def startup(self) -> RestoreReport:
        s = self.settings
        self.events.info("==> Tailscale Serve startup restore")
        self.events.info(f"Waiting {s.startup_initial_delay_s}s for Docker to be fully ready...")
        time.sleep(s.startup_initial_delay_s)

        remediator = self.remediator
        serve = self._connect(timeout_s=s.container_timeout_s)
        snapshot = self._load_required()
        self.events.info(f"Found ports in backup: {' '.join(map(str, snapshot.ports))}")

        wait_for_workloads(self.runtime, snapshot.ports, s.container_timeout_s, s.check_interval_s, self.events)
        remediator.run_all(1)

        self.events.info(f"Waiting {s.startup_final_delay_s}s for final stabilization...")
        time.sleep(s.startup_final_delay_s)
        report = self._report(self.restorer.restore(serve, snapshot))
        self.events.info("==> Startup restore completed")
        return report

    def backup(self) -> bool:
        serve = self._connect()
        return self.store.backup(serve) is not None

    def restore(self) -> RestoreReport:
        serve = self._connect()
        snapshot = self._load_required()
        return self._report(self.restorer.restore(serve, snapshot))

    def status(self) -> dict[str, Any]:
        serve = self._connect()
        live = serve.status()
        saved = self.store.load()
        return {
            "container": serve.handle.name,
            "active_ports": live.active_ports() if live else None,
            "snapshot_ports": saved.ports if saved else [],
            "snapshot_captured_at": saved.captured_at if saved else None,
            "history": [p.name for p in self.store.history()],
        }

    def _load_required(self) -> RouteSnapshot:
        snapshot = self.store.load()
        if snapshot is None or not snapshot.ports:
            raise NothingToRestore(f"No ports found in backup file: {self.store.path}")
        return snapshot

    def _restore_from_store(self, serve: ServeClient) -> RestoreReport | None:
        snapshot = self.store.load()
        if snapshot is None or not snapshot.ports:
            self.events.warn(f"No JSON backup found at {self.store.path} - skipping restore")
            return None
        return self._report(self.restorer.restore(serve, snapshot))
