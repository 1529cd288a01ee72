from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

from .db import EventLog
from .health import port_listening
from .models import RouteSnapshot, loopback_backend
from .serve import ServeClient
from .settings import Settings

APPLIED = "applied"
SKIPPED = "skipped"
FAILED = "failed"
MISSING = "missing"


@dataclass
class RestoreReport:
    requested: list[int] = field(default_factory=list)
    outcome: dict[int, str] = field(default_factory=dict)  # port -> final bucket

    def _ports(self, bucket: str) -> list[int]:
        return sorted(p for p, b in self.outcome.items() if b == bucket)

    @property
    def applied(self) -> list[int]:
        return self._ports(APPLIED)

    @property
    def skipped(self) -> list[int]:
        return self._ports(SKIPPED)

    @property
    def failed(self) -> list[int]:
        return self._ports(FAILED)

    @property
    def missing(self) -> list[int]:
        return self._ports(MISSING)

    def counts(self) -> dict[str, int]:
        return {
            "applied": len(self.applied),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
            "missing": len(self.missing),
        }

    def to_dict(self) -> dict[str, object]:
        return {
            "requested": list(self.requested),
            **self.counts(),
            "applied_ports": self.applied,
            "skipped_ports": self.skipped,
            "failed_ports": self.failed,
            "missing_ports": self.missing,
        }

    def summary(self) -> str:
        c = self.counts()
        text = (
            f"Restored {c['applied']} of {len(self.requested)} ports "
            f"({c['skipped']} skipped, {c['failed']} failed, {c['missing']} missing)"
        )
        if self.missing:
            text += f"; missing: {' '.join(map(str, self.missing))}"
        return text


class RouteRestorer:
    """Replays a RouteSnapshot against the proxy, verifying each route.

    Three passes: a first pass over every port, a deferred pass over whatever
    was skipped or failed, and a final verification over everything. A port's
    bucket always reflects its most recent attempt.
    """

    def __init__(
        self,
        settings: Settings,
        events: EventLog,
        listening: Callable[[int], bool] | None = None,
        deploys_pending: Callable[[], bool] | None = None,
    ) -> None:
        self.settings = settings
        self.events = events
        self.listening = listening or (
            lambda port: port_listening(port, settings.listen_host, settings.listen_timeout_s)
        )
        self.deploys_pending = deploys_pending or (lambda: False)

    def _apply(self, serve: ServeClient, port: int) -> bool:
        """Apply and verify one route, retrying with a short backoff."""
        attempts = max(1, self.settings.restore_attempts)
        backend = loopback_backend(port, self.settings.listen_host)
        for attempt in range(1, attempts + 1):
            if serve.add_route(port, backend):
                active = serve.active_ports()
                if active is not None and port in active:
                    return True
            if attempt < attempts:
                time.sleep(min(2.0, self.settings.restore_backoff_s * attempt))
        return False

    def _restore_port(self, serve: ServeClient, port: int) -> str:
        if not self.listening(port):
            self.events.info(f"  Port {port}: nothing listening locally, skipping", port=port)
            return SKIPPED
        if self._apply(serve, port):
            self.events.info(f"  Configured port {port}", port=port)
            return APPLIED
        self.events.warn(f"Failed to configure port {port}", port=port)
        return FAILED

    def _pass(self, serve: ServeClient, ports: list[int], report: RestoreReport) -> None:
        for port in sorted(ports):
            report.outcome[port] = self._restore_port(serve, port)

    def restore(self, serve: ServeClient, snapshot: RouteSnapshot) -> RestoreReport:
        ports = snapshot.ports
        report = RestoreReport(requested=list(ports))
        if not ports:
            self.events.warn("No ports found in snapshot - skipping restore")
            return report

        self.events.info(f"==> Restoring Tailscale Serve configuration for {len(ports)} ports")
        self._pass(serve, ports, report)
        self.events.info(report.summary())

        retry = report.skipped + report.failed
        if retry:
            wait = self.settings.deferred_wait_s
            self.events.info(f"==> {len(retry)} port(s) pending, retrying in {wait}s: {' '.join(map(str, retry))}")
            time.sleep(wait)
            if self.deploys_pending():
                self.events.info(f"Apps still deploying, waiting another {self.settings.deferred_extra_wait_s}s...")
                time.sleep(self.settings.deferred_extra_wait_s)
            self._pass(serve, retry, report)
            self.events.info(report.summary())

        self.verify(serve, report)
        self.events.info(f"==> {report.summary()}")
        return report

    def verify(self, serve: ServeClient, report: RestoreReport) -> RestoreReport:
        time.sleep(self.settings.verify_delay_s)
        self.events.info("==> Verifying Tailscale Serve status")
        active = serve.active_ports()
        if active is None:
            self.events.warn("Could not verify Tailscale Serve status")
            active = set()

        for port in report.requested:
            previous = report.outcome.get(port)
            if port in active:
                report.outcome[port] = APPLIED
            elif self.listening(port):
                report.outcome[port] = APPLIED if self._apply(serve, port) else FAILED
            elif previous == SKIPPED:
                # Never had a listener: the workload is down, nothing to proxy to.
                pass
            else:
                report.outcome[port] = MISSING
                self.events.warn(f"Port {port} is not served and nothing listens on it", port=port)
        self.events.info(f"Active serves: {len(active)} ports")
        return report
