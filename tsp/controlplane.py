"""Control-plane dialects.

The prober picks exactly one ``ControlPlane`` at startup; everything
downstream calls its methods and never branches on which dialect it got.

- ``DockerControl``: plain Docker host, workloads are containers only.
- ``AppManagerControl``: TrueNAS Scale apps driven through ``midclt``; each
  app owns a set of compose containers that are restarted as a unit.
"""

from __future__ import annotations

import json
import re
import shutil
import subprocess
from typing import Any, Sequence

from pydantic import ValidationError

from .db import EventLog
from .docker_ops import DockerRuntime
from .errors import NoControlPlane
from .models import AppInfo, app_list_adapter
from .runtime import WorkloadDescriptor, WorkloadState, app_state
from .settings import Settings

COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
APP_PREFIX = "ix-"

# Error bodies midclt prints with exit status 0, e.g. "[EFAULT] ..." or a traceback.
_ERROR_BODY_RE = re.compile(r"^\s*(\[E[A-Z]+\]|Traceback|Error:|Failed)", re.IGNORECASE)


class ControlPlane:
    name = "docker"
    manages_units = False

    def __init__(self, runtime: DockerRuntime, settings: Settings, events: EventLog) -> None:
        self.runtime = runtime
        self.settings = settings
        self.events = events

    def probe(self) -> bool:
        return self.runtime.ping()

    def list_units(self) -> list[AppInfo]:
        return []

    def unit_of(self, workload: WorkloadDescriptor) -> str | None:
        return None

    def unit_state(self, name: str) -> WorkloadState:
        return WorkloadState.UNKNOWN

    def deploying_units(self) -> list[str]:
        return [u.name for u in self.list_units() if app_state(u.state) == WorkloadState.DEPLOYING]

    def upgradable_units(self) -> list[str]:
        return [u.name for u in self.list_units() if u.upgrade_available]

    def start_unit(self, name: str) -> bool:
        return False

    def stop_unit(self, name: str) -> bool:
        return False

    def redeploy_unit(self, name: str) -> bool:
        return False

    def restart_unit(self, name: str) -> bool:
        return False

    def upgrade_unit(self, name: str) -> bool:
        return False


class DockerControl(ControlPlane):
    """Direct runtime control; there are no owning units to resolve to."""

    name = "docker"


class AppManagerControl(ControlPlane):
    name = "truenas-apps"
    manages_units = True

    def __init__(
        self,
        runtime: DockerRuntime,
        settings: Settings,
        events: EventLog,
        executable: str = "midclt",
    ) -> None:
        super().__init__(runtime, settings, events)
        self.executable = executable

    def _call(self, method: str, *args: str) -> Any | None:
        """``midclt call <method> <args>``; parsed JSON, or None on any failure.

        midclt can exit 0 while printing an error, so the body has to parse
        as JSON and must not be an error object.
        """
        cmd = [self.executable, "call", method, *args]
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.settings.midclt_timeout_s,
            )
        except subprocess.TimeoutExpired:
            self.events.warn(f"midclt call timed out after {self.settings.midclt_timeout_s}s: {method} {' '.join(args)}")
            return None
        except OSError as e:
            self.events.warn(f"midclt call failed: {method}: {e}")
            return None
        if proc.returncode != 0:
            return None
        return self._parse_body(proc.stdout)

    @staticmethod
    def _parse_body(body: str) -> Any | None:
        if not body or not body.strip() or _ERROR_BODY_RE.match(body):
            return None
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            return None
        if isinstance(data, dict) and ("error" in data or "errno" in data):
            return None
        return data

    def probe(self) -> bool:
        if not shutil.which(self.executable):
            return False
        data = self._call("app.query")
        if not isinstance(data, list):
            return False
        return self.runtime.ping()

    def list_units(self) -> list[AppInfo]:
        data = self._call("app.query")
        if data is None:
            return []
        try:
            return app_list_adapter.validate_python(data)
        except ValidationError as e:
            self.events.warn(f"Unexpected app.query answer: {e.error_count()} validation error(s)")
            return []

    def unit_state(self, name: str) -> WorkloadState:
        for u in self.list_units():
            if u.name == name:
                return app_state(u.state)
        return WorkloadState.UNKNOWN

    def unit_of(self, workload: WorkloadDescriptor) -> str | None:
        project = workload.labels.get(COMPOSE_PROJECT_LABEL, "")
        if project.startswith(APP_PREFIX):
            return project[len(APP_PREFIX) :]
        if not workload.name.startswith(APP_PREFIX):
            return None
        # App names may contain dashes; take the longest known app matching the prefix.
        matches = [u.name for u in self.list_units() if workload.name.startswith(f"{APP_PREFIX}{u.name}-")]
        return max(matches, key=len) if matches else None

    def _ok(self, method: str, *args: str) -> bool:
        return self._call(method, *args) is not None

    def start_unit(self, name: str) -> bool:
        return self._ok("app.start", name)

    def stop_unit(self, name: str) -> bool:
        return self._ok("app.stop", name)

    def redeploy_unit(self, name: str) -> bool:
        return self._ok("app.redeploy", name)

    def restart_unit(self, name: str) -> bool:
        # A redeploy recreates every container of the app together.
        return self.redeploy_unit(name)

    def upgrade_unit(self, name: str) -> bool:
        return self._ok("app.upgrade", name, json.dumps({"app_version": "latest"}))


def default_candidates(runtime: DockerRuntime, settings: Settings, events: EventLog) -> list[ControlPlane]:
    candidates: list[ControlPlane] = []
    if settings.enable_app_manager:
        candidates.append(AppManagerControl(runtime, settings, events))
    candidates.append(DockerControl(runtime, settings, events))
    return candidates


def probe_control_plane(
    runtime: DockerRuntime,
    settings: Settings,
    events: EventLog,
    candidates: Sequence[ControlPlane] | None = None,
) -> ControlPlane:
    """Return the first dialect in priority order that answers a read-only query."""
    for cp in candidates if candidates is not None else default_candidates(runtime, settings, events):
        if cp.probe():
            events.info(f"Using control plane: {cp.name}")
            return cp
        events.info(f"Control plane {cp.name} not available")
    raise NoControlPlane("No working control plane found (is Docker running?)")
