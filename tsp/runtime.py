from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class WorkloadState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    RESTARTING = "restarting"
    EXITED_CLEAN = "exited-clean"
    EXITED_ERROR = "exited-error"
    DEPLOYING = "deploying"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


_APP_STATES = {
    "RUNNING": WorkloadState.RUNNING,
    "DEPLOYING": WorkloadState.DEPLOYING,
    "STOPPED": WorkloadState.STOPPED,
    "STOPPING": WorkloadState.STOPPED,
    "CRASHED": WorkloadState.EXITED_ERROR,
}


def container_state(status: str | None, exit_code: int | None = 0) -> WorkloadState:
    """Map a Docker ``State.Status`` (plus exit code) onto WorkloadState."""
    status = (status or "").lower()
    if status == "running":
        return WorkloadState.RUNNING
    if status == "created":
        return WorkloadState.CREATED
    if status == "restarting":
        return WorkloadState.RESTARTING
    if status == "exited":
        return WorkloadState.EXITED_CLEAN if not exit_code else WorkloadState.EXITED_ERROR
    if status == "dead":
        return WorkloadState.EXITED_ERROR
    return WorkloadState.UNKNOWN


def app_state(state: str | None) -> WorkloadState:
    return _APP_STATES.get((state or "").upper(), WorkloadState.UNKNOWN)


@dataclass(frozen=True)
class WorkloadDescriptor:
    name: str
    state: WorkloadState
    image: str = ""
    id: str = ""
    is_init: bool = False
    restart_policy: str = ""
    configured_ports: frozenset[int] = frozenset()
    observed_ports: frozenset[int] = frozenset()
    network_mode: str = ""
    health: str | None = None
    labels: dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    @property
    def shares_network(self) -> bool:
        # "container:<id>" joins another workload's namespace and "host" uses the host's;
        # neither gets bindings of its own.
        if self.network_mode == "host":
            return True
        return self.network_mode.startswith("container:") or self.network_mode.startswith("service:")

    @property
    def missing_ports(self) -> frozenset[int]:
        return self.configured_ports - self.observed_ports

    @property
    def inconsistent(self) -> bool:
        return bool(self.configured_ports) and bool(self.missing_ports)


@dataclass(frozen=True)
class ServiceHandle:
    """The running proxy instance that serve commands are executed in."""

    name: str
    id: str = ""

    def changed_from(self, other: "ServiceHandle | None") -> bool:
        if other is None:
            return False
        return (self.name, self.id) != (other.name, other.id)
