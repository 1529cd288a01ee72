from __future__ import annotations

import time

from .controlplane import ControlPlane
from .db import EventLog
from .runtime import WorkloadDescriptor, WorkloadState
from .settings import Settings


class Remediator:
    """Idempotent fix-up passes over the workload set.

    Every pass re-reads live state, acts only on what is broken right now and
    returns the number of corrective actions it took. A failure on one
    workload is logged and the pass moves on to the next.
    """

    def __init__(self, control: ControlPlane, settings: Settings, events: EventLog) -> None:
        self.control = control
        self.runtime = control.runtime
        self.settings = settings
        self.events = events

    def is_excluded(self, name: str) -> bool:
        lowered = name.lower()
        return any(x.lower() in lowered for x in self.settings.exclude if x)

    def _workloads(self) -> list[WorkloadDescriptor]:
        return self.runtime.list_workloads(all=True)

    def fix_restart_policies(self, unit: str | None = None) -> int:
        """Init containers must never restart, or they block their siblings forever."""
        scope = f" for {unit}" if unit else ""
        self.events.info(f"==> Fixing init container restart policies{scope}...")
        inits = [w for w in self._workloads() if w.is_init]
        if unit is not None:
            inits = [w for w in inits if self.control.unit_of(w) == unit]
        if not inits:
            self.events.info("No init containers found")
            return 0

        fixed = 0
        for w in inits:
            if w.restart_policy in ("no", ""):
                continue
            if self.runtime.set_restart_policy(w.name, "no"):
                self.events.info(f"  Fixed {w.name}: {w.restart_policy} -> no", workload=w.name)
                fixed += 1
            else:
                self.events.warn(f"  Failed to fix restart policy of {w.name}", workload=w.name)

        if fixed:
            self.events.info(f"Fixed restart policy on {fixed} init container(s)")
        else:
            self.events.info("All init containers have correct restart policy")
        return fixed

    def recover_crashed(self) -> int:
        # Clean exits are one-shot tasks that finished; only error exits are restarted.
        crashed = [
            w for w in self._workloads() if w.state == WorkloadState.EXITED_ERROR and not self.is_excluded(w.name)
        ]
        actions = 0
        for w in crashed:
            self.events.info(f"Restarting crashed container {w.name}", workload=w.name)
            if self.runtime.restart(w.name):
                actions += 1
            else:
                self.events.warn(f"Failed to restart {w.name}", workload=w.name)
        return actions

    def start_stalled(self) -> int:
        stalled = [w for w in self._workloads() if w.state == WorkloadState.CREATED]
        actions = 0
        for w in stalled:
            self.events.info(f"Starting container stuck in created: {w.name}", workload=w.name)
            if self.runtime.start(w.name):
                actions += 1
            else:
                self.events.warn(f"Failed to start {w.name}", workload=w.name)
        return actions

    def _restart_units(self, units: set[str]) -> int:
        actions = 0
        for unit in sorted(units):
            self.events.info(f"Restarting app {unit}", workload=unit)
            if self.control.restart_unit(unit):
                actions += 1
            else:
                self.events.warn(f"Failed to restart app {unit}", workload=unit)
        if units:
            self.events.info(f"Waiting {self.settings.settle_s}s for restarted apps to settle...")
            time.sleep(self.settings.settle_s)
        return actions

    def _restart_owner_or_self(self, w: WorkloadDescriptor, units: set[str]) -> int:
        unit = self.control.unit_of(w) if self.control.manages_units else None
        if unit:
            units.add(unit)
            return 0
        self.events.info(f"Restarting {w.name}", workload=w.name)
        if self.runtime.restart(w.name):
            return 1
        self.events.warn(f"Failed to restart {w.name}", workload=w.name)
        return 0

    def break_restart_loops(self) -> int:
        """Restart the owning app of every looping container, once per app."""
        looping = [w for w in self._workloads() if w.state == WorkloadState.RESTARTING and not self.is_excluded(w.name)]
        if not looping:
            return 0
        self.events.info(f"Found {len(looping)} container(s) in a restart loop: {' '.join(w.name for w in looping)}")
        units: set[str] = set()
        actions = 0
        for w in looping:
            actions += self._restart_owner_or_self(w, units)
        return actions + self._restart_units(units)

    def verify_bindings(self) -> int:
        """Restart running workloads whose configured host ports are not bound."""
        units: set[str] = set()
        actions = 0
        for w in self._workloads():
            if w.state != WorkloadState.RUNNING or self.is_excluded(w.name):
                continue
            if w.shares_network or not w.configured_ports:
                continue
            if not w.missing_ports:
                continue
            missing = " ".join(map(str, sorted(w.missing_ports)))
            self.events.warn(f"{w.name} is missing port binding(s): {missing}", workload=w.name)
            actions += self._restart_owner_or_self(w, units)
        return actions + self._restart_units(units)

    def wait_for_deploys(self, budget_s: float | None = None) -> bool:
        """Poll until no app is deploying; start stalled containers if progress stops."""
        if not self.control.manages_units:
            return True
        budget_s = self.settings.deploy_budget_s if budget_s is None else budget_s
        start = time.monotonic()
        last: frozenset[str] = frozenset()
        since = start
        while True:
            deploying = frozenset(self.control.deploying_units())
            now = time.monotonic()
            if not deploying:
                return True
            if deploying != last:
                last, since = deploying, now
                self.events.info(f"Apps deploying: {' '.join(sorted(deploying))}")
            elif now - since >= self.settings.stuck_threshold_s:
                self.events.warn(
                    f"Apps stuck deploying for {int(now - since)}s: {' '.join(sorted(deploying))}; starting stalled containers"
                )
                self.start_stalled()
                since = now
            if now - start >= budget_s:
                self.events.warn(f"Apps still deploying after {int(budget_s)}s: {' '.join(sorted(deploying))}")
                return False
            time.sleep(max(1, self.settings.unit_check_interval_s))

    def run_pass(self) -> int:
        actions = self.fix_restart_policies()
        actions += self.start_stalled()
        actions += self.recover_crashed()
        self.wait_for_deploys()
        actions += self.break_restart_loops()
        actions += self.verify_bindings()
        return actions

    def run_all(self, passes: int | None = None) -> int:
        passes = self.settings.remediation_passes if passes is None else passes
        total = 0
        for i in range(max(1, passes)):
            self.events.info(f"==> Remediation pass {i + 1}/{max(1, passes)}")
            total += self.run_pass()
        self.events.info(f"Remediation finished: {total} corrective action(s)")
        return total
