from __future__ import annotations

import time
from dataclasses import dataclass, field

from .controlplane import ControlPlane
from .db import EventLog
from .remediation import Remediator
from .runtime import WorkloadState
from .settings import Settings


@dataclass
class UpdateResult:
    image_update_ok: bool | None = None  # None: not run
    upgraded: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class UpdateDriver:
    """Runs the image-level and app-level updates, one app at a time."""

    def __init__(self, control: ControlPlane, remediator: Remediator, settings: Settings, events: EventLog) -> None:
        self.control = control
        self.remediator = remediator
        self.settings = settings
        self.events = events

    def run(self) -> UpdateResult:
        result = UpdateResult()
        self.remediator.fix_restart_policies()

        if self.settings.enable_app_updates and self.control.manages_units:
            self.recover_deploying()
            self.upgrade_units(result)
        elif self.settings.enable_app_updates:
            self.events.info("==> No app manager available, skipping app updates")

        if self.settings.enable_watchtower:
            result.image_update_ok = self.run_image_updates()
        else:
            self.events.info("==> Watchtower disabled, skipping")

        self.remediator.fix_restart_policies()

        self.events.info(f"==> Waiting {self.settings.stabilization_wait_s}s for containers to stabilize...")
        time.sleep(self.settings.stabilization_wait_s)
        return result

    def run_image_updates(self) -> bool:
        s = self.settings
        self.events.info(f"==> Running Watchtower (run-once) with {s.watchtower_image}")
        env = {
            "TZ": s.watchtower_tz,
            "WATCHTOWER_NOTIFICATIONS_HOSTNAME": s.watchtower_hostname,
            "WATCHTOWER_CLEANUP": str(s.watchtower_cleanup).lower(),
            "WATCHTOWER_INCLUDE_STOPPED": str(s.watchtower_include_stopped).lower(),
        }
        volumes = {s.docker_socket: {"bind": "/var/run/docker.sock", "mode": "rw"}}
        code = self.control.runtime.run_once(s.watchtower_image, ["--run-once"], env, volumes, self.events.echo)
        if code != 0:
            # Carry on: restoring what did update beats leaving the routes down.
            self.events.warn(f"Watchtower encountered errors (exit code {code})")
            return False
        self.events.info("Watchtower finished")
        return True

    def upgrade_units(self, result: UpdateResult) -> UpdateResult:
        self.events.info("==> Checking for app updates...")
        apps = self.control.upgradable_units()
        if not apps:
            self.events.info("No app updates available")
            return result

        self.events.info(f"Found {len(apps)} app(s) with updates: {' '.join(apps)}")
        for i, app in enumerate(apps, start=1):
            self.events.info(f"==> Updating app {i}/{len(apps)}: {app}", workload=app)
            self._upgrade_one(app, result)
            time.sleep(self.settings.upgrade_grace_s)

        self.events.info(
            f"==> App upgrades complete: {len(result.upgraded) + len(result.recovered)} succeeded, {len(result.failed)} failed"
        )
        return result

    def _upgrade_one(self, app: str, result: UpdateResult) -> None:
        self.events.info(f"upgrade started: {app}", workload=app)
        try:
            if not self.control.upgrade_unit(app):
                self.events.warn(f"Failed to start upgrade for: {app}", workload=app)
                result.failed.append(app)
                return
            time.sleep(self.settings.upgrade_grace_s)
            self.remediator.fix_restart_policies(unit=app)

            if self.wait_for_unit_state(app, WorkloadState.RUNNING, self.settings.deploy_timeout_s):
                self.events.info(f"  Successfully upgraded: {app}", workload=app)
                result.upgraded.append(app)
                return

            self.events.warn(f"Upgrade may have failed for: {app}", workload=app)
            if self.recover_unit(app):
                result.recovered.append(app)
            else:
                result.failed.append(app)
        finally:
            self.events.info(f"upgrade finished: {app}", workload=app)

    def wait_for_unit_state(self, app: str, target: WorkloadState, timeout_s: float) -> bool:
        self.events.info(f"  Waiting for {app} to reach {target.value} (timeout: {int(timeout_s)}s)...", workload=app)
        start = time.monotonic()
        while True:
            state = self.control.unit_state(app)
            elapsed = int(time.monotonic() - start)
            if state == target:
                self.events.info(f"  {app} is now {target.value}", workload=app)
                return True
            if state == WorkloadState.STOPPED and target == WorkloadState.RUNNING:
                self.events.warn(f"{app} stopped unexpectedly", workload=app)
                return False
            if elapsed >= timeout_s:
                self.events.warn(f"{app} did not reach {target.value} within {int(timeout_s)}s", workload=app)
                return False
            self.events.info(f"  {app}: {state.value} ({elapsed}s/{int(timeout_s)}s)", workload=app)
            time.sleep(self.settings.unit_check_interval_s)

    def recover_unit(self, app: str) -> bool:
        """Stop/start a stuck app, falling back to a redeploy."""
        self.events.info(f"  Attempting to restart stuck app: {app}", workload=app)
        self.remediator.fix_restart_policies(unit=app)

        if self.control.stop_unit(app) and self.wait_for_unit_state(
            app, WorkloadState.STOPPED, self.settings.stop_timeout_s
        ):
            time.sleep(self.settings.upgrade_grace_s)
            if self.control.start_unit(app) and self.wait_for_unit_state(
                app, WorkloadState.RUNNING, self.settings.deploy_timeout_s
            ):
                self.events.info(f"  Successfully restarted {app}", workload=app)
                return True

        self.events.info(f"  Stop/start failed, trying redeploy for {app}...", workload=app)
        if self.control.redeploy_unit(app) and self.wait_for_unit_state(
            app, WorkloadState.RUNNING, self.settings.deploy_timeout_s
        ):
            self.events.info(f"  Successfully redeployed {app}", workload=app)
            return True

        self.events.warn(f"Could not restart {app}", workload=app)
        return False

    def recover_deploying(self) -> int:
        """Recover every app currently stuck deploying, one at a time."""
        stuck = self.control.deploying_units()
        if not stuck:
            self.events.info("No apps stuck in DEPLOYING state")
            return 0
        self.events.info(f"Found {len(stuck)} app(s) stuck in DEPLOYING: {' '.join(stuck)}")
        recovered = 0
        for app in stuck:
            if self.recover_unit(app):
                recovered += 1
            else:
                self.events.warn(f"Failed to recover {app} - may need manual intervention", workload=app)
            time.sleep(self.settings.stuck_retry_delay_s)
        return recovered
