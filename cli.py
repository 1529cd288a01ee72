from __future__ import annotations

import argparse
import json
import sys

from tsp.db import EventLog
from tsp.errors import FatalError
from tsp.pipeline import Orchestrator, ensure_state_dir
from tsp.settings import Settings, settings as default_settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Preserve Tailscale Serve routes across container updates")
    p.add_argument("--state-dir", help="Directory for the serve backup, logs and event DB (TSP_STATE_DIR)")
    p.add_argument("--container", help="Tailscale container name; auto-detected when omitted")
    p.add_argument("--quiet", action="store_true", help="Only write to the log file")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_up = sub.add_parser("update", help="Back up serve routes, update containers, restore routes")
    s_up.add_argument("--no-serve", action="store_true", help="Skip serve backup/restore")
    s_up.add_argument("--no-watchtower", action="store_true", help="Skip the Watchtower run")
    s_up.add_argument("--no-app-updates", action="store_true", help="Skip TrueNAS app upgrades")
    s_up.add_argument("--stabilization-wait", type=int, help="Seconds to wait after updates")

    s_boot = sub.add_parser("startup", help="Restore serve routes after boot")
    s_boot.add_argument("--container-timeout", type=int, help="Max seconds to wait for containers")

    sub.add_parser("backup", help="Back up current serve routes")
    sub.add_parser("restore", help="Restore serve routes from the backup")
    sub.add_parser("status", help="Show live serve routes and the saved backup")

    s_ev = sub.add_parser("events", help="Show recent events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--level", choices=["INFO", "WARN", "ERROR"])

    return p


def resolve_settings(args: argparse.Namespace, base: Settings) -> Settings:
    s = base.with_overrides(state_dir=args.state_dir, ts_container=args.container)
    if args.cmd == "update":
        s = s.with_overrides(stabilization_wait_s=args.stabilization_wait)
        if args.no_serve:
            s = s.with_overrides(enable_serve=False)
        if args.no_watchtower:
            s = s.with_overrides(enable_watchtower=False)
        if args.no_app_updates:
            s = s.with_overrides(enable_app_updates=False)
    elif args.cmd == "startup":
        s = s.with_overrides(container_timeout_s=args.container_timeout)
    return s


def main(argv: list[str] | None = None, base: Settings | None = None, orchestrator_factory=Orchestrator) -> int:
    args = build_parser().parse_args(argv)
    s = resolve_settings(args, base or default_settings)

    try:
        ensure_state_dir(s)
    except FatalError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    events = EventLog(s.db_path, s.log_file(args.cmd), command=args.cmd, echo=not args.quiet)

    if args.cmd == "events":
        _print(events.latest(args.limit, level=args.level))
        return 0

    orch = orchestrator_factory(s, events)
    try:
        if args.cmd == "update":
            report = orch.update()
            if report is not None:
                _print(report.to_dict())
        elif args.cmd == "startup":
            _print(orch.startup().to_dict())
        elif args.cmd == "backup":
            if not orch.backup():
                events.warn("Nothing backed up; existing backup kept")
        elif args.cmd == "restore":
            _print(orch.restore().to_dict())
        elif args.cmd == "status":
            _print(orch.status())
        else:
            return 2
    except FatalError as e:
        events.error(str(e))
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
