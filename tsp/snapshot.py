from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from .db import EventLog
from .models import RouteSnapshot, ServeStatus
from .serve import ServeClient

STAMP_FORMAT = "%Y%m%d_%H%M%S_%f"


class SnapshotStore:
    """Canonical route snapshot file plus rotating timestamped copies.

    ``<path>`` is only ever replaced atomically; history lives next to it as
    ``<path>.<YYYYmmdd_HHMMSS_ffffff>``, newest ``keep`` retained.
    """

    def __init__(self, path: str | os.PathLike[str], events: EventLog, keep: int = 10) -> None:
        self.path = Path(path)
        self.events = events
        self.keep = max(1, int(keep))

    def capture(self, serve: ServeClient) -> RouteSnapshot | None:
        status = serve.status()
        if status is None:
            self.events.warn("Could not read serve config; continuing with existing backup")
            return None
        snap = RouteSnapshot.from_serve_status(status)
        if snap.is_empty():
            self.events.warn("No active Tailscale Serve ports found; keeping existing backup")
            return None
        return snap

    def _write_atomic(self, target: Path, data: str) -> None:
        fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, target)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def persist(self, snapshot: RouteSnapshot, now: datetime | None = None) -> Path:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = snapshot.model_dump_json(indent=2)
        self._write_atomic(self.path, data)

        stamp = (now or datetime.now()).strftime(STAMP_FORMAT)
        copy = self.path.with_name(f"{self.path.name}.{stamp}")
        try:
            self._write_atomic(copy, data)
        except OSError as e:
            self.events.warn(f"Could not write timestamped backup {copy.name}: {e}")
        self.prune()
        return self.path

    def history(self) -> list[Path]:
        """Timestamped copies, newest first."""
        if not self.path.parent.exists():
            return []
        prefix = f"{self.path.name}."
        copies = [
            p
            for p in self.path.parent.iterdir()
            if p.is_file() and p.name.startswith(prefix) and not p.name.endswith(".tmp")
        ]
        return sorted(copies, key=lambda p: p.name, reverse=True)

    def prune(self) -> list[Path]:
        removed = self.history()[self.keep :]
        for p in removed:
            try:
                p.unlink()
            except FileNotFoundError:
                pass
        return removed

    def backup(self, serve: ServeClient) -> RouteSnapshot | None:
        self.events.info("==> Backing up current Tailscale Serve configuration")
        snap = self.capture(serve)
        if snap is None:
            return None
        self.persist(snap)
        self.events.info(f"Backed up {len(snap.ports)} ports to {self.path}: {' '.join(map(str, snap.ports))}")
        return snap

    def load(self) -> RouteSnapshot | None:
        """Most recent snapshot; None when there is no prior state."""
        if not self.path.exists():
            return None
        raw = self.path.read_text(encoding="utf-8")
        if not raw.strip():
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            self.events.warn(f"Snapshot {self.path} is not valid JSON; ignoring it")
            return None
        try:
            if isinstance(data, dict) and "routes" not in data and ("TCP" in data or "Web" in data):
                # Raw `serve status --json` dump written by older tooling.
                snap = RouteSnapshot.from_serve_status(ServeStatus.model_validate(data))
            else:
                snap = RouteSnapshot.model_validate(data)
        except ValidationError as e:
            self.events.warn(f"Snapshot {self.path} has an unexpected shape: {e.error_count()} error(s)")
            return None
        return None if not snap.routes else snap
