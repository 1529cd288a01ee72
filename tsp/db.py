from __future__ import annotations

import os
import secrets
import sqlite3
import sys
from datetime import datetime, timezone
from typing import Any, TextIO


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def local_stamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (a bind mount created before the
    file existed), the DB file is placed inside it.
    """
    p = os.path.abspath(path)
    if os.path.isdir(p):
        p = os.path.join(p, "tsp.db")
    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    return p


def connect(path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(path))
    conn.row_factory = sqlite3.Row
    return conn


def init_db(path: str) -> None:
    """Create tables if they do not exist."""
    with connect(path) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              run_id TEXT NOT NULL,
              command TEXT NOT NULL,
              level TEXT NOT NULL, -- INFO|WARN|ERROR
              workload TEXT,
              port INTEGER,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_events_run_id ON events(run_id);
            """
        )


class EventLog:
    """Operator log: one text file per command plus a queryable events table.

    Every event becomes a ``[YYYY-MM-DD HH:MM:SS] message`` line (with a
    ``WARN:``/``ERROR:`` marker for soft and fatal failures) appended to the
    log file and echoed to stderr, and a row in the events table.
    """

    def __init__(
        self,
        db_path: str,
        log_file: str | None = None,
        command: str = "tsp",
        echo: bool = True,
        stream: TextIO | None = None,
    ) -> None:
        self.db_path = db_path
        self.log_file = log_file
        self.command = command
        self.echo_enabled = echo
        self.stream = stream
        self.run_id = secrets.token_hex(6)
        init_db(db_path)
        if log_file:
            os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)

    def _write_line(self, line: str) -> None:
        if self.log_file:
            with open(self.log_file, "a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        if self.echo_enabled:
            # stdout carries the command's JSON output only.
            print(line, file=self.stream or sys.stderr, flush=True)

    def log(self, level: str, message: str, workload: str | None = None, port: int | None = None) -> None:
        level = level.upper()
        marker = "" if level == "INFO" else f"{level}: "
        self._write_line(f"[{local_stamp()}] {marker}{message}")
        with connect(self.db_path) as conn:
            conn.execute(
                "INSERT INTO events (ts, run_id, command, level, workload, port, message) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (utc_now(), self.run_id, self.command, level, workload, port, message),
            )

    def info(self, message: str, **ctx: Any) -> None:
        self.log("INFO", message, **ctx)

    def warn(self, message: str, **ctx: Any) -> None:
        self.log("WARN", message, **ctx)

    def error(self, message: str, **ctx: Any) -> None:
        self.log("ERROR", message, **ctx)

    def echo(self, line: str) -> None:
        """Pass through external tool output without recording an event."""
        self._write_line(line)

    def latest(self, limit: int = 100, level: str | None = None) -> list[dict[str, Any]]:
        with connect(self.db_path) as conn:
            if level:
                rows = conn.execute(
                    "SELECT * FROM events WHERE level=? ORDER BY id DESC LIMIT ?", (level.upper(), limit)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]

    def run_events(self, run_id: str | None = None) -> list[dict[str, Any]]:
        with connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM events WHERE run_id=? ORDER BY id", (run_id or self.run_id,)
            ).fetchall()
            return [dict(r) for r in rows]
