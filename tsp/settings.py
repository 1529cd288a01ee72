from __future__ import annotations

import os
from dataclasses import dataclass, replace


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(x.strip() for x in raw.split(",") if x.strip())


DEFAULT_INIT_MARKERS = ("permissions", "upgrade", "init")

# Support workloads with no proxied ports of their own.
DEFAULT_EXCLUDE = (
    "postgres",
    "mariadb",
    "mysql",
    "mongo",
    "redis",
    "valkey",
    "memcached",
    "elasticsearch",
    "opensearch",
    "meilisearch",
    "solr",
    "permissions",
    "upgrade",
    "init",
)


@dataclass(frozen=True)
class Settings:
    # State
    state_dir: str = os.getenv("TSP_STATE_DIR", "")
    serve_json_path: str = os.getenv("TSP_SERVE_JSON", "")
    log_file_path: str = os.getenv("TSP_LOG_FILE", "")
    db_file_path: str = os.getenv("TSP_DB_PATH", "")
    snapshot_keep: int = _env_int("TSP_SNAPSHOT_KEEP", 10)

    # Proxy service discovery
    ts_container: str = os.getenv("TSP_TS_CONTAINER", "")
    ts_image_match: str = os.getenv("TSP_TS_IMAGE_MATCH", "tailscale/tailscale")
    ts_name_match: str = os.getenv("TSP_TS_NAME_MATCH", "tailscale")
    ts_binary: str = os.getenv("TSP_TS_BINARY", "tailscale")
    locate_timeout_s: int = _env_int("TSP_LOCATE_TIMEOUT_S", 30)
    locate_interval_s: int = _env_int("TSP_LOCATE_INTERVAL_S", 5)
    ready_timeout_s: int = _env_int("TSP_READY_TIMEOUT_S", 30)
    ready_interval_s: int = _env_int("TSP_READY_INTERVAL_S", 2)

    # Toggles
    enable_serve: bool = _env_bool("TSP_ENABLE_SERVE", True)
    enable_watchtower: bool = _env_bool("TSP_ENABLE_WATCHTOWER", True)
    enable_app_updates: bool = _env_bool("TSP_ENABLE_APP_UPDATES", True)
    enable_app_manager: bool = _env_bool("TSP_ENABLE_APP_MANAGER", True)

    # Image-level updates
    watchtower_image: str = os.getenv("TSP_WATCHTOWER_IMAGE", "containrrr/watchtower")
    watchtower_tz: str = os.getenv("TSP_WATCHTOWER_TZ", os.getenv("TZ", "UTC"))
    watchtower_hostname: str = os.getenv("TSP_WATCHTOWER_HOSTNAME", "Docker-Host")
    watchtower_cleanup: bool = _env_bool("TSP_WATCHTOWER_CLEANUP", True)
    watchtower_include_stopped: bool = _env_bool("TSP_WATCHTOWER_INCLUDE_STOPPED", True)
    docker_socket: str = os.getenv("TSP_DOCKER_SOCKET", "/var/run/docker.sock")

    # App manager
    midclt_timeout_s: int = _env_int("TSP_MIDCLT_TIMEOUT_S", 60)
    deploy_timeout_s: int = _env_int("TSP_DEPLOY_TIMEOUT_S", 300)
    stop_timeout_s: int = _env_int("TSP_STOP_TIMEOUT_S", 60)
    unit_check_interval_s: int = _env_int("TSP_UNIT_CHECK_INTERVAL_S", 5)
    upgrade_grace_s: int = _env_int("TSP_UPGRADE_GRACE_S", 5)
    stuck_retry_delay_s: int = _env_int("TSP_STUCK_RETRY_DELAY_S", 10)

    # Settle barriers
    stabilization_wait_s: int = _env_int("TSP_STABILIZATION_WAIT_S", 60)
    settle_s: int = _env_int("TSP_SETTLE_S", 30)
    stuck_threshold_s: int = _env_int("TSP_STUCK_THRESHOLD_S", 120)
    deploy_budget_s: int = _env_int("TSP_DEPLOY_BUDGET_S", 300)
    remediation_passes: int = _env_int("TSP_REMEDIATION_PASSES", 2)

    # Restore
    restore_attempts: int = _env_int("TSP_RESTORE_ATTEMPTS", 3)
    restore_backoff_s: float = _env_float("TSP_RESTORE_BACKOFF_S", 1.0)
    deferred_wait_s: int = _env_int("TSP_DEFERRED_WAIT_S", 60)
    deferred_extra_wait_s: int = _env_int("TSP_DEFERRED_EXTRA_WAIT_S", 60)
    verify_delay_s: float = _env_float("TSP_VERIFY_DELAY_S", 2.0)
    listen_host: str = os.getenv("TSP_LISTEN_HOST", "127.0.0.1")
    listen_timeout_s: float = _env_float("TSP_LISTEN_TIMEOUT_S", 1.0)

    # Boot-time restore
    startup_initial_delay_s: int = _env_int("TSP_STARTUP_INITIAL_DELAY_S", 10)
    startup_final_delay_s: int = _env_int("TSP_STARTUP_FINAL_DELAY_S", 10)
    container_timeout_s: int = _env_int("TSP_CONTAINER_TIMEOUT_S", 300)
    check_interval_s: int = _env_int("TSP_CHECK_INTERVAL_S", 5)

    # Workload classification
    init_markers: tuple[str, ...] = _env_list("TSP_INIT_MARKERS", DEFAULT_INIT_MARKERS)
    exclude: tuple[str, ...] = _env_list("TSP_EXCLUDE", DEFAULT_EXCLUDE)

    @property
    def serve_json(self) -> str:
        return self.serve_json_path or os.path.join(self.state_dir, "tailscale-serve.json")

    @property
    def db_path(self) -> str:
        return self.db_file_path or os.path.join(self.state_dir, "tsp.db")

    def log_file(self, command: str) -> str:
        return self.log_file_path or os.path.join(self.state_dir, f"{command}.log")

    def with_overrides(self, **changes) -> "Settings":
        """Return a copy with the given non-None fields replaced."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


settings = Settings()
