from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from .db import utc_now


def loopback_backend(port: int, host: str = "127.0.0.1") -> str:
    return f"http://{host}:{int(port)}"


class TCPPortHandler(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    https: bool = Field(False, alias="HTTPS")
    http: bool = Field(False, alias="HTTP")
    tcp_forward: str | None = Field(None, alias="TCPForward")


class HTTPHandler(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    proxy: str | None = Field(None, alias="Proxy")
    path: str | None = Field(None, alias="Path")
    text: str | None = Field(None, alias="Text")


class WebServerConfig(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    handlers: dict[str, HTTPHandler] = Field(default_factory=dict, alias="Handlers")


class ServeStatus(BaseModel):
    """Parsed ``tailscale serve status --json``.

    ``TCP`` is keyed by the externally served port, ``Web`` by ``host:port``.
    An unconfigured node prints ``{}``.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    tcp: dict[int, TCPPortHandler] = Field(default_factory=dict, alias="TCP")
    web: dict[str, WebServerConfig] = Field(default_factory=dict, alias="Web")

    def active_ports(self) -> list[int]:
        return sorted(self.tcp)

    def backend_for(self, port: int) -> str | None:
        for hostport, cfg in self.web.items():
            _, _, p = hostport.rpartition(":")
            if p != str(port):
                continue
            root = cfg.handlers.get("/")
            if root and root.proxy:
                return root.proxy
        handler = self.tcp.get(port)
        if handler and handler.tcp_forward:
            return handler.tcp_forward
        return None


class RouteEntry(BaseModel):
    active: bool = True
    backend: str


class RouteSnapshot(BaseModel):
    """Proxied ports captured before a disruptive operation."""

    captured_at: str = Field(default_factory=utc_now)
    routes: dict[int, RouteEntry] = Field(default_factory=dict)

    @field_validator("routes")
    @classmethod
    def _ports_non_negative(cls, v: dict[int, RouteEntry]) -> dict[int, RouteEntry]:
        bad = [p for p in v if p < 0 or p > 65535]
        if bad:
            raise ValueError(f"invalid port(s) in snapshot: {bad}")
        return v

    @property
    def ports(self) -> list[int]:
        return sorted(self.routes)

    @property
    def active_ports(self) -> list[int]:
        return sorted(p for p, r in self.routes.items() if r.active)

    def is_empty(self) -> bool:
        return not self.active_ports

    @classmethod
    def from_serve_status(cls, status: ServeStatus) -> "RouteSnapshot":
        routes = {
            port: RouteEntry(active=True, backend=status.backend_for(port) or loopback_backend(port))
            for port in status.active_ports()
        }
        return cls(routes=routes)


class AppInfo(BaseModel):
    """One entry of the app manager's ``app.query`` answer."""

    model_config = ConfigDict(extra="ignore")

    name: str
    state: str = "UNKNOWN"
    upgrade_available: bool = False


app_list_adapter = TypeAdapter(list[AppInfo])
