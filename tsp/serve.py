from __future__ import annotations

from pydantic import ValidationError

from .docker_ops import DockerRuntime
from .models import ServeStatus, loopback_backend
from .runtime import ServiceHandle


class ServeClient:
    """Runs ``tailscale`` commands inside the located proxy container.

    Bound to one ServiceHandle; build a new client after re-resolving.
    """

    def __init__(self, runtime: DockerRuntime, handle: ServiceHandle, binary: str = "tailscale") -> None:
        self.runtime = runtime
        self.handle = handle
        self.binary = binary
        self.last_output = ""

    def run(self, *args: str) -> tuple[int, str]:
        code, out = self.runtime.exec(self.handle.name, [self.binary, *args])
        self.last_output = out
        return code, out

    def version(self) -> str | None:
        code, out = self.run("version")
        if code != 0:
            return None
        return out.strip().splitlines()[0] if out.strip() else ""

    def is_ready(self) -> bool:
        code, _ = self.run("status")
        return code == 0

    def status(self) -> ServeStatus | None:
        """Current serve config, or None if it could not be read or parsed."""
        code, out = self.run("serve", "status", "--json")
        if code != 0:
            return None
        body = out.strip() or "{}"
        try:
            return ServeStatus.model_validate_json(body)
        except ValidationError:
            return None

    def active_ports(self) -> set[int] | None:
        st = self.status()
        return None if st is None else set(st.active_ports())

    def reset(self) -> bool:
        code, _ = self.run("serve", "reset")
        return code == 0

    def add_route(self, port: int, backend: str | None = None) -> bool:
        # Proxy to loopback instead of binding the port, which the workload may already hold.
        target = backend or loopback_backend(port)
        code, _ = self.run("serve", "--bg", f"--https={int(port)}", target)
        return code == 0
