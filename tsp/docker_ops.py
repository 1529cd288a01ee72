from __future__ import annotations

import re
from typing import Any, Callable, Iterable

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from .runtime import WorkloadDescriptor, container_state


def _host_ports(bindings: dict[str, Any] | None) -> frozenset[int]:
    """Collect host ports from a ``{"80/tcp": [{"HostPort": "8080"}]}`` map."""
    ports: set[int] = set()
    for entries in (bindings or {}).values():
        for entry in entries or []:
            raw = (entry or {}).get("HostPort")
            if raw and str(raw).isdigit():
                ports.add(int(raw))
    return frozenset(ports)


def init_pattern(markers: Iterable[str]) -> re.Pattern[str]:
    return re.compile("|".join(re.escape(m) for m in markers) or r"(?!x)x", re.IGNORECASE)


def describe(attrs: dict[str, Any], init_re: re.Pattern[str] | None = None) -> WorkloadDescriptor:
    """Build a WorkloadDescriptor from a container's inspect document."""
    state = attrs.get("State") or {}
    host_config = attrs.get("HostConfig") or {}
    config = attrs.get("Config") or {}
    network = attrs.get("NetworkSettings") or {}
    name = (attrs.get("Name") or "").lstrip("/")
    health = (state.get("Health") or {}).get("Status")

    return WorkloadDescriptor(
        name=name,
        id=attrs.get("Id", ""),
        image=config.get("Image", "") or "",
        state=container_state(state.get("Status"), state.get("ExitCode", 0)),
        is_init=bool(init_re and init_re.search(name)),
        restart_policy=((host_config.get("RestartPolicy") or {}).get("Name") or ""),
        configured_ports=_host_ports(host_config.get("PortBindings")),
        observed_ports=_host_ports(network.get("Ports")),
        network_mode=host_config.get("NetworkMode", "") or "",
        health=health,
        labels=dict(config.get("Labels") or {}),
    )


def _client() -> docker.DockerClient:
    return docker.from_env()


class DockerRuntime:
    """Container runtime query/control surface.

    docker-py errors stop here: every control call answers True/False and
    queries answer empty results, so callers only ever see soft failures.
    """

    def __init__(self, client: docker.DockerClient | None = None, init_markers: Iterable[str] = ()) -> None:
        self._client = client
        self.init_re = init_pattern(init_markers)

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = _client()
        return self._client

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except DockerException:
            return False

    def list_workloads(self, all: bool = True) -> list[WorkloadDescriptor]:
        try:
            containers = self.client.containers.list(all=all)
        except DockerException:
            return []
        return [describe(c.attrs, self.init_re) for c in containers]

    def running(self) -> list[WorkloadDescriptor]:
        return self.list_workloads(all=False)

    def get(self, name: str) -> WorkloadDescriptor | None:
        try:
            cont = self.client.containers.get(name)
        except NotFound:
            return None
        except DockerException:
            return None
        return describe(cont.attrs, self.init_re)

    def _control(self, name: str, action: Callable[[Any], None]) -> bool:
        try:
            action(self.client.containers.get(name))
            return True
        except DockerException:
            return False

    def start(self, name: str) -> bool:
        return self._control(name, lambda c: c.start())

    def stop(self, name: str) -> bool:
        return self._control(name, lambda c: c.stop())

    def restart(self, name: str) -> bool:
        return self._control(name, lambda c: c.restart())

    def set_restart_policy(self, name: str, policy: str = "no") -> bool:
        return self._control(name, lambda c: c.update(restart_policy={"Name": policy}))

    def exec(self, name: str, cmd: list[str]) -> tuple[int, str]:
        """Run a command inside a running container; (-1, reason) if it cannot be run."""
        try:
            res = self.client.containers.get(name).exec_run(cmd, stdout=True, stderr=True)
        except NotFound:
            return -1, f"container {name} not found"
        except DockerException as e:
            return -1, f"{type(e).__name__}: {e}"
        output = res.output.decode("utf-8", errors="replace") if isinstance(res.output, bytes) else str(res.output or "")
        return int(res.exit_code if res.exit_code is not None else -1), output

    def run_once(
        self,
        image: str,
        command: list[str],
        environment: dict[str, str],
        volumes: dict[str, dict[str, str]],
        on_line: Callable[[str], None],
    ) -> int:
        """Run a throwaway container to completion, streaming its output.

        Returns the container exit code, or -1 if it could not be started.
        """
        try:
            try:
                self.client.images.get(image)
            except ImageNotFound:
                self.client.images.pull(image)
            container = self.client.containers.run(
                image,
                command=command,
                environment=environment,
                volumes=volumes,
                detach=True,
            )
        except DockerException as e:
            on_line(f"{type(e).__name__}: {e}")
            return -1

        try:
            pending = ""
            for chunk in container.logs(stream=True, follow=True):
                # A frame may end mid-line; hold the tail until its newline arrives.
                lines = (pending + chunk.decode("utf-8", errors="replace")).split("\n")
                pending = lines.pop()
                for line in lines:
                    on_line(line.rstrip("\r"))
            if pending:
                on_line(pending.rstrip("\r"))
            result = container.wait()
            return int(result.get("StatusCode", -1))
        except DockerException as e:
            on_line(f"{type(e).__name__}: {e}")
            return -1
        finally:
            try:
                container.remove(force=True)
            except (NotFound, APIError):
                pass
