import json
import os
import sys

import pytest

# Ensure project root is importable (so `import cli` works without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from tsp import health, locator, pipeline, remediation, restore, updates  # noqa: E402
from tsp.controlplane import AppManagerControl  # noqa: E402
from tsp.db import EventLog  # noqa: E402
from tsp.docker_ops import DockerRuntime  # noqa: E402
from tsp.settings import Settings  # noqa: E402

TS_CONTAINER = "ix-tailscale-tailscale-1"


def make_attrs(
    name,
    status="running",
    exit_code=0,
    image="nginx:latest",
    restart="unless-stopped",
    ports=None,
    bound=True,
    network_mode="bridge",
    labels=None,
    health=None,
    id=None,
):
    """A trimmed `docker inspect` document."""
    bindings = {f"{cport}/tcp": [{"HostIp": "", "HostPort": str(hport)}] for hport, cport in (ports or {}).items()}
    observed = {k: [{"HostIp": "0.0.0.0", "HostPort": v[0]["HostPort"]}] for k, v in bindings.items()} if bound else {
        k: None for k in bindings
    }
    state = {"Status": status, "ExitCode": exit_code}
    if health:
        state["Health"] = {"Status": health}
    return {
        "Id": id or f"{name}-id-1",
        "Name": f"/{name}",
        "State": state,
        "Config": {"Image": image, "Labels": dict(labels or {})},
        "HostConfig": {
            "RestartPolicy": {"Name": restart},
            "PortBindings": bindings,
            "NetworkMode": network_mode,
        },
        "NetworkSettings": {"Ports": observed},
    }


class FakeRuntime(DockerRuntime):
    """In-memory Docker host with a simulated `tailscale` binary."""

    def __init__(self, init_markers=("permissions", "upgrade", "init")):
        super().__init__(client=None, init_markers=init_markers)
        self.containers = {}
        self.calls = []
        self.serve = {}  # port -> backend
        self.ts_ready = True
        self.ts_available = True
        self.serve_failures = {}  # port -> remaining failing `serve --https` calls
        self.serve_drops = set()  # ports accepted but never shown as active
        self.binaries = {}  # container -> binaries for `which`
        self.fix_on_restart = True
        self.ping_ok = True
        self.agent_exit = 0
        self.agent_output = ["Found new image", "Stopping container", "Started container"]
        self.on_agent_run = None

    def add(self, name, **kw):
        self.containers[name] = make_attrs(name, **kw)
        return self.containers[name]

    def add_tailscale(self, name=TS_CONTAINER, image="tailscale/tailscale:stable", **kw):
        self.add(name, image=image, **kw)
        self.binaries.setdefault(name, set()).add("tailscale")
        return name

    def recreate(self, name, new_name=None):
        attrs = self.containers.pop(name)
        new_name = new_name or name
        old_id = attrs["Id"]
        attrs["Id"] = old_id[:-1] + str(int(old_id[-1]) + 1) if old_id[-1].isdigit() else old_id + "-2"
        attrs["Name"] = f"/{new_name}"
        self.containers[new_name] = attrs
        if name in self.binaries:
            self.binaries[new_name] = self.binaries.pop(name)
        self.serve.clear()
        return new_name

    def set_status(self, name, status, exit_code=0):
        self.containers[name]["State"]["Status"] = status
        self.containers[name]["State"]["ExitCode"] = exit_code

    def unbind(self, name):
        ports = self.containers[name]["NetworkSettings"]["Ports"]
        for k in ports:
            ports[k] = None

    # -- DockerRuntime surface -------------------------------------------

    def ping(self):
        return self.ping_ok

    def list_workloads(self, all=True):
        from tsp.docker_ops import describe

        out = [describe(a, self.init_re) for a in self.containers.values()]
        if not all:
            out = [w for w in out if w.state.value == "running"]
        return out

    def get(self, name):
        from tsp.docker_ops import describe

        attrs = self.containers.get(name)
        return describe(attrs, self.init_re) if attrs else None

    def _bring_up(self, name):
        attrs = self.containers[name]
        attrs["State"]["Status"] = "running"
        attrs["State"]["ExitCode"] = 0
        if self.fix_on_restart:
            attrs["NetworkSettings"]["Ports"] = {
                k: [{"HostIp": "0.0.0.0", "HostPort": v[0]["HostPort"]}]
                for k, v in attrs["HostConfig"]["PortBindings"].items()
            }

    def start(self, name):
        self.calls.append(("start", name))
        if name not in self.containers:
            return False
        self._bring_up(name)
        return True

    def restart(self, name):
        self.calls.append(("restart", name))
        if name not in self.containers:
            return False
        self._bring_up(name)
        return True

    def stop(self, name):
        self.calls.append(("stop", name))
        if name not in self.containers:
            return False
        self.set_status(name, "exited", 0)
        return True

    def set_restart_policy(self, name, policy="no"):
        self.calls.append(("update", name, policy))
        if name not in self.containers:
            return False
        self.containers[name]["HostConfig"]["RestartPolicy"]["Name"] = policy
        return True

    def exec(self, name, cmd):
        self.calls.append(("exec", name, tuple(cmd)))
        attrs = self.containers.get(name)
        if attrs is None or attrs["State"]["Status"] != "running":
            return -1, f"container {name} not running"
        if cmd[0] == "which":
            return (0, f"/usr/bin/{cmd[1]}\n") if cmd[1] in self.binaries.get(name, set()) else (1, "")
        if cmd[0] != "tailscale" or "tailscale" not in self.binaries.get(name, set()):
            return 126, "executable not found"
        return self._tailscale(cmd[1:])

    def _tailscale(self, args):
        if not self.ts_available:
            return 1, "failed to connect to local tailscaled"
        if args == ["version"]:
            return 0, "1.76.1\n  tailscale commit: abc\n"
        if args == ["status"]:
            return (0, "100.64.0.1 nas linux -\n") if self.ts_ready else (1, "Logged out.")
        if args == ["serve", "status", "--json"]:
            return 0, self.serve_status_json()
        if args == ["serve", "reset"]:
            self.serve.clear()
            return 0, ""
        if len(args) == 4 and args[0] == "serve" and args[1] == "--bg" and args[2].startswith("--https="):
            port = int(args[2].split("=", 1)[1])
            if self.serve_failures.get(port, 0) > 0:
                self.serve_failures[port] -= 1
                return 1, "error: listener busy"
            if port not in self.serve_drops:
                self.serve[port] = args[3]
            return 0, f"Available within your tailnet: https://nas.tail.ts.net:{port}/\n"
        return 1, f"unknown command {args}"

    def serve_status_json(self):
        if not self.serve:
            return "{}\n"
        return json.dumps(
            {
                "TCP": {str(p): {"HTTPS": True} for p in self.serve},
                "Web": {f"nas.tail.ts.net:{p}": {"Handlers": {"/": {"Proxy": b}}} for p, b in self.serve.items()},
            }
        )

    def run_once(self, image, command, environment, volumes, on_line):
        self.calls.append(("run_once", image, tuple(command)))
        for line in self.agent_output:
            on_line(line)
        if self.on_agent_run:
            self.on_agent_run()
        return self.agent_exit


class FakeAppManager(AppManagerControl):
    """TrueNAS app manager answering `midclt call` from memory.

    Upgraded apps report DEPLOYING for ``deploy_polls`` queries, then RUNNING,
    unless they are listed in ``stuck``.
    """

    def __init__(self, runtime, settings, events, apps=None, deploy_polls=2):
        super().__init__(runtime, settings, events)
        self.apps = {a["name"]: dict(a) for a in (apps or [])}
        self.deploy_polls = deploy_polls
        self.pending = {}
        self.stuck = set()
        self.broken = set()
        self.calls = []
        self.in_flight = set()
        self.max_in_flight = 0
        self.timeline = []

    def probe(self):
        return True

    def _advance(self):
        for name in list(self.pending):
            self.pending[name] -= 1
            if self.pending[name] <= 0:
                del self.pending[name]
                self.apps[name]["state"] = "RUNNING"
                if name in self.in_flight:
                    self.in_flight.discard(name)
                    self.timeline.append(("finished", name))

    def _deploy(self, name, track=False):
        app = self.apps[name]
        if name in self.broken:
            app["state"] = "CRASHED"
            return
        app["state"] = "DEPLOYING"
        if track:
            self.in_flight.add(name)
            self.max_in_flight = max(self.max_in_flight, len(self.in_flight))
            self.timeline.append(("started", name))
        if name not in self.stuck:
            self.pending[name] = self.deploy_polls

    def _call(self, method, *args):
        self.calls.append((method, *args))
        if method == "app.query":
            self._advance()
            return [dict(a) for a in self.apps.values()]
        name = args[0] if args else None
        if name not in self.apps:
            return None
        if method == "app.upgrade":
            self.apps[name]["upgrade_available"] = False
            self._deploy(name, track=True)
            return 17
        if method == "app.stop":
            self.pending.pop(name, None)
            self.apps[name]["state"] = "STOPPED"
            return 18
        if method == "app.start":
            self.stuck.discard(name)
            self._deploy(name)
            return 19
        if method == "app.redeploy":
            self.stuck.discard(name)
            self._deploy(name)
            for attrs in self.runtime.containers.values():
                if attrs["Name"].lstrip("/").startswith(f"ix-{name}-"):
                    self.runtime._bring_up(attrs["Name"].lstrip("/"))
            return 20
        return None


class FakeClock:
    """Virtual time: sleeping advances the clock instantly."""

    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []
        self.hooks = []

    def monotonic(self):
        return self.now

    def time(self):
        return self.now

    def sleep(self, seconds):
        seconds = max(0.0, float(seconds))
        self.sleeps.append(seconds)
        self.now += seconds
        for hook in list(self.hooks):
            hook(self.now, seconds)


@pytest.fixture
def clock(monkeypatch):
    c = FakeClock()
    for mod in (health, locator, pipeline, remediation, restore, updates):
        monkeypatch.setattr(mod, "time", c)
    return c


@pytest.fixture
def settings(tmp_path):
    return Settings(state_dir=str(tmp_path / "state"), ts_container="")


@pytest.fixture
def events(settings):
    os.makedirs(settings.state_dir, exist_ok=True)
    return EventLog(settings.db_path, settings.log_file("test"), command="test", echo=False)


@pytest.fixture
def runtime():
    return FakeRuntime()
