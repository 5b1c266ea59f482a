"""Simulated instance for end-to-end pipeline scenarios.

``SimulatedHost`` interprets the shell commands the pipeline sends over SSH:
git checkout state, docker compose lifecycle, the bootstrap marker and the
deployment lock directory. The running revision is served over real HTTP on
a loopback port, which doubles as the login port for the readiness gate.
"""

from __future__ import annotations

import threading
from collections.abc import Generator, Mapping
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

import pytest

from vmdeploy.models.results import CommandResult


class Repository:
    """Upstream repository: an append-only list of revisions."""

    def __init__(self) -> None:
        self.revisions: list[str] = []
        self.broken: set[str] = set()

    @property
    def head(self) -> str:
        return self.revisions[-1]

    def push(self, revision: str, *, broken: bool = False) -> None:
        self.revisions.append(revision)
        if broken:
            self.broken.add(revision)


class SimulatedHost:
    """Shell state of one instance."""

    def __init__(self, repository: Repository) -> None:
        self.repository = repository
        self.bootstrapped = False
        self.checkout: str | None = None
        self.built: str | None = None
        self.running: str | None = None
        self.locks: set[str] = set()
        self.clones = 0
        self.script_runs = 0
        self.max_lock_holders = 0
        self.commands: list[str] = []
        self._guard = threading.Lock()

    def session(self) -> HostSession:
        return HostSession(self)

    def handle(self, command: str, env: Mapping[str, str] | None) -> tuple[int, str, str]:
        with self._guard:
            self.commands.append(command)
            return self._dispatch(command, env or {})

    def _dispatch(self, command: str, env: Mapping[str, str]) -> tuple[int, str, str]:
        if command.startswith("test -f"):
            return (0 if self.bootstrapped else 1, "", "")
        if command.startswith("bash "):
            return self._bootstrap_script(env)
        if "date -u" in command:
            self.bootstrapped = True
            return (0, "", "")
        if command.startswith("mkdir /tmp/vmdeploy-"):
            path = command.split()[1]
            if path in self.locks:
                return (1, "", "mkdir: cannot create directory: File exists")
            self.locks.add(path)
            self.max_lock_holders = max(self.max_lock_holders, len(self.locks))
            return (0, "", "")
        if command.startswith('[ "$(cat /tmp/vmdeploy-'):
            return self._owned_lock_command(command)
        if command.startswith("flock "):
            # Locks here are never older than a run, so none is stale
            return (1, "", "")
        if command.startswith("echo $(("):
            return (0, "0\n", "")
        if command.startswith("cat "):
            return (0, "", "")
        if command.startswith("test -d"):
            return (0 if self.checkout else 1, "", "")
        if "git clone" in command:
            return self._clone()
        if "rev-parse HEAD" in command:
            if self.checkout is None:
                return (128, "", "fatal: not a git repository")
            return (0, f"{self.checkout}\n", "")
        if "reset --hard origin/" in command:
            self.checkout = self.repository.head
            return (0, "", "")
        if "reset --hard" in command:
            self.checkout = command.rsplit(" ", 1)[-1]
            return (0, "", "")
        if command.endswith(" down"):
            self.running = None
            return (0, "", "")
        if command.endswith(" build"):
            return self._build()
        if "up -d" in command:
            self.running = self.built
            return (0, "", "")
        return (127, "", f"unexpected command: {command}")

    def _owned_lock_command(self, command: str) -> tuple[int, str, str]:
        path = command.split("$(cat ", 1)[1].split("/owner", 1)[0]
        if path not in self.locks:
            return (1, "", "")
        if "rm -rf" in command:
            self.locks.discard(path)
        return (0, "", "")

    def _clone(self) -> tuple[int, str, str]:
        self.clones += 1
        self.checkout = self.repository.head
        return (0, "", "")

    def _build(self) -> tuple[int, str, str]:
        if self.checkout in self.repository.broken:
            return (1, "", f"failed to solve: revision {self.checkout} does not build")
        self.built = self.checkout
        return (0, "", "")

    def _bootstrap_script(self, env: Mapping[str, str]) -> tuple[int, str, str]:
        self.script_runs += 1
        if not env.get("REPO_URL") or not env.get("APP_DIR"):
            return (1, "", "REPO_URL is required")
        if self.checkout is None:
            self._clone()
        else:
            self.checkout = self.repository.head
        code, out, err = self._build()
        if code:
            return (code, out, err)
        self.running = self.built
        return (0, "[vmdeploy] bootstrap complete\n", "")


class HostSession:
    """Session bound to a SimulatedHost."""

    def __init__(self, host: SimulatedHost) -> None:
        self._host = host
        self.uploads: dict[str, Any] = {}

    def __enter__(self) -> HostSession:
        return self

    def __exit__(self, *exc: Any) -> None:
        return None

    def upload(self, payload: Any, remote_path: str, mode: int = 0o755) -> None:
        self.uploads[remote_path] = payload

    def execute(
        self,
        command: str,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        exit_code, stdout, stderr = self._host.handle(command, env)
        return CommandResult(command, exit_code, stdout, stderr)


class _RevisionHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:  # noqa: N802
        running = self.server.host.running  # type: ignore[attr-defined]
        body = (running or "stopped").encode("utf-8")
        self.send_response(200 if running else 503)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        return None


@pytest.fixture
def repository() -> Repository:
    """Upstream repository with one revision pushed."""
    repo = Repository()
    repo.push("v1")
    return repo


@pytest.fixture
def host(repository: Repository) -> SimulatedHost:
    """A fresh instance."""
    return SimulatedHost(repository)


@pytest.fixture
def service_port(host: SimulatedHost) -> Generator[int, None, None]:
    """Serve the host's running revision on a loopback port."""
    server = ThreadingHTTPServer(("127.0.0.1", 0), _RevisionHandler)
    server.host = host  # type: ignore[attr-defined]
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server.server_address[1]
    finally:
        server.shutdown()
        server.server_close()
