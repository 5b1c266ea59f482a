"""Remote execution over SSH.

A :class:`RemoteSession` is one authenticated paramiko connection. Sessions are
opened per command batch and always closed on exit from the ``with`` block.
"""

from __future__ import annotations

import io
import shlex
import socket
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from types import TracebackType
from typing import Protocol

import paramiko

from vmdeploy.lib.errors import CredentialError, RemoteConnectionError
from vmdeploy.lib.logging_config import get_logger
from vmdeploy.models.credentials import Credential
from vmdeploy.models.results import CommandResult

logger = get_logger(__name__)

# Exit status reported when a command exceeds its timeout (same as coreutils timeout)
TIMEOUT_EXIT_CODE = 124

# Bytes taken from a channel stream per read
_READ_CHUNK = 32768

# Pause between polls of an idle channel
_IDLE_POLL_SECONDS = 0.05

_KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (
    paramiko.Ed25519Key,
    paramiko.ECDSAKey,
    paramiko.RSAKey,
)


def load_private_key(credential: Credential) -> paramiko.PKey:
    """Parse an SSH private key from a host login credential.

    Raises:
        CredentialError: If the key is not a supported unencrypted private key
    """
    material = credential.reveal()
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(material))
        except (paramiko.SSHException, ValueError):
            continue
    raise CredentialError(
        credential.source,
        "not an unencrypted Ed25519, ECDSA or RSA private key",
    )


class Session(Protocol):
    """What the bootstrapper and convergence driver need from a session."""

    def __enter__(self) -> Session: ...

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None: ...

    def upload(
        self, payload: str | bytes | Path, remote_path: str, mode: int = 0o755
    ) -> None: ...

    def execute(
        self,
        command: str,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult: ...


SessionFactory = Callable[[str, Credential], Session]


class RemoteSession:
    """Authenticated SSH session to one host.

    Example:
        >>> with RemoteSession("203.0.113.10", "root", credential) as session:
        ...     result = session.execute("uname -a")
        ...     print(result.stdout)
    """

    def __init__(
        self,
        host: str,
        username: str,
        credential: Credential,
        *,
        port: int = 22,
        connect_timeout: float = 15.0,
        command_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the session (the connection opens on ``__enter__``).

        Args:
            host: Host address
            username: Login user
            credential: Host login credential holding a private key
            port: SSH port
            connect_timeout: Bound on TCP connect, banner and authentication
            command_timeout: Default bound on the total run time of each command
            clock: Monotonic time source for command deadlines
            sleep: Pause used while a channel is idle
        """
        self.host = host
        self.username = username
        self.port = port
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self._credential = credential
        self._clock = clock
        self._sleep = sleep
        self._client: paramiko.SSHClient | None = None

    @property
    def is_open(self) -> bool:
        """Whether the underlying transport is connected."""
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def open(self) -> None:
        """Connect and authenticate.

        Raises:
            RemoteConnectionError: On network, protocol or authentication failure
            CredentialError: If the private key cannot be parsed
        """
        pkey = load_private_key(self._credential)
        client = paramiko.SSHClient()
        # Freshly created instances have host keys nobody has seen yet
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())  # nosec B507
        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                pkey=pkey,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except (paramiko.SSHException, OSError, socket.timeout) as exc:
            client.close()
            raise RemoteConnectionError(f"{self.host}:{self.port}", exc) from exc
        logger.debug(f"SSH session opened to {self.username}@{self.host}:{self.port}")
        self._client = client

    def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.debug(f"SSH session to {self.host} closed")

    def __enter__(self) -> RemoteSession:
        self.open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def upload(
        self, payload: str | bytes | Path, remote_path: str, mode: int = 0o755
    ) -> None:
        """Write a payload to a file on the host over SFTP.

        Args:
            payload: File content, or a local Path to read it from
            remote_path: Destination path on the host
            mode: Permission bits applied after upload

        Raises:
            RemoteConnectionError: If the SFTP channel fails
        """
        client = self._require_client()
        if isinstance(payload, Path):
            data = payload.read_bytes()
        elif isinstance(payload, str):
            data = payload.encode("utf-8")
        else:
            data = payload

        try:
            sftp = client.open_sftp()
            try:
                sftp.putfo(io.BytesIO(data), remote_path)
                sftp.chmod(remote_path, mode)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as exc:
            raise RemoteConnectionError(self.host, exc) from exc
        logger.debug(f"Uploaded {len(data)} bytes to {self.host}:{remote_path}")

    def execute(
        self,
        command: str,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Run a command and capture its exit status and output.

        stdout and stderr are drained together so a command filling one
        stream never stalls on the other. ``timeout`` bounds the total run
        time, not the gap between reads. A command that exceeds it is cut
        off and yields exit status 124 with whatever output it produced.

        Args:
            command: Shell command line
            timeout: Bound in seconds (defaults to the session command timeout)
            env: Variables exported for this command only

        Returns:
            CommandResult for the command

        Raises:
            RemoteConnectionError: If the channel cannot be opened
        """
        client = self._require_client()
        full_command = _with_env(command, env)
        effective_timeout = timeout if timeout is not None else self.command_timeout
        logger.debug(f"[{self.host}] $ {command}")

        try:
            _, stdout, _ = client.exec_command(
                full_command, timeout=effective_timeout
            )
        except paramiko.SSHException as exc:
            raise RemoteConnectionError(self.host, exc) from exc

        channel = stdout.channel
        out_chunks: list[bytes] = []
        err_chunks: list[bytes] = []
        deadline = (
            None if effective_timeout is None else self._clock() + effective_timeout
        )

        try:
            while True:
                idle = True
                if channel.recv_ready():
                    out_chunks.append(channel.recv(_READ_CHUNK))
                    idle = False
                if channel.recv_stderr_ready():
                    err_chunks.append(channel.recv_stderr(_READ_CHUNK))
                    idle = False
                if idle and channel.exit_status_ready():
                    break
                if deadline is not None and self._clock() >= deadline:
                    raise socket.timeout()
                if idle:
                    self._sleep(_IDLE_POLL_SECONDS)
            exit_code = channel.recv_exit_status()
        except socket.timeout:
            channel.close()
            logger.warning(
                f"[{self.host}] command timed out after {effective_timeout:g}s: {command}"
            )
            partial_err = _decode(err_chunks)
            if partial_err and not partial_err.endswith("\n"):
                partial_err += "\n"
            return CommandResult(
                command=command,
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=_decode(out_chunks),
                stderr=f"{partial_err}timed out after {effective_timeout:g}s",
            )

        err = _decode(err_chunks)
        result = CommandResult(
            command=command, exit_code=exit_code, stdout=_decode(out_chunks), stderr=err
        )
        if not result.ok:
            logger.debug(f"[{self.host}] exit {exit_code}: {err.strip()[-500:]}")
        return result

    def _require_client(self) -> paramiko.SSHClient:
        if self._client is None:
            raise RemoteConnectionError(self.host, RuntimeError("session is not open"))
        return self._client


def _decode(chunks: list[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


def _with_env(command: str, env: Mapping[str, str] | None) -> str:
    """Prefix a command with exported variables.

    sshd rejects most client-sent variables, so they travel in the command line.
    """
    if not env:
        return command
    exports = " ".join(f"{key}={shlex.quote(value)}" for key, value in env.items())
    return f"export {exports}; {command}"


def session_factory(
    username: str,
    *,
    port: int = 22,
    connect_timeout: float = 15.0,
    command_timeout: float | None = None,
) -> SessionFactory:
    """Return a factory building RemoteSession objects with fixed settings."""

    def _factory(host: str, credential: Credential) -> Session:
        return RemoteSession(
            host,
            username,
            credential,
            port=port,
            connect_timeout=connect_timeout,
            command_timeout=command_timeout,
        )

    return _factory
