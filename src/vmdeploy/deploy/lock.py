"""Per-instance deployment lock.

The running container set on the instance is shared by every pipeline run
that targets it. ``InstanceLock`` serializes the convergence sequence:

* in-process, through a single-slot ``threading.Lock`` per key;
* across processes and CI runners, through a lock directory on the instance,
  created with ``mkdir`` (atomic on POSIX filesystems).

The holder touches the lock directory between steps. A lock untouched for
``stale_after`` seconds is assumed abandoned by a killed run and is broken
under ``flock`` on a guard file beside it. Release and refresh only act
while the owner file still names this holder.
"""

from __future__ import annotations

import os
import shlex
import socket
import threading
import time
from collections.abc import Callable
from types import TracebackType

from vmdeploy.config.defaults import DEFAULT_LOCK_STALE_AFTER, REMOTE_LOCK_DIR
from vmdeploy.deploy.remote import Session
from vmdeploy.lib.errors import LockTimeoutError
from vmdeploy.lib.logging_config import get_logger

logger = get_logger(__name__)

_local_locks: dict[str, threading.Lock] = {}
_registry_guard = threading.Lock()


def _local_lock(key: str) -> threading.Lock:
    with _registry_guard:
        return _local_locks.setdefault(key, threading.Lock())


def remote_lock_path(key: str) -> str:
    """Lock directory on the instance for a key."""
    safe = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in key)
    return f"{REMOTE_LOCK_DIR}/vmdeploy-{safe}.lock"


def remote_guard_path(key: str) -> str:
    """File on the instance that serializes breaking the lock for a key."""
    return remote_lock_path(key).removesuffix(".lock") + ".guard"


class InstanceLock:
    """Named mutual-exclusion lock keyed by instance identifier.

    Use as a context manager around the convergence sequence; the lock is
    released on every exit path.

    Example:
        >>> with InstanceLock(session, state.instance_id, timeout=600):
        ...     driver.run_cycle(session)
    """

    def __init__(
        self,
        session: Session,
        key: str,
        *,
        timeout: float = 600.0,
        stale_after: float = DEFAULT_LOCK_STALE_AFTER,
        poll_interval: float = 5.0,
        owner: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.key = key
        self.path = remote_lock_path(key)
        self.owner = owner or f"{socket.gethostname()}:{os.getpid()}"
        self._session = session
        self._timeout = timeout
        self._stale_after = stale_after
        self._poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock
        self._local = _local_lock(key)
        self._held_local = False
        self._held_remote = False

    def acquire(self) -> None:
        """Acquire the local and remote locks.

        Raises:
            LockTimeoutError: If either lock is still held after the timeout
        """
        start = self._clock()
        if not self._local.acquire(timeout=self._timeout if self._timeout > 0 else 0):
            raise LockTimeoutError(self.key, self._clock() - start, holder="this process")
        self._held_local = True

        try:
            self._acquire_remote(start)
        except BaseException:
            self._local.release()
            self._held_local = False
            raise

    def release(self) -> None:
        """Release whatever this lock holds."""
        try:
            if self._held_remote:
                result = self._session.execute(
                    f"{self._owned()} && rm -rf {shlex.quote(self.path)}"
                )
                if not result.ok:
                    logger.warning(
                        f"Remote lock {self.path} was not ours to remove; "
                        "it was broken or is already gone"
                    )
                self._held_remote = False
                logger.debug(f"Released deployment lock {self.path}")
        finally:
            if self._held_local:
                self._local.release()
                self._held_local = False

    def __enter__(self) -> InstanceLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    def refresh(self) -> bool:
        """Touch the remote lock so long cycles never look stale.

        Returns:
            False when the lock directory is gone or names another owner
        """
        if not self._held_remote:
            return False
        result = self._session.execute(
            f"{self._owned()} && touch -c {shlex.quote(self.path)}"
        )
        if not result.ok:
            logger.warning(f"Deployment lock {self.path} is no longer held by {self.owner}")
        return result.ok

    def _owned(self) -> str:
        """Shell test passing only while this lock's owner file names us."""
        return (
            f'[ "$(cat {shlex.quote(self.path)}/owner 2>/dev/null)" = '
            f"{shlex.quote(self.owner)} ]"
        )

    def _break_stale(self) -> bool:
        """Remove the lock directory if it is still older than ``stale_after``.

        The age is re-read under ``flock`` on a guard file, so of several
        waiters that saw the same stale lock only the first removes it and
        the rest find the fresh lock it was replaced with.
        """
        path = shlex.quote(self.path)
        inner = (
            f"[ $(( $(date +%s) - $(stat -c %Y {path} 2>/dev/null || date +%s) )) "
            f"-gt {int(self._stale_after)} ] && rm -rf {path}"
        )
        guard = shlex.quote(remote_guard_path(self.key))
        return self._session.execute(f"flock {guard} sh -c {shlex.quote(inner)}").ok

    def _acquire_remote(self, start: float) -> None:
        path = shlex.quote(self.path)
        owner = shlex.quote(self.owner)
        take = f"mkdir {path} 2>/dev/null && printf '%s' {owner} > {path}/owner"
        stale = int(self._stale_after)
        while True:
            if self._session.execute(take).ok:
                self._held_remote = True
                logger.info(f"Acquired deployment lock {self.path}")
                return

            age = self._session.execute(
                f"echo $(( $(date +%s) - $(stat -c %Y {path} 2>/dev/null || date +%s) ))"
            )
            holder = self._session.execute(f"cat {path}/owner 2>/dev/null").stdout.strip()
            try:
                age_seconds = int(age.stdout.strip())
            except ValueError:
                age_seconds = 0

            if age_seconds > stale:
                if self._break_stale():
                    logger.warning(
                        f"Broke stale deployment lock {self.path} "
                        f"held by {holder or 'unknown'} for {age_seconds}s"
                    )
                    continue
                logger.debug(f"Deployment lock {self.path} was refreshed or retaken")

            waited = self._clock() - start
            if waited + self._poll_interval > self._timeout:
                raise LockTimeoutError(self.key, waited, holder=holder or None)
            logger.info(
                f"Deployment lock {self.path} held by {holder or 'unknown'}; waiting"
            )
            self._sleep(self._poll_interval)
