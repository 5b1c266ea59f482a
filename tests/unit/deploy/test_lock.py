"""Unit tests for the per-instance deployment lock."""

from __future__ import annotations

import threading
from typing import Any

import pytest

from vmdeploy.deploy.lock import InstanceLock, remote_lock_path
from vmdeploy.lib.errors import LockTimeoutError


def _lock(session: Any, clock: Any, key: str = "1001", **kwargs: Any) -> InstanceLock:
    kwargs.setdefault("timeout", 20)
    kwargs.setdefault("poll_interval", 5)
    return InstanceLock(
        session, key, owner="runner-a:1", sleep=clock.sleep, clock=clock, **kwargs
    )


class TestRemoteLockPath:
    """Tests for remote_lock_path."""

    def test_key_sanitized(self) -> None:
        """Unsafe characters in keys are replaced."""
        assert remote_lock_path("10 01/x") == "/tmp/vmdeploy-10_01_x.lock"


class TestInstanceLock:
    """Tests for InstanceLock."""

    def test_acquire_and_release(self, make_session: Any, fake_clock: Any) -> None:
        """The lock directory is created and removed around the block."""
        session = make_session()

        with _lock(session, fake_clock) as lock:
            assert session.ran("mkdir /tmp/vmdeploy-1001.lock")
            assert "runner-a:1" in session.commands[0]
            assert not session.ran("rm -rf")

        assert session.commands[-1].endswith(f"] && rm -rf {lock.path}")
        assert "runner-a:1" in session.commands[-1]

    def test_released_when_block_raises(self, make_session: Any, fake_clock: Any) -> None:
        """The lock is released on error exits too."""
        session = make_session()

        with pytest.raises(RuntimeError):
            with _lock(session, fake_clock, key="rel-1"):
                raise RuntimeError("boom")

        assert session.commands[-1].endswith("rm -rf /tmp/vmdeploy-rel-1.lock")
        # The in-process lock was released as well
        with _lock(make_session(), fake_clock, key="rel-1"):
            pass

    def test_waits_for_holder(self, make_session: Any, fake_clock: Any) -> None:
        """A held lock is retried until it frees up."""
        attempts = {"n": 0}

        def handler(command: str) -> tuple[int, str, str]:
            if command.startswith("mkdir"):
                attempts["n"] += 1
                return (0, "", "") if attempts["n"] == 3 else (1, "", "exists")
            if command.startswith("echo $(("):
                return (0, "12\n", "")
            if command.startswith("cat"):
                return (0, "runner-b:7", "")
            return (0, "", "")

        session = make_session(handler)
        with _lock(session, fake_clock, key="wait-1"):
            pass

        assert attempts["n"] == 3
        assert fake_clock.sleeps == [5, 5]

    def test_times_out(self, make_session: Any, fake_clock: Any) -> None:
        """A lock held past the timeout raises LockTimeoutError."""
        session = make_session(
            [
                ("mkdir", (1, "", "exists")),
                ("echo $((", (0, "30\n", "")),
                ("/owner", (0, "runner-b:7", "")),
            ]
        )

        with pytest.raises(LockTimeoutError) as exc_info:
            _lock(session, fake_clock, key="timeout-1").acquire()

        assert exc_info.value.holder == "runner-b:7"
        assert fake_clock.now <= 20
        assert not session.ran("rm -rf")
        # Local lock not leaked
        with _lock(make_session(), fake_clock, key="timeout-1"):
            pass

    def test_breaks_stale_lock(self, make_session: Any, fake_clock: Any) -> None:
        """A lock older than stale_after is removed and retaken."""
        attempts = {"n": 0}

        def handler(command: str) -> tuple[int, str, str]:
            if command.startswith("mkdir"):
                attempts["n"] += 1
                return (0, "", "") if attempts["n"] == 2 else (1, "", "exists")
            if command.startswith("echo $(("):
                return (0, "4000\n", "")
            return (0, "", "")

        session = make_session(handler)
        with _lock(session, fake_clock, key="stale-1", stale_after=1800):
            (breaker,) = [c for c in session.commands if c.startswith("flock")]

        assert breaker.startswith("flock /tmp/vmdeploy-stale-1.guard sh -c ")
        assert "-gt 1800 ] && rm -rf /tmp/vmdeploy-stale-1.lock" in breaker
        assert fake_clock.sleeps == []

    def test_stale_lock_retaken_meanwhile_is_kept(
        self, make_session: Any, fake_clock: Any
    ) -> None:
        """A waiter whose guarded age check fails leaves the lock alone and waits."""
        attempts = {"n": 0}

        def handler(command: str) -> tuple[int, str, str]:
            if command.startswith("mkdir"):
                attempts["n"] += 1
                return (0, "", "") if attempts["n"] == 2 else (1, "", "exists")
            if command.startswith("echo $(("):
                return (0, "4000\n", "")
            if command.startswith("flock"):
                # Another waiter broke it first and its fresh lock is not stale
                return (1, "", "")
            return (0, "", "")

        session = make_session(handler)
        with _lock(session, fake_clock, key="stale-2", stale_after=1800):
            pass

        assert attempts["n"] == 2
        assert fake_clock.sleeps == [5]

    def test_refresh_touches_owned_lock(self, make_session: Any, fake_clock: Any) -> None:
        """refresh updates the lock mtime only while the owner file names us."""
        session = make_session()

        with _lock(session, fake_clock, key="refresh-1") as lock:
            assert lock.refresh() is True

        refresh = session.commands[1]
        assert refresh.startswith(
            '[ "$(cat /tmp/vmdeploy-refresh-1.lock/owner 2>/dev/null)" = runner-a:1 ]'
        )
        assert refresh.endswith("&& touch -c /tmp/vmdeploy-refresh-1.lock")

    def test_refresh_reports_lost_lock(self, make_session: Any, fake_clock: Any) -> None:
        """A lock retaken by another runner is left to that runner."""
        session = make_session([("/owner 2>/dev/null)\" = ", (1, "", ""))])

        with _lock(session, fake_clock, key="refresh-2") as lock:
            assert lock.refresh() is False

        guarded = [c for c in session.commands if "touch -c" in c or "rm -rf" in c]
        assert len(guarded) == 2
        assert all(c.startswith('[ "$(cat ') for c in guarded)

    def test_refresh_without_remote_lock(self, make_session: Any, fake_clock: Any) -> None:
        """An unacquired lock has nothing to refresh."""
        session = make_session()

        assert _lock(session, fake_clock, key="refresh-3").refresh() is False
        assert session.commands == []

    def test_local_lock_serializes_threads(self, make_session: Any, fake_clock: Any) -> None:
        """A second holder in the same process cannot enter until release."""
        first = _lock(make_session(), fake_clock, key="thread-1")
        first.acquire()
        acquired = threading.Event()

        def contender() -> None:
            with InstanceLock(make_session(), "thread-1", timeout=5):
                acquired.set()

        worker = threading.Thread(target=contender)
        worker.start()
        assert not acquired.wait(0.2)
        first.release()
        worker.join(timeout=5)
        assert acquired.is_set()

    def test_local_timeout(self, make_session: Any, fake_clock: Any) -> None:
        """A zero timeout fails immediately when the key is held locally."""
        holder = _lock(make_session(), fake_clock, key="local-1")
        holder.acquire()
        try:
            with pytest.raises(LockTimeoutError, match="this process"):
                _lock(make_session(), fake_clock, key="local-1", timeout=0).acquire()
        finally:
            holder.release()
