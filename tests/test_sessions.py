"""Tests for the session registry using fake process handles."""
import time
from unittest.mock import MagicMock

import pytest

from controlplane.errors import NotFoundError
from controlplane.tools.sessions import SessionRegistry, SessionStatus


def fake_process():
    # pid=None keeps stop_process on the handle's own terminate()
    return MagicMock(pid=None)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestRegister:
    def test_ids_increment(self):
        registry = SessionRegistry()
        first = registry.register(fake_process(), "a", "/tmp")
        second = registry.register(fake_process(), "b", "/tmp")
        assert (first.id, second.id) == (1, 2)
        assert first.status is SessionStatus.RUNNING

    def test_get_missing(self):
        with pytest.raises(NotFoundError):
            SessionRegistry().get(42)


def exits_on(registry, session, method, code):
    """Make `session.process.<method>()` look like the process exiting."""
    getattr(session.process, method).side_effect = lambda: registry.mark_exited(session, code)


class TestKill:
    def test_status_running_until_exit_observed(self):
        registry = SessionRegistry(kill_grace_seconds=0.05)
        session = registry.register(fake_process(), "x", "/tmp")

        registry.kill(session.id)

        assert session.status is SessionStatus.RUNNING
        assert session.kill_requested is True
        session.process.terminate.assert_called_once()
        session.process.kill.assert_called_once()
        registry.mark_exited(session, -9)
        assert session.status is SessionStatus.KILLED

    def test_sigterm_is_enough(self):
        registry = SessionRegistry(kill_grace_seconds=5)
        session = registry.register(fake_process(), "x", "/tmp")
        exits_on(registry, session, "terminate", -15)

        registry.kill(session.id)

        assert session.status is SessionStatus.KILLED
        assert session.exit_code == -15
        session.process.kill.assert_not_called()

    def test_escalates_to_sigkill(self):
        registry = SessionRegistry(kill_grace_seconds=0.05)
        session = registry.register(fake_process(), "x", "/tmp")
        exits_on(registry, session, "kill", -9)

        registry.kill(session.id)

        session.process.terminate.assert_called_once()
        assert session.status is SessionStatus.KILLED
        assert session.exit_code == -9

    def test_unfinished_kill_can_be_retried(self):
        registry = SessionRegistry(kill_grace_seconds=0.05)
        session = registry.register(fake_process(), "x", "/tmp")
        registry.kill(session.id)
        exits_on(registry, session, "terminate", -15)

        assert registry.kill_all() == 1
        assert session.status is SessionStatus.KILLED


class TestKillAll:
    def test_only_running_sessions_terminated(self):
        registry = SessionRegistry(kill_grace_seconds=5)
        running = [registry.register(fake_process(), f"cmd {i}", "/tmp") for i in range(3)]
        for session in running:
            exits_on(registry, session, "terminate", -15)
        done = registry.register(fake_process(), "done", "/tmp")
        registry.mark_exited(done, 0)

        assert registry.kill_all() == 3
        for session in running:
            session.process.terminate.assert_called_once()
            session.process.kill.assert_not_called()
            assert session.status is SessionStatus.KILLED
        done.process.terminate.assert_not_called()
        assert done.status is SessionStatus.COMPLETED

    def test_continues_after_failure(self):
        registry = SessionRegistry(kill_grace_seconds=5)
        sessions = [registry.register(fake_process(), f"cmd {i}", "/tmp") for i in range(3)]
        sessions[0].process.terminate.side_effect = OSError("permission denied")
        for session in sessions[1:]:
            exits_on(registry, session, "terminate", -15)
        done = registry.register(fake_process(), "done", "/tmp")
        registry.mark_exited(done, 1)

        assert registry.kill_all() == 2
        for session in sessions:
            session.process.terminate.assert_called_once()
        assert sessions[0].status is SessionStatus.RUNNING
        assert sessions[0].kill_requested is False
        assert sessions[1].status is SessionStatus.KILLED
        assert sessions[2].status is SessionStatus.KILLED
        done.process.terminate.assert_not_called()

    def test_stragglers_share_one_grace_period(self):
        registry = SessionRegistry(kill_grace_seconds=0.3)
        stubborn = [registry.register(fake_process(), f"cmd {i}", "/tmp") for i in range(3)]
        for session in stubborn:
            exits_on(registry, session, "kill", -9)

        started = time.monotonic()
        assert registry.kill_all() == 3
        assert time.monotonic() - started < 0.9
        for session in stubborn:
            session.process.kill.assert_called_once()
            assert session.status is SessionStatus.KILLED


class TestExitStatus:
    def test_failed_exit(self):
        registry = SessionRegistry()
        session = registry.register(fake_process(), "x", "/tmp")
        registry.mark_exited(session, 1)
        assert session.status is SessionStatus.FAILED
        assert session.exited.is_set()

    def test_kill_finished_session_is_noop(self):
        registry = SessionRegistry()
        session = registry.register(fake_process(), "x", "/tmp")
        registry.mark_exited(session, 0)
        registry.kill(session.id)
        session.process.terminate.assert_not_called()
        assert session.status is SessionStatus.COMPLETED


class TestFollow:
    def test_reads_until_eof(self):
        registry = SessionRegistry(max_output_lines=2)
        process = fake_process()
        process.stdout.readline.side_effect = [b"a\n", b"b\n", b"c\n", b""]
        process.wait.return_value = 0
        session = registry.register(process, "x", "/tmp")

        registry.follow(session)

        assert list(session.output) == ["b", "c"]
        assert session.dropped_lines == 1
        assert session.status is SessionStatus.COMPLETED
        process.stdout.close.assert_called_once()


class TestReap:
    def test_reaps_only_expired_finished_sessions(self):
        clock = FakeClock()
        registry = SessionRegistry(retention_seconds=60, clock=clock)
        running = registry.register(fake_process(), "running", "/tmp")
        old = registry.register(fake_process(), "old", "/tmp")
        registry.mark_exited(old, 0)
        clock.now += 30
        recent = registry.register(fake_process(), "recent", "/tmp")
        registry.mark_exited(recent, 0)

        clock.now += 40
        assert registry.reap() == 1
        assert [s.id for s in registry.list()] == [running.id, recent.id]

    def test_running_sessions_never_reaped(self):
        clock = FakeClock()
        registry = SessionRegistry(retention_seconds=1, clock=clock)
        session = registry.register(fake_process(), "running", "/tmp")
        clock.now += 10 ** 6
        assert registry.reap() == 0
        assert registry.get(session.id) is session

    def test_register_reaps(self):
        clock = FakeClock()
        registry = SessionRegistry(retention_seconds=5, clock=clock)
        old = registry.register(fake_process(), "old", "/tmp")
        registry.mark_exited(old, 0)
        clock.now += 10
        registry.register(fake_process(), "new", "/tmp")
        with pytest.raises(NotFoundError):
            registry.get(old.id)
