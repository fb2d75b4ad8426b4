import unittest

from rns_manager.core import CommandsConfig, ServicesConfig
from rns_manager.errors import Outcome
from rns_manager.services import (
    ServiceController,
    ServiceState,
    get_descriptor,
    rnsd_descriptor,
)
from rns_manager.status_cache import StatusCache
from rns_manager.system import EXIT_NOT_FOUND, CommandRunner, _Attempt


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeRnsd:
    """Simulates the daemon behind pgrep, rnsd and pkill."""

    def __init__(
        self,
        running: bool = False,
        start_works: bool = True,
        polls_to_start: int = 0,
        stop_command_fails: bool = False,
        stop_works: bool = True,
        installed: bool = True,
    ) -> None:
        self.running = running
        self.start_works = start_works
        self.polls_to_start = polls_to_start
        self.stop_command_fails = stop_command_fails
        self.stop_works = stop_works
        self.installed = installed
        self.pending_start = False
        self.calls: list[tuple[str, ...]] = []

    def count(self, argv: tuple[str, ...]) -> int:
        return self.calls.count(argv)

    def __call__(self, argv, timeout, cwd):
        argv = tuple(argv)
        self.calls.append(argv)
        if not self.installed:
            return _Attempt(returncode=EXIT_NOT_FOUND, error=f"command not found: {argv[0]}")
        if argv[0] == "systemctl":
            return _Attempt(returncode=3, error="exited with status 3")
        if argv[0] == "pgrep":
            if self.pending_start:
                if self.polls_to_start <= 0:
                    self.running = True
                    self.pending_start = False
                else:
                    self.polls_to_start -= 1
            return _Attempt(returncode=0 if self.running else 1, error=None if self.running else "exited with status 1")
        if argv == ("rnsd", "--daemon"):
            if self.start_works:
                self.pending_start = True
            return _Attempt(returncode=0)
        if argv == ("rnsd", "--daemon", "stop"):
            if self.stop_command_fails:
                return _Attempt(returncode=1, stderr="no pidfile", error="exited with status 1")
            if self.stop_works:
                self.running = False
            return _Attempt(returncode=0)
        if argv[0] == "pkill":
            self.running = False
            return _Attempt(returncode=0)
        raise AssertionError(f"unexpected command {argv}")


def _controller(daemon: FakeRnsd, clock: FakeClock | None = None, max_wait: float = 10.0):
    clock = clock or FakeClock()
    runner = CommandRunner(CommandsConfig(max_attempts=1), sleep=clock.sleep, clock=clock, launcher=daemon)
    descriptor = rnsd_descriptor(ServicesConfig(poll_interval=1.0, max_wait=max_wait))
    cache = StatusCache(default_ttl=10, clock=clock)
    return ServiceController(descriptor, runner, cache, sleep=clock.sleep, clock=clock), cache


class TestServiceController(unittest.TestCase):
    def test_initial_state_is_probed(self) -> None:
        running, _ = _controller(FakeRnsd(running=True))
        stopped, _ = _controller(FakeRnsd(running=False))

        self.assertEqual(running.state, ServiceState.RUNNING)
        self.assertEqual(stopped.state, ServiceState.STOPPED)

    def test_missing_tools_report_unknown(self) -> None:
        controller, _ = _controller(FakeRnsd(installed=False))

        self.assertEqual(controller.status(), ServiceState.UNKNOWN)

    def test_transitions_refuse_when_liveness_is_unknown(self) -> None:
        daemon = FakeRnsd(installed=False)
        controller, _ = _controller(daemon)

        with self.assertLogs("rns_manager.services", level="ERROR"):
            stopped = controller.stop()
            started = controller.start()

        for result in (stopped, started):
            self.assertEqual(result.outcome, Outcome.PERMANENT)
            self.assertEqual(result.state, ServiceState.UNKNOWN)
            self.assertFalse(result.changed)
        self.assertEqual(daemon.count(("rnsd", "--daemon", "stop")), 0)
        self.assertEqual(daemon.count(("pkill", "-x", "rnsd")), 0)
        self.assertEqual(daemon.count(("rnsd", "--daemon")), 0)

    def test_stop_that_never_converges_is_reported_stuck(self) -> None:
        clock = FakeClock()
        daemon = FakeRnsd(running=True, stop_works=False)
        controller, _ = _controller(daemon, clock, max_wait=3.0)

        result = controller.stop()

        self.assertEqual(result.outcome, Outcome.STUCK)
        self.assertTrue(result.stuck)
        self.assertLessEqual(result.polls, 4)
        self.assertLessEqual(clock.now, 3.0)
        self.assertEqual(result.state, ServiceState.STOPPING)
        self.assertEqual(controller.state, ServiceState.STOPPING)

    def test_restart_aborts_when_stop_is_stuck(self) -> None:
        clock = FakeClock()
        daemon = FakeRnsd(running=True, stop_works=False)
        controller, _ = _controller(daemon, clock, max_wait=3.0)

        result = controller.restart()

        self.assertEqual(result.outcome, Outcome.STUCK)
        self.assertEqual(result.action, "stop")
        self.assertEqual(daemon.count(("rnsd", "--daemon")), 0)

    def test_start_when_running_is_a_noop(self) -> None:
        daemon = FakeRnsd(running=True)
        controller, _ = _controller(daemon)

        first = controller.start()
        second = controller.start()

        self.assertEqual(daemon.count(("rnsd", "--daemon")), 0)
        for result in (first, second):
            self.assertTrue(result.ok)
            self.assertFalse(result.changed)
            self.assertEqual(result.state, ServiceState.RUNNING)

    def test_start_converges_within_polls(self) -> None:
        clock = FakeClock()
        daemon = FakeRnsd(polls_to_start=2)
        controller, _ = _controller(daemon, clock)

        result = controller.start()

        self.assertTrue(result.ok)
        self.assertTrue(result.changed)
        self.assertTrue(result.converged)
        self.assertEqual(result.polls, 3)
        self.assertEqual(controller.state, ServiceState.RUNNING)
        self.assertEqual(clock.sleeps, [1.0, 1.0])

    def test_start_that_never_converges_is_reported_stuck(self) -> None:
        clock = FakeClock()
        daemon = FakeRnsd(start_works=False)
        controller, _ = _controller(daemon, clock, max_wait=3.0)

        result = controller.start()

        self.assertEqual(result.outcome, Outcome.STUCK)
        self.assertTrue(result.stuck)
        self.assertEqual(controller.state, ServiceState.STARTING)
        self.assertLessEqual(result.polls, 4)
        self.assertLessEqual(clock.now, 3.0)

    def test_status_is_fresh_after_transition(self) -> None:
        clock = FakeClock()
        daemon = FakeRnsd()
        controller, cache = _controller(daemon, clock)
        self.assertEqual(controller.status(), ServiceState.STOPPED)

        controller.start()

        self.assertEqual(controller.status(), ServiceState.RUNNING)

    def test_stop_falls_back_to_pkill(self) -> None:
        daemon = FakeRnsd(running=True, stop_command_fails=True)
        controller, _ = _controller(daemon)

        result = controller.stop()

        self.assertTrue(result.ok)
        self.assertEqual(daemon.count(("pkill", "-x", "rnsd")), 1)
        self.assertEqual(controller.state, ServiceState.STOPPED)

    def test_stop_when_stopped_is_a_noop(self) -> None:
        daemon = FakeRnsd(running=False)
        controller, _ = _controller(daemon)

        result = controller.stop()

        self.assertTrue(result.ok)
        self.assertFalse(result.changed)
        self.assertEqual(daemon.count(("rnsd", "--daemon", "stop")), 0)

    def test_restart_stops_then_starts(self) -> None:
        daemon = FakeRnsd(running=True)
        controller, _ = _controller(daemon)

        result = controller.restart()

        self.assertTrue(result.ok)
        self.assertEqual(result.action, "restart")
        self.assertEqual(daemon.count(("rnsd", "--daemon", "stop")), 1)
        self.assertEqual(daemon.count(("rnsd", "--daemon")), 1)
        self.assertEqual(controller.state, ServiceState.RUNNING)


class TestDescriptors(unittest.TestCase):
    def test_builtin_descriptors(self) -> None:
        rnsd = get_descriptor("rnsd", ServicesConfig(max_wait=4))

        self.assertEqual(rnsd.start_command, ("rnsd", "--daemon"))
        self.assertEqual(rnsd.stop_fallback, ("pkill", "-x", "rnsd"))
        self.assertEqual(rnsd.max_wait, 4)
        self.assertEqual(get_descriptor("meshtasticd").name, "meshtasticd")

    def test_unknown_service(self) -> None:
        with self.assertRaises(KeyError):
            get_descriptor("sshd")


if __name__ == "__main__":
    unittest.main()
