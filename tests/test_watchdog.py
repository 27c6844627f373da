"""Tests for the watchdog loop."""

import time
from unittest.mock import patch

import pytest

from memwatchdog import heap_dump
from memwatchdog.config import Configuration, MonitorStack
from memwatchdog.exceptions import HandlerError, WatchdogError
from memwatchdog.handlers import BaseHandler
from memwatchdog.monitor import BaseMonitor, ViolationResult
from memwatchdog.reporters import EventReporter, QueuedEventReporter, WatchdogEvent
from memwatchdog.watchdog import LoopState, Watchdog


class ScriptedMonitor(BaseMonitor):
    """Monitor that plays back a list of outcomes, then repeats ``default``.

    An outcome is a bool (violated or not) or an exception to raise.
    """

    def __init__(self, name, script=(), default=False, on_call=None):
        super().__init__(name)
        self.script = list(script)
        self.default = default
        self.on_call = on_call
        self.calls = 0

    def call(self):
        self.calls += 1
        if self.on_call:
            self.on_call(self.calls)

        outcome = self.script[self.calls - 1] if self.calls <= len(self.script) else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return ViolationResult(violated=outcome, payload={"tick": self.calls})


class ReturningMonitor(BaseMonitor):
    """Monitor that always returns ``value`` as-is."""

    def __init__(self, name, value):
        super().__init__(name)
        self.value = value
        self.calls = 0

    def call(self):
        self.calls += 1
        return self.value


class RecordingReporter(EventReporter):
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    def of_kind(self, kind):
        return [e for e in self.events if e.kind == kind]

    def strikes(self, monitor):
        return [
            e.attributes["strikes"]
            for e in self.of_kind(WatchdogEvent.STRIKE_RECORDED)
            if e.attributes["monitor"] == monitor
        ]


class FailingReporter(EventReporter):
    def emit(self, event):
        raise RuntimeError("sink unavailable")


class SlowReporter(EventReporter):
    def __init__(self, delay):
        self.delay = delay
        self.events = []

    def emit(self, event):
        time.sleep(self.delay)
        self.events.append(event)


class CountingHandler(BaseHandler):
    def __init__(self, error=None):
        self.calls = 0
        self.error = error

    def call(self):
        self.calls += 1
        if self.error:
            raise self.error


def make_config(*entries, handler=None, reporter=None, **kwargs):
    """Build a fast-ticking configuration from (monitor, max_strikes) pairs."""
    stack = MonitorStack()
    for monitor, max_strikes in entries:
        stack.push(monitor, max_strikes=max_strikes)

    return Configuration(
        handler=handler or CountingHandler(),
        sleep_interval_seconds=0.001,
        monitors=stack.entries(),
        event_reporter=reporter or RecordingReporter(),
        **kwargs,
    )


def stop_after(watchdog_ref, ticks):
    """on_call hook that requests a stop once ``ticks`` calls have happened."""

    def on_call(calls):
        if calls == ticks:
            watchdog_ref[0].stop()

    return on_call


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return False


@pytest.fixture(autouse=True)
def clear_heap_dump_request():
    heap_dump._clear()
    yield
    heap_dump._clear()


class TestWatchdogLifecycle:
    """Test watchdog state transitions."""

    def test_initial_state_is_idle(self):
        """A new watchdog has not started."""
        watchdog = Watchdog(make_config())
        assert watchdog.state is LoopState.IDLE

    def test_background_start_and_stop(self):
        """A background loop keeps running until asked to stop."""
        monitor = ScriptedMonitor("ok")
        watchdog = Watchdog(make_config((monitor, 0)))

        watchdog.start()
        assert wait_for(lambda: monitor.calls >= 3)
        assert watchdog.state is LoopState.RUNNING

        watchdog.stop()
        assert watchdog.join(timeout=2.0) is True
        assert watchdog.state is LoopState.STOPPED

    def test_cannot_start_twice(self):
        """Starting a running watchdog fails."""
        watchdog = Watchdog(make_config())
        watchdog.start()
        try:
            with pytest.raises(WatchdogError):
                watchdog.start()
        finally:
            watchdog.stop()
            watchdog.join(timeout=2.0)

    def test_stopped_is_terminal(self):
        """A stopped watchdog cannot be restarted."""
        watchdog = Watchdog(make_config())
        watchdog.start()
        watchdog.stop()
        watchdog.join(timeout=2.0)

        with pytest.raises(WatchdogError):
            watchdog.start()

    def test_stop_before_start(self):
        """Stopping an idle watchdog makes it stopped without running."""
        reporter = RecordingReporter()
        watchdog = Watchdog(make_config(reporter=reporter))

        watchdog.stop()

        assert watchdog.state is LoopState.STOPPED
        assert reporter.events == []
        with pytest.raises(WatchdogError):
            watchdog.start()

    def test_start_with_configuration(self):
        """A configuration passed to start replaces the constructor one."""
        monitor = ScriptedMonitor("hard", default=True)
        handler = CountingHandler()
        watchdog = Watchdog()

        watchdog.start(make_config((monitor, 0), handler=handler), background=False)

        assert handler.calls == 1

    def test_started_event_lists_monitors(self):
        """The started event names the monitors in stack order."""
        reporter = RecordingReporter()
        ref = []
        first = ScriptedMonitor("first", on_call=stop_after(ref, 1))
        second = ScriptedMonitor("second")
        watchdog = Watchdog(make_config((first, 1), (second, 1), reporter=reporter))
        ref.append(watchdog)

        watchdog.start(background=False)

        started = reporter.of_kind(WatchdogEvent.STARTED)
        assert len(started) == 1
        assert started[0].attributes["monitors"] == ["first", "second"]
        assert reporter.events[-1].kind == WatchdogEvent.STOPPED
        assert reporter.events[-1].attributes["reason"] == "stop_requested"

    def test_empty_stack_is_a_noop(self):
        """A watchdog without monitors just sleeps until stopped."""
        reporter = RecordingReporter()
        handler = CountingHandler()
        watchdog = Watchdog(make_config(handler=handler, reporter=reporter))

        watchdog.start()
        time.sleep(0.05)
        watchdog.stop()
        watchdog.join(timeout=2.0)

        assert handler.calls == 0
        assert [e.kind for e in reporter.events] == [WatchdogEvent.STARTED, WatchdogEvent.STOPPED]


class TestStrikeAccounting:
    """Test strikes and escalation."""

    def test_healthy_monitors_never_escalate(self):
        """Monitors that never violate keep zero strikes."""
        reporter = RecordingReporter()
        handler = CountingHandler()
        monitor = ScriptedMonitor("ok")
        watchdog = Watchdog(make_config((monitor, 0), handler=handler, reporter=reporter))

        watchdog.start()
        assert wait_for(lambda: monitor.calls >= 20)
        assert watchdog.strikes == {"ok": 0}
        watchdog.stop()
        watchdog.join(timeout=2.0)

        assert handler.calls == 0
        assert reporter.of_kind(WatchdogEvent.STRIKE_RECORDED) == []
        assert len(reporter.of_kind(WatchdogEvent.MONITOR_OK)) == monitor.calls

    @pytest.mark.parametrize("max_strikes", [0, 1, 3, 5])
    def test_handler_fires_once_strikes_exceed_budget(self, max_strikes):
        """With max_strikes=N the handler fires on violation N+1."""
        reporter = RecordingReporter()
        handler = CountingHandler()
        monitor = ScriptedMonitor("leaky", default=True)
        watchdog = Watchdog(make_config((monitor, max_strikes), handler=handler, reporter=reporter))

        watchdog.start(background=False)

        assert handler.calls == 1
        assert monitor.calls == max_strikes + 1
        assert reporter.strikes("leaky") == list(range(1, max_strikes + 2))
        assert watchdog.state is LoopState.STOPPED

    def test_zero_tolerance_fires_on_first_violation(self):
        """max_strikes=0 escalates immediately."""
        handler = CountingHandler()
        monitor = ScriptedMonitor("hard", script=[True])
        watchdog = Watchdog(make_config((monitor, 0), handler=handler))

        watchdog.start(background=False)

        assert handler.calls == 1
        assert monitor.calls == 1

    def test_alternating_violations_never_escalate(self):
        """A clean tick resets strikes, so violate/ok forever never escalates."""
        reporter = RecordingReporter()
        handler = CountingHandler()
        ref = []
        monitor = ScriptedMonitor(
            "flappy", script=[True, False] * 50, on_call=stop_after(ref, 100)
        )
        watchdog = Watchdog(make_config((monitor, 1), handler=handler, reporter=reporter))
        ref.append(watchdog)

        watchdog.start(background=False)

        assert handler.calls == 0
        assert set(reporter.strikes("flappy")) == {1}

    def test_scenario_single_monitor(self):
        """max_strikes=2, violating on ticks 1-3: handler once after tick 3."""
        reporter = RecordingReporter()
        handler = CountingHandler()
        monitor = ScriptedMonitor("m", script=[True, True, True], default=False)
        watchdog = Watchdog(make_config((monitor, 2), handler=handler, reporter=reporter))

        watchdog.start(background=False)

        assert handler.calls == 1
        assert monitor.calls == 3
        assert reporter.strikes("m") == [1, 2, 3]

        kinds = [e.kind for e in reporter.events]
        assert kinds.index(WatchdogEvent.THRESHOLD_EXCEEDED) < kinds.index(
            WatchdogEvent.HANDLER_INVOKED
        )
        assert reporter.events[-1].attributes["reason"] == "handler_invoked"

    def test_scenario_two_monitors_breach_same_tick(self):
        """A (0 strikes) and B (5 strikes) violate on tick 1: A triggers once."""
        reporter = RecordingReporter()
        handler = CountingHandler()
        a = ScriptedMonitor("A", default=True)
        b = ScriptedMonitor("B", default=True)
        watchdog = Watchdog(make_config((a, 0), (b, 5), handler=handler, reporter=reporter))

        watchdog.start(background=False)

        assert handler.calls == 1
        exceeded = reporter.of_kind(WatchdogEvent.THRESHOLD_EXCEEDED)
        assert [e.attributes["monitor"] for e in exceeded] == ["A"]
        assert reporter.strikes("B") == [1]
        assert reporter.events[-1].attributes["strikes"] == {"A": 1, "B": 1}

    def test_first_breach_in_stack_order_wins(self):
        """Only one handler call even when every monitor breaches on one tick."""
        reporter = RecordingReporter()
        handler = CountingHandler()
        monitors = [ScriptedMonitor(name, default=True) for name in ("x", "y", "z")]
        watchdog = Watchdog(
            make_config(*[(m, 0) for m in monitors], handler=handler, reporter=reporter)
        )

        watchdog.start(background=False)

        assert handler.calls == 1
        exceeded = reporter.of_kind(WatchdogEvent.THRESHOLD_EXCEEDED)
        assert [e.attributes["monitor"] for e in exceeded] == ["x"]
        assert [m.calls for m in monitors] == [1, 1, 1]

    def test_strike_event_carries_payload(self):
        """Strike events include the monitor's diagnostic payload."""
        reporter = RecordingReporter()
        monitor = ScriptedMonitor("m", default=True)
        watchdog = Watchdog(make_config((monitor, 0), reporter=reporter))

        watchdog.start(background=False)

        event = reporter.of_kind(WatchdogEvent.STRIKE_RECORDED)[0]
        assert event.attributes["tick"] == 1
        assert event.attributes["max_strikes"] == 0


class TestStopping:
    """Test cooperative stop requests."""

    def test_stop_between_ticks_prevents_breach(self):
        """A stop requested during tick 1 prevents the breach on tick 2."""
        handler = CountingHandler()
        ref = []
        monitor = ScriptedMonitor("m", script=[False, True], on_call=stop_after(ref, 1))
        watchdog = Watchdog(make_config((monitor, 0), handler=handler))
        ref.append(watchdog)

        watchdog.start(background=False)

        assert monitor.calls == 1
        assert handler.calls == 0

    def test_stop_does_not_interrupt_tick(self):
        """Monitors later in the stack still run on the tick a stop arrives."""
        ref = []
        first = ScriptedMonitor("first", on_call=stop_after(ref, 1))
        second = ScriptedMonitor("second")
        watchdog = Watchdog(make_config((first, 0), (second, 0)))
        ref.append(watchdog)

        watchdog.start(background=False)

        assert first.calls == 1
        assert second.calls == 1

    def test_stop_wakes_sleeping_loop(self):
        """A long sleep does not delay stopping."""
        configuration = Configuration(
            handler=CountingHandler(),
            sleep_interval_seconds=60,
            event_reporter=RecordingReporter(),
        )
        watchdog = Watchdog(configuration)
        watchdog.start()

        watchdog.stop()

        assert watchdog.join(timeout=2.0) is True


class TestFailureContainment:
    """Test that failures never take down the loop."""

    def test_monitor_error_is_not_a_violation(self):
        """A raising monitor never collects strikes or stops the loop."""
        reporter = RecordingReporter()
        handler = CountingHandler()
        ref = []
        broken = ScriptedMonitor("broken", default=RuntimeError("boom"))
        healthy = ScriptedMonitor("healthy", on_call=stop_after(ref, 5))
        watchdog = Watchdog(
            make_config((broken, 0), (healthy, 0), handler=handler, reporter=reporter)
        )
        ref.append(watchdog)

        watchdog.start(background=False)

        assert handler.calls == 0
        assert broken.calls == 5
        assert healthy.calls == 5
        assert reporter.strikes("broken") == []

        errors = reporter.of_kind(WatchdogEvent.MONITOR_ERROR)
        assert len(errors) == 5
        assert errors[0].attributes["error"] == "boom"
        assert errors[0].attributes["error_class"] == "RuntimeError"

    def test_monitor_error_resets_strikes(self):
        """An erroring tick counts as clean for strike accounting."""
        reporter = RecordingReporter()
        handler = CountingHandler()
        ref = []
        monitor = ScriptedMonitor(
            "m",
            script=[True, True, ValueError("bad sample"), True, True],
            on_call=stop_after(ref, 5),
        )
        watchdog = Watchdog(make_config((monitor, 2), handler=handler, reporter=reporter))
        ref.append(watchdog)

        watchdog.start(background=False)

        assert handler.calls == 0
        assert reporter.strikes("m") == [1, 2, 1, 2]

    def test_reporter_failure_is_contained(self):
        """A broken reporter does not stop supervision."""
        handler = CountingHandler()
        monitor = ScriptedMonitor("m", script=[False, True])
        watchdog = Watchdog(make_config((monitor, 0), handler=handler, reporter=FailingReporter()))

        watchdog.start(background=False)

        assert handler.calls == 1
        assert watchdog.state is LoopState.STOPPED

    def test_handler_failure_is_reported_and_loop_stops(self):
        """A failed handler is reported; the loop still ends."""
        reporter = RecordingReporter()
        handler = CountingHandler(error=HandlerError("signal refused"))
        monitor = ScriptedMonitor("m", default=True)
        watchdog = Watchdog(make_config((monitor, 0), handler=handler, reporter=reporter))

        watchdog.start(background=False)

        assert handler.calls == 1
        assert monitor.calls == 1
        assert reporter.of_kind(WatchdogEvent.HANDLER_INVOKED) == []
        failed = reporter.of_kind(WatchdogEvent.HANDLER_FAILED)
        assert len(failed) == 1
        assert failed[0].attributes["error"] == "signal refused"
        assert watchdog.state is LoopState.STOPPED

    @pytest.mark.parametrize(
        "bad_result",
        [None, ViolationResult(violated=True, payload=None), {"violated": True}],
        ids=["none", "payload-none", "plain-dict"],
    )
    def test_malformed_result_is_a_monitor_error(self, bad_result):
        """A monitor returning something other than a result does not stop the loop."""
        reporter = RecordingReporter()
        handler = CountingHandler()
        ref = []
        broken = ReturningMonitor("broken", bad_result)
        healthy = ScriptedMonitor("healthy", on_call=stop_after(ref, 3))
        watchdog = Watchdog(
            make_config((broken, 0), (healthy, 0), handler=handler, reporter=reporter)
        )
        ref.append(watchdog)

        watchdog.start(background=False)

        assert handler.calls == 0
        assert broken.calls == 3
        assert healthy.calls == 3
        assert reporter.strikes("broken") == []

        errors = reporter.of_kind(WatchdogEvent.MONITOR_ERROR)
        assert len(errors) == 3
        assert errors[0].attributes["monitor"] == "broken"
        assert errors[0].attributes["error_class"] == "WatchdogError"
        assert reporter.events[-1].attributes["reason"] == "stop_requested"

    def test_unexpected_loop_error_is_reported(self):
        """A crash inside the loop ends it with reason 'error'."""
        reporter = RecordingReporter()
        watchdog = Watchdog(make_config((ScriptedMonitor("m"), 0), reporter=reporter))

        with patch.object(Watchdog, "_tick", side_effect=RuntimeError("bug")):
            watchdog.start(background=False)

        assert watchdog.state is LoopState.STOPPED
        stopped = reporter.of_kind(WatchdogEvent.STOPPED)
        assert len(stopped) == 1
        assert stopped[0].attributes["reason"] == "error"

    def test_slow_reporter_does_not_stretch_ticks(self):
        """A queued slow sink leaves the tick rate alone."""
        reporter = QueuedEventReporter(SlowReporter(delay=0.2), maxsize=10)
        first = ScriptedMonitor("first")
        second = ScriptedMonitor("second")
        watchdog = Watchdog(make_config((first, 0), (second, 0), reporter=reporter))

        watchdog.start()
        time.sleep(0.5)
        watchdog.stop()

        assert watchdog.join(timeout=2.0) is True
        assert first.calls >= 10
        assert second.calls == first.calls
        assert reporter.dropped > 0
        reporter.close(timeout=0)


class TestHeapDumps:
    """Test heap dump requests on breach."""

    def test_heap_dump_requested_when_enabled(self):
        """A breach enqueues a heap dump before the handler runs."""
        reporter = RecordingReporter()
        monitor = ScriptedMonitor("m", default=True)
        watchdog = Watchdog(
            make_config((monitor, 0), reporter=reporter, write_heap_dumps_on_violation=True)
        )

        watchdog.start(background=False)

        assert heap_dump.is_enqueued() is True
        assert len(reporter.of_kind(WatchdogEvent.HEAP_DUMP_REQUESTED)) == 1

    def test_no_heap_dump_by_default(self):
        """No heap dump is requested unless enabled."""
        reporter = RecordingReporter()
        monitor = ScriptedMonitor("m", default=True)
        watchdog = Watchdog(make_config((monitor, 0), reporter=reporter))

        watchdog.start(background=False)

        assert heap_dump.is_enqueued() is False
        assert reporter.of_kind(WatchdogEvent.HEAP_DUMP_REQUESTED) == []
