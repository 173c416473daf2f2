"""
Tests for autocalib.gui - no Qt event loop needed, the worker's run()
is called directly on the test thread.
"""

import pytest

from autocalib.gui.state import CalibrationViewState, StateManager
from autocalib.gui.workers import CalibrationWorker, QtInvoker
from autocalib.session import CalibrationOutcome, CalibrationSession
from autocalib.types import CalibrationAction, CalibrationState


class StubRunner:
    """SessionRunner stand-in that logs, reports progress and returns `outcome`."""

    def __init__(self, outcome=None, exc=None, action=CalibrationAction.ON_CHIP_CALIB):
        self.session = CalibrationSession(action)
        self.outcome = outcome
        self.exc = exc
        self.kept = False
        self.dismissed = False

    def run(self):
        self.session.add_log("Starting")
        self.session.progress.advance(42.7)
        if self.exc is not None:
            raise self.exc
        self.session.state = CalibrationState.DONE
        return self.outcome

    def keep(self):
        self.kept = True

    def dismiss(self):
        self.dismissed = True


class TestQtInvoker:
    def test_same_thread_runs_inline(self):
        invoker = QtInvoker()
        calls = []
        invoker(lambda: calls.append("played"))
        assert calls == ["played"]

    def test_same_thread_exception_propagates(self):
        invoker = QtInvoker()

        def fail():
            raise RuntimeError("busy")

        with pytest.raises(RuntimeError):
            invoker(fail)


class TestCalibrationWorker:
    def test_signals_on_success(self):
        runner = StubRunner(outcome=CalibrationOutcome(ok=True, message="done"))
        worker = CalibrationWorker(runner)
        logs, progress, finished = [], [], []
        worker.log_message.connect(lambda value: logs.append(value))
        worker.progress_update.connect(lambda value: progress.append(value))
        worker.calibration_finished.connect(lambda value: finished.append(value))

        worker.run()

        assert logs == ["Starting"]
        assert progress == [42]
        assert finished[0].message == "done"
        assert runner.session.on_log is None
        assert runner.session.progress.listener is None

    def test_failed_outcome_emits_error(self):
        runner = StubRunner(outcome=CalibrationOutcome(ok=False, message="Firmware error (-3) from device!"))
        worker = CalibrationWorker(runner)
        errors = []
        worker.error.connect(lambda value: errors.append(value))
        worker.run()
        assert errors == ["Firmware error (-3) from device!"]

    def test_exception_emits_error(self):
        worker = CalibrationWorker(StubRunner(exc=RuntimeError("boom")))
        errors = []
        worker.error.connect(lambda value: errors.append(value))
        worker.run()
        assert errors == ["boom"]


class TestStateManager:
    def test_initial_state(self):
        manager = StateManager()
        assert manager.state == CalibrationViewState()

    def test_log_and_progress(self):
        manager = StateManager()
        manager.on_log("one")
        manager.on_log("two")
        manager.on_progress(30)
        manager.on_progress(10)
        assert manager.state.log == ("one", "two")
        assert manager.state.progress == 30

    def test_error(self):
        manager = StateManager()
        errors = []
        manager.error_occurred.connect(lambda value: errors.append(value))
        manager.on_error("Failed to start streaming (0, 0, 0)!")
        assert manager.state.failed
        assert not manager.state.is_running
        assert errors == ["Failed to start streaming (0, 0, 0)!"]

    def test_finished_reports_health(self):
        manager = StateManager()
        runner = StubRunner(outcome=CalibrationOutcome(ok=True, message="done"))
        runner.session.health_metrics = (0.1,)
        manager._runner = runner

        manager.on_finished(runner.outcome)

        assert manager.state.done
        assert manager.state.progress == 100
        assert manager.state.health == ((0.1, "Good"),)
        assert manager.state.recommend_keep

    def test_keep_and_dismiss(self):
        manager = StateManager()
        runner = StubRunner(outcome=CalibrationOutcome(ok=True))
        manager._runner = runner
        manager.on_finished(runner.outcome)

        manager.keep()
        assert runner.kept
        manager.dismiss()
        assert runner.dismissed
        assert manager.state == CalibrationViewState()

    def test_state_immutability_preserved(self):
        manager = StateManager()
        first = manager.state
        manager.on_log("x")
        assert first is not manager.state
        assert first.log == ()
