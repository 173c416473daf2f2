"""
QThread worker and thread-affinity invoker for calibration sessions.

The worker runs a SessionRunner end to end and reports through signals.
Stream play/stop calls made by the orchestrator go through QtInvoker so
they execute on the thread owning the streaming context.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable

from PySide6.QtCore import QObject, QThread, Qt, Signal, Slot

if TYPE_CHECKING:
    from ..runner import SessionRunner


class QtInvoker(QObject):
    """
    Runs callables on the thread this object lives in.

    Calls from that thread run directly; calls from any other thread block
    until the owning thread has executed them. Exceptions are re-raised
    in the caller.
    """

    _requested = Signal(object)

    def __init__(self, parent: QObject | None = None):
        super().__init__(parent)
        self._requested.connect(self._execute, Qt.ConnectionType.BlockingQueuedConnection)

    def __call__(self, action: Callable[[], None]) -> None:
        if QThread.currentThread() == self.thread():
            action()
            return

        request = {"action": action, "error": None}
        self._requested.emit(request)
        if request["error"] is not None:
            raise request["error"]

    @Slot(object)
    def _execute(self, request: dict) -> None:
        try:
            request["action"]()
        except Exception as e:
            request["error"] = e


class CalibrationWorker(QThread):
    """Run one calibration session (including automatic retries)."""

    log_message = Signal(str)
    progress_update = Signal(int)  # percent
    calibration_finished = Signal(object)  # CalibrationOutcome
    error = Signal(str)

    def __init__(self, runner: "SessionRunner"):
        super().__init__()
        self.runner = runner

    def run(self):
        session = self.runner.session
        session.on_log = self.log_message.emit
        session.progress.listener = lambda value: self.progress_update.emit(int(value))
        try:
            outcome = self.runner.run()
            if outcome.ok:
                self.calibration_finished.emit(outcome)
            else:
                self.error.emit(outcome.message)
        except Exception as e:
            self.error.emit(str(e))
        finally:
            session.on_log = None
            session.progress.listener = None
