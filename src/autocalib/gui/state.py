"""
Calibration view state.

CalibrationViewState is a frozen dataclass holding what a notification
surface shows for the running session. StateManager is a thin QObject
that:
- Spawns the calibration worker
- Updates the view state immutably from worker signals
- Emits signals on state changes
- Does NOT contain calibration logic
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from PySide6.QtCore import QObject, Signal

from ..health import health_report, recommend_keep
from .workers import CalibrationWorker

if TYPE_CHECKING:
    from ..runner import SessionRunner
    from ..session import CalibrationOutcome


@dataclass(frozen=True)
class CalibrationViewState:
    """What the user sees about the current calibration."""

    title: str = ""
    is_running: bool = False
    progress: int = 0
    done: bool = False
    failed: bool = False
    message: str = ""
    health: tuple[tuple[float, str], ...] = ()
    recommend_keep: bool = False
    log: tuple[str, ...] = ()


class StateManager(QObject):
    """
    Thin coordinator between the notification surface and the worker.
    """

    state_changed = Signal(CalibrationViewState)
    error_occurred = Signal(str)

    def __init__(self, parent: QObject | None = None):
        super().__init__(parent)
        self._state = CalibrationViewState()
        self._runner: SessionRunner | None = None
        self._worker: CalibrationWorker | None = None

    @property
    def state(self) -> CalibrationViewState:
        return self._state

    def update_state(self, **kwargs) -> None:
        self._state = replace(self._state, **kwargs)
        self.state_changed.emit(self._state)

    # ========================================================================
    # Worker lifecycle
    # ========================================================================

    def start_calibration(self, runner: "SessionRunner", title: str) -> None:
        if self._state.is_running:
            self.error_occurred.emit("A calibration is already running")
            return

        self._runner = runner
        self._state = CalibrationViewState(title=title, is_running=True)
        self.state_changed.emit(self._state)

        worker = CalibrationWorker(runner)
        worker.log_message.connect(self.on_log)
        worker.progress_update.connect(self.on_progress)
        worker.calibration_finished.connect(self.on_finished)
        worker.error.connect(self.on_error)
        self._worker = worker
        worker.start()

    def on_log(self, message: str) -> None:
        self.update_state(log=self._state.log + (message,))

    def on_progress(self, value: int) -> None:
        if value > self._state.progress:
            self.update_state(progress=value)

    def on_finished(self, outcome: "CalibrationOutcome") -> None:
        session = self._runner.session
        self.update_state(
            is_running=False,
            done=True,
            progress=100,
            message=outcome.message,
            health=tuple(health_report(session.action, session.health_metrics)),
            recommend_keep=recommend_keep(session.action, session.health_metrics),
        )

    def on_error(self, message: str) -> None:
        self.update_state(is_running=False, failed=True, message=message)
        self.error_occurred.emit(message)

    # ========================================================================
    # User decisions
    # ========================================================================

    def keep(self) -> None:
        if self._runner is not None and self._state.done:
            self._runner.keep()
            self.update_state(message="New calibration kept")

    def dismiss(self) -> None:
        if self._runner is not None:
            self._runner.dismiss()
        self._runner = None
        self._worker = None
        self._state = CalibrationViewState()
        self.state_changed.emit(self._state)
