"""
Qt glue for calibration sessions.

- workers: QThread running a session, invoker with thread affinity
- state: view state and the StateManager coordinating the worker
"""

from .state import CalibrationViewState, StateManager
from .workers import CalibrationWorker, QtInvoker

__all__ = ["CalibrationViewState", "StateManager", "CalibrationWorker", "QtInvoker"]
