"""
Session runner: one calibration session across its automatic retries.
"""

from __future__ import annotations

import logging
from typing import Callable

from .orchestrator import ACTION_PLANS, CalibrationOrchestrator
from .session import CalibrationOutcome, CalibrationSession
from .types import CalibrationState

logger = logging.getLogger(__name__)

MAX_AUTO_RETRIES = 3

OrchestratorFactory = Callable[[CalibrationSession], CalibrationOrchestrator]


class SessionRunner:
    """
    Runs orchestrator attempts for a session.

    Actions flagged for auto-retry are re-run up to MAX_AUTO_RETRIES times
    with `toggle` set, which makes the next attempt alternate its speed
    preset and wait out a cool-down. The workspace of every attempt is
    restored before the next one starts and before `run` returns.
    """

    def __init__(self, session: CalibrationSession, factory: OrchestratorFactory):
        self.session = session
        self.factory = factory
        self.orchestrator: CalibrationOrchestrator | None = None

    def should_retry(self) -> bool:
        plan = ACTION_PLANS[self.session.action]
        return plan.auto_retry and self.session.retry_times < MAX_AUTO_RETRIES

    def run(self) -> CalibrationOutcome:
        session = self.session
        while True:
            self.orchestrator = self.factory(session)
            try:
                outcome = self.orchestrator.run()
            finally:
                self.orchestrator.restore_workspace()

            if outcome.ok or not self.should_retry():
                return outcome

            session.retry_times += 1
            logger.info(
                "%s failed (%s), retry %d of %d",
                session.action.value,
                outcome.message,
                session.retry_times,
                MAX_AUTO_RETRIES,
            )
            session.reset()
            session.toggle = True

    def keep(self) -> None:
        if self.orchestrator is not None and self.session.state == CalibrationState.DONE:
            self.orchestrator.keep()

    def dismiss(self) -> None:
        if self.orchestrator is not None:
            self.orchestrator.dismiss()
