"""
Tests for autocalib.runner.
"""

import re

import pytest

from autocalib.runner import MAX_AUTO_RETRIES, SessionRunner
from autocalib.session import CalibrationSession
from autocalib.types import CalibrationAction, CalibrationState, StreamSelection
from conftest import rectangle_image


def _fl_step_counts(calls):
    return [int(re.search(r'"fl step count":(\d+)', c).group(1)) for c in calls]


@pytest.fixture
def built(make_orchestrator):
    """Factory that remembers every orchestrator it built."""
    orchestrators = []

    def factory(session):
        orchestrator = make_orchestrator(session)
        orchestrators.append(orchestrator)
        return orchestrator

    factory.built = orchestrators
    return factory


class TestSessionRunner:
    def test_retries_exhausted(self, built, device, clock):
        device.failures = 10
        session = CalibrationSession(CalibrationAction.ON_CHIP_FL_CALIB)
        outcome = SessionRunner(session, built).run()

        assert not outcome.ok
        assert session.state == CalibrationState.FAILED
        assert session.retry_times == MAX_AUTO_RETRIES
        assert len(built.built) == MAX_AUTO_RETRIES + 1
        # speed_fl alternates 1 -> 0 -> 1 -> 0 on toggled retries
        assert _fl_step_counts(device.calls) == [51, 41, 51, 41]
        assert clock.slept >= 3.0 * MAX_AUTO_RETRIES

    def test_success_on_retry(self, built, device):
        device.failures = 1
        session = CalibrationSession(CalibrationAction.ON_CHIP_OB_CALIB)
        outcome = SessionRunner(session, built).run()

        assert outcome.ok
        assert session.done
        assert session.retry_times == 1
        assert len(device.calls) == 2
        assert session.toggle is False

    def test_no_retry_for_plain_on_chip(self, built, device):
        device.failures = 1
        session = CalibrationSession(CalibrationAction.ON_CHIP_CALIB)
        outcome = SessionRunner(session, built).run()

        assert not outcome.ok
        assert session.retry_times == 0
        assert len(built.built) == 1

    def test_workspace_restored_after_every_attempt(self, built, device, sensor):
        device.failures = 2
        session = CalibrationSession(CalibrationAction.ON_CHIP_FL_CALIB)
        SessionRunner(session, built).run()

        assert all(o.restored for o in built.built)
        assert sensor.options["thermal_compensation"] == 1.0
        assert sensor.post_processing_enabled is True

    def test_keep_only_after_success(self, built, device):
        device.failures = 1
        runner = SessionRunner(CalibrationSession(CalibrationAction.ON_CHIP_CALIB), built)
        runner.run()
        runner.keep()
        assert device.writes == 0

        device.failures = 0
        runner = SessionRunner(CalibrationSession(CalibrationAction.ON_CHIP_CALIB), built)
        runner.run()
        runner.keep()
        assert device.writes == 1

    def test_dismiss_applies_old_table(self, built, device, old_table):
        runner = SessionRunner(CalibrationSession(CalibrationAction.ON_CHIP_CALIB), built)
        runner.run()
        runner.dismiss()
        assert device.tables_set[-1] == old_table


class TestUserSelection:
    def test_focal_length_restores_selection(self, built, sensor):
        user = StreamSelection((0, 1), (0, 0), (1280, 720), 15)
        sensor.selection = user
        sensor.images = {1: rectangle_image(), 2: rectangle_image()}
        session = CalibrationSession(CalibrationAction.FL_CALIB)

        outcome = SessionRunner(session, built).run()

        assert outcome.ok, session.error_message
        assert built.built[0].snapshot.selection == user
        assert sensor.selection == user

    def test_on_chip_restores_selection(self, built, sensor):
        user = StreamSelection((0, 1), (0, 0), (848, 480), 5)
        sensor.selection = user
        session = CalibrationSession(CalibrationAction.ON_CHIP_CALIB)

        outcome = SessionRunner(session, built).run()

        assert outcome.ok, session.error_message
        assert sensor.selection == user
        assert not sensor.streaming

    def test_selection_restored_after_failed_attempts(self, built, device, sensor):
        user = StreamSelection((0, 1), (0, 0), (848, 480), 5)
        sensor.selection = user
        device.failures = 10
        session = CalibrationSession(CalibrationAction.ON_CHIP_FL_CALIB)

        SessionRunner(session, built).run()

        assert all(o.snapshot.selection == user for o in built.built)
        assert sensor.selection == user
