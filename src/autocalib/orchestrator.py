"""
Calibration orchestration.

CalibrationOrchestrator drives one attempt of a calibration action:
it saves the viewer/sensor workspace, reconfigures streams, runs the
action's phases (warmup, host-assisted sampling, firmware call, health
evaluation) and restores everything afterwards. Each action maps to an
ActionPlan in ACTION_PLANS, which names its phase runner and the parts
of the shared workflow it takes part in.

Phases raise CalibrationError subclasses; `run` converts them into a
FAILED session and a CalibrationOutcome.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, replace
from typing import Callable

import numpy as np

from .acquisition import (
    POLL_INTERVAL_S,
    Clock,
    SystemClock,
    fetch_depth_frame,
    gather_matched_frames,
)
from .config import (
    KEY_GROUND_TRUTH,
    KEY_LAST_CALIB_NOTICE,
    KEY_TARGET_HEIGHT,
    KEY_TARGET_WIDTH,
)
from .device import (
    CalibrationDevice,
    ConfigStore,
    Invoker,
    StreamSensor,
    Viewer,
    direct_invoke,
)
from .errors import (
    CalibrationError,
    FrameTimeoutError,
    InsufficientDataError,
    StartupTimeoutError,
)
from .features.depth_quality import FrameAnalyzer, analyze_depth_frame, get_depth_metrics
from .features.fill_factor import (
    FillFactorTable,
    roi_mean_depth,
    roi_windows,
    sample_fill_factor,
)
from .features.target import DetectorStatus, DotsCalculator, RectCalculator, undistort_image
from .health import decode_packed_health
from .payloads import (
    CALIB_TYPE_FL,
    CALIB_TYPE_OB,
    CALIB_TYPE_OCC,
    HOST_ASSIST_FILL_FACTOR,
    HOST_ASSIST_FL_FILL_FACTOR,
    calibration_payload,
    fill_factor_payload,
    tare_depth_payload,
)
from .session import CalibrationOutcome, CalibrationSession, apply_speed_fl
from .streams import DeviceOptionGuard, StreamController, TARGET_RESOLUTION, FAST_DEPTH_PROFILE
from .table import patch_focal_length
from .types import (
    INFO_SERIAL_NUMBER,
    INFO_USB_TYPE_DESCRIPTOR,
    OPTION_EMITTER_ENABLED,
    OPTION_STEREO_BASELINE,
    OPTION_THERMAL_COMPENSATION,
    CalibrationAction,
    CalibrationState,
    Frame,
    StreamSelection,
)
from .uvmapping import UVMappingCalib, find_z_at_corners

logger = logging.getLogger(__name__)

FRAME_FETCH_TIMEOUT_MS = 3000
START_TIMEOUT_MS = 4000
COUNTER_STALL_TIMEOUT_MS = 4000
OCC_TIMEOUT_MS = 9000
OCC_TOGGLE_TIMEOUT_MS = 12000
TARE_TIMEOUT_MS = 5000
TOGGLE_COOLDOWN_S = 3.0
SETTLE_DELAY_S = 0.6
RESTORE_DELAY_S = 0.2
FL_METRICS_PROFILE = (848, 480, 30)
MATCHED_FRAMES_REQUIRED = 25
TARGET_Z_FRAMES_REQUIRED = 50

TARGET_HINT = (
    "Please adjust the camera position\n"
    "and make sure the specific target is\n"
    "in the middle of the camera image!"
)


@dataclass
class WorkspaceSnapshot:
    """Viewer and sensor state captured before the calibration changes it."""

    in_3d_view: bool
    synchronized: bool
    was_streaming: bool
    post_processing: bool
    selection: StreamSelection | None = None
    color_selection: StreamSelection | None = None
    color_streaming: bool = False
    selection_saved: bool = False


@dataclass(frozen=True)
class ActionPlan:
    """How one calibration action plugs into the shared workflow."""

    title: str
    runner: Callable[["CalibrationOrchestrator"], None]
    measures_depth: bool = True  # depth metrics before/after, new table applied
    stop_first: bool = False  # stop streams before anything else
    target_streams: bool = False  # image a target at 1280x720
    restores_selection: bool = True  # put back the user's streams once done
    auto_retry: bool = False


class CalibrationOrchestrator:
    """
    One attempt of a calibration action against a device.

    Args:
        session: Session the attempt reads parameters from and writes results to
        device: Calibration device protocol
        sensor: Depth/IR sensor
        viewer: Streaming viewer
        config: Persisted configuration store
        color_sensor: Color sensor (UV-mapping actions only)
        clock: Time source for every wait
        invoke: Runs stream play/stop on the streaming context's thread
        analyze: Per-frame depth quality analyzer
    """

    def __init__(
        self,
        session: CalibrationSession,
        device: CalibrationDevice,
        sensor: StreamSensor,
        viewer: Viewer,
        config: ConfigStore,
        *,
        color_sensor: StreamSensor | None = None,
        clock: Clock | None = None,
        invoke: Invoker = direct_invoke,
        analyze: FrameAnalyzer = analyze_depth_frame,
    ):
        self.session = session
        self.device = device
        self.sensor = sensor
        self.viewer = viewer
        self.config = config
        self.color_sensor = color_sensor
        self.clock = clock or SystemClock()
        self.analyze = analyze
        self.streams = StreamController(sensor, viewer, self.clock, invoke, color_sensor)
        self.options = DeviceOptionGuard(sensor)
        self.snapshot: WorkspaceSnapshot | None = None
        self.restored = False
        self.kept = False

    @property
    def plan(self) -> ActionPlan:
        return ACTION_PLANS[self.session.action]

    # ========================================================================
    # Workflow
    # ========================================================================

    def run(self) -> CalibrationOutcome:
        """Run the action end to end; never raises for calibration failures."""
        session = self.session
        session.state = CalibrationState.STREAM_SETUP
        try:
            self._process_flow()
        except Exception as e:
            if not isinstance(e, CalibrationError):
                logger.exception("%s failed", self.plan.title)
            message = str(e) or f"{self.plan.title} failed!"
            session.fail(message)
            return CalibrationOutcome(ok=False, message=message, error=e)

        return CalibrationOutcome(ok=True, message=session.log[-1] if session.log else "")

    def _process_flow(self) -> None:
        session = self.session
        action = session.action
        plan = self.plan

        if plan.stop_first:
            self.streams.stop()

        self.update_last_used()
        session.add_log(self._start_message())

        self.snapshot = WorkspaceSnapshot(
            in_3d_view=self.viewer.is_3d_view,
            synchronized=self.viewer.synchronization_enabled,
            was_streaming=self.sensor.streaming,
            post_processing=self.sensor.post_processing_enabled,
        )
        self._save_selection()
        self.viewer.is_3d_view = action != CalibrationAction.TARE_GROUND_TRUTH
        session.old_table = self.device.get_calibration_table()
        self.sensor.post_processing_enabled = False
        self.viewer.synchronization_enabled = False
        self.restored = False

        if self.snapshot.was_streaming:
            self.streams.adopt(self.sensor.selection)

        if plan.measures_depth:
            if not self.snapshot.was_streaming:
                if action == CalibrationAction.FL_CALIB:
                    self.streams.try_start(action, *FL_METRICS_PROFILE)
                else:
                    self.streams.try_start(action, 0, 0, 0)
            session.metrics_before = self.measure_depth()

        self.streams.stop()
        self.clock.sleep(SETTLE_DELAY_S)

        if plan.target_streams:
            self.viewer.is_3d_view = False
            self.options.override(OPTION_EMITTER_ENABLED, 0.0)
        self.options.override(OPTION_THERMAL_COMPENSATION, 0.0)

        if plan.target_streams or session.host_assistance:
            self.streams.try_start(action, *TARGET_RESOLUTION, self.stream_fps())
        else:
            self.streams.try_start(action, *FAST_DEPTH_PROFILE)

        try:
            plan.runner(self)
        except Exception:
            session.add_log("Calibration failed with exception")
            self._rollback_streams()
            raise

        session.add_log(self._completion_message())

        if plan.restores_selection:
            self.streams.stop()
            self._restore_selection()

        if plan.measures_depth:
            if action == CalibrationAction.FL_CALIB:
                self.viewer.is_3d_view = True
            self.streams.try_start(action, 0, 0, 0)
            self.apply_calib(True)
            session.metrics_after = self.measure_depth()

        session.progress.advance(100)
        session.state = CalibrationState.DONE

    def _start_message(self) -> str:
        action = self.session.action
        if action in (CalibrationAction.ON_CHIP_FL_CALIB, CalibrationAction.FL_CALIB):
            return "Starting focal length calibration"
        if action == CalibrationAction.ON_CHIP_OB_CALIB:
            return "Starting OCC Extended"
        if action in (CalibrationAction.UVMAPPING_CALIB, CalibrationAction.UVMAPPING):
            return "Starting UV-Mapping calibration"
        if action == CalibrationAction.TARE_GROUND_TRUTH:
            return "Starting tare ground truth measurement"
        return f"Starting OCC calibration at speed {self.session.params.speed}"

    def _completion_message(self) -> str:
        session = self.session
        if session.action == CalibrationAction.TARE_GROUND_TRUTH:
            return f"Tare ground truth is got: {session.measured_ground_truth_mm}"
        if session.action == CalibrationAction.FL_CALIB:
            return f"Focal length ratio is got: {session.corrected_ratio}"
        if session.action in (CalibrationAction.UVMAPPING_CALIB, CalibrationAction.UVMAPPING):
            return "UV-Mapping calibration completed."
        health = ", ".join(f"{h:.3f}" for h in session.health_metrics)
        return f"Calibration completed, health factor = {health}"

    # ========================================================================
    # Workspace
    # ========================================================================

    def _save_selection(self) -> None:
        """Record the user's stream selection, once, before anything replaces it."""
        if self.snapshot is None or self.snapshot.selection_saved:
            return
        self.snapshot.selection = self.sensor.selection
        if self.color_sensor is not None:
            self.snapshot.color_selection = self.color_sensor.selection
            self.snapshot.color_streaming = self.color_sensor.streaming
        self.snapshot.selection_saved = True

    def _restore_selection(self) -> None:
        if self.snapshot is None or not self.snapshot.selection_saved:
            return
        self.sensor.selection = self.snapshot.selection
        if self.color_sensor is not None:
            self.color_sensor.selection = self.snapshot.color_selection

    def _resume_user_streams(self) -> bool:
        snapshot = self.snapshot
        if snapshot.selection is not None:
            color = snapshot.color_selection if snapshot.color_streaming else None
            return self.streams.resume(snapshot.selection, color)
        return self.streams.start(self.session.action, 0, 0, 0)

    def _rollback_streams(self) -> None:
        self.streams.stop()
        self._restore_selection()
        if self.snapshot is not None and self.snapshot.was_streaming:
            if not self._resume_user_streams():
                logger.warning("Could not restart streams after failure")

    def restore_workspace(self) -> None:
        """
        Put the viewer, sensor options and streams back as they were.

        Safe to call any number of times; only the first call acts.
        Errors are logged and never propagated.
        """
        if self.restored:
            return
        self.restored = True

        try:
            self.options.restore()
        except Exception:
            logger.exception("Restoring sensor options failed")

        snapshot = self.snapshot
        if snapshot is None:
            return

        try:
            self.viewer.is_3d_view = snapshot.in_3d_view
            self.viewer.synchronization_enabled = snapshot.synchronized
            self.streams.stop()
            self._restore_selection()
            self.sensor.post_processing_enabled = snapshot.post_processing
            self.clock.sleep(RESTORE_DELAY_S)
            if snapshot.was_streaming and not self._resume_user_streams():
                logger.warning("Could not restart streams after calibration")
        except Exception:
            logger.exception("Restoring workspace failed")

    def apply_calib(self, use_new: bool) -> None:
        table = self.session.new_table if use_new else self.session.old_table
        if table:
            self.device.set_calibration_table(table)

    def keep(self) -> None:
        """Persist the new calibration on the device."""
        if not self.plan.measures_depth:
            self.apply_calib(True)
        self.device.write_calibration()
        self.kept = True
        self.session.add_log("New calibration written to the device")

    def dismiss(self) -> None:
        """Drop the new calibration unless it was kept, then restore the workspace."""
        if not self.kept:
            self.apply_calib(False)
        self.restore_workspace()

    # ========================================================================
    # Helpers
    # ========================================================================

    def update_last_used(self) -> None:
        serial = self.device.get_camera_info(INFO_SERIAL_NUMBER)
        if serial:
            self.config.set(f"{KEY_LAST_CALIB_NOTICE}.{serial}", int(time.time()))

    def stream_fps(self) -> int:
        """30 fps on USB3, 5 fps on USB2 (bandwidth limit for 720p)."""
        descriptor = self.device.get_camera_info(INFO_USB_TYPE_DESCRIPTOR)
        if descriptor and not descriptor.startswith("3."):
            return 5
        return 30

    def target_size(self) -> tuple[float, float]:
        params = self.session.params
        width = float(self.config.get(KEY_TARGET_WIDTH, params.target_width_mm))
        height = float(self.config.get(KEY_TARGET_HEIGHT, params.target_height_mm))
        return width, height

    def fetch_frame(self) -> Frame:
        return fetch_depth_frame(
            self.sensor, self.streams.stream_ids, self.clock, FRAME_FETCH_TIMEOUT_MS
        )

    def _fetch_startup_frame(self) -> Frame:
        try:
            return self.fetch_frame()
        except FrameTimeoutError as e:
            if isinstance(e, StartupTimeoutError):
                raise
            raise StartupTimeoutError(str(e)) from e

    def measure_depth(self):
        return get_depth_metrics(self.fetch_frame, self.analyze)

    # ========================================================================
    # On-Chip and Tare
    # ========================================================================

    def _wait_for_first_frames(self) -> Frame:
        """WARMUP: wait until the firmware counter is past its first frames."""
        progress = self.session.progress
        deadline = self.clock.now() + START_TIMEOUT_MS / 1000.0
        frame = self._fetch_startup_frame()
        while frame.frame_counter <= 2:
            if self.clock.now() > deadline:
                raise StartupTimeoutError("Frame counter did not advance before calibration!")
            progress.step(3, 7)
            self.clock.sleep(POLL_INTERVAL_S)
            frame = self._fetch_startup_frame()
        progress.advance(10)
        return frame

    def _wait_for_counter_reset(self, frame: Frame, threshold: int, cap: int) -> Frame:
        """Wait for the frame counter to drop below `threshold` (a new scan started)."""
        progress = self.session.progress
        deadline = self.clock.now() + START_TIMEOUT_MS / 1000.0
        while frame.frame_counter >= threshold:
            if self.clock.now() > deadline:
                raise StartupTimeoutError("Operation timed-out when starting calibration!")
            progress.step(2, cap)
            self.clock.sleep(POLL_INTERVAL_S)
            frame = self._fetch_startup_frame()
        return frame

    def _stall_deadline(self) -> float:
        return self.clock.now() + COUNTER_STALL_TIMEOUT_MS / 1000.0

    def _check_stalled(self, deadline: float, counter: int, total_frames: int) -> None:
        """Raise once the frame counter has not moved until `deadline`, else wait a tick."""
        if self.clock.now() > deadline:
            raise FrameTimeoutError(
                f"Frame counter stopped at {counter} of {total_frames} frames!"
            )
        self.clock.sleep(POLL_INTERVAL_S)

    def _sample_fill_factors(
        self, frame: Frame, window, total_frames: int, progress_start: int, progress_span: int
    ) -> tuple[list[int], Frame]:
        """HOST_ASSISTED_SAMPLING: one fill factor per firmware frame tick."""
        progress = self.session.progress
        table = FillFactorTable()
        previous = total_frames
        deadline = self._stall_deadline()
        while frame.frame_counter < total_frames:
            counter = frame.frame_counter
            if counter != previous:
                progress.advance(progress_start + counter * progress_span // total_frames)
                table.record(counter, sample_fill_factor(frame.data, window))
                deadline = self._stall_deadline()
            else:
                self._check_stalled(deadline, counter, total_frames)
            previous = counter
            frame = self.fetch_frame()
        return table.repaired(total_frames), frame

    def _calibrate_on_chip(self) -> None:
        session = self.session
        action = session.action
        progress = session.progress

        timeout_ms = OCC_TIMEOUT_MS
        if action in (CalibrationAction.ON_CHIP_FL_CALIB, CalibrationAction.ON_CHIP_OB_CALIB):
            if session.toggle:
                timeout_ms = OCC_TOGGLE_TIMEOUT_MS
                session.speed_fl = {0: 1, 1: 0}.get(session.speed_fl, session.speed_fl)
                session.toggle = False
                self.clock.sleep(TOGGLE_COOLDOWN_S)
            session.params = apply_speed_fl(session.params, session.speed_fl)

        params = session.params
        payload = calibration_payload(action, params, session.host_assistance)

        session.state = CalibrationState.WARMUP
        frame = self._wait_for_first_frames()

        session.state = CalibrationState.FIRMWARE_CALIBRATE
        if session.host_assistance:
            firmware_progress = progress.phase_callback(10, 18)
        else:
            firmware_progress = progress.phase_callback(10)

        health_pair = (0.0, 0.0)
        if action == CalibrationAction.TARE_CALIB:
            new_table, health_pair = self.device.run_tare_calibration(
                params.ground_truth_mm, payload, firmware_progress, TARE_TIMEOUT_MS
            )
            health_code = 0.0
        else:
            new_table, health_code = self.device.run_on_chip_calibration(
                payload, firmware_progress, timeout_ms
            )

        if session.host_assistance:
            if action == CalibrationAction.TARE_CALIB:
                new_table, health_pair = self._tare_host_assistance(frame)
            elif action == CalibrationAction.ON_CHIP_OB_CALIB:
                new_table, health_code = self._ob_host_assistance(frame, timeout_ms)
            else:
                new_table, health_code = self._occ_host_assistance(frame, timeout_ms)

        if not new_table:
            raise CalibrationError("Calibration did not return a new calibration table!")

        session.state = CalibrationState.HEALTH_EVALUATION
        session.new_table = new_table
        if action == CalibrationAction.ON_CHIP_OB_CALIB:
            session.health_metrics = decode_packed_health(health_code)
        elif action == CalibrationAction.TARE_CALIB:
            session.health_metrics = (health_pair[0] * 100, health_pair[1] * 100)
        else:
            session.health_metrics = (float(health_code),)

    def _occ_host_assistance(self, frame: Frame, timeout_ms: int) -> tuple[bytes, float]:
        session = self.session
        params = session.params
        progress = session.progress

        frame = self._wait_for_counter_reset(frame, frame.frame_counter, 18)
        progress.advance(20)

        full, strip = roi_windows(frame.width, frame.height, params.fl_scan_location)
        if session.action == CalibrationAction.ON_CHIP_CALIB:
            window, total_frames, calib_type = full, params.total_frames, CALIB_TYPE_OCC
        else:
            window, total_frames, calib_type = strip, params.fl_step_count, CALIB_TYPE_FL

        session.state = CalibrationState.HOST_ASSISTED_SAMPLING
        fill_factors, _ = self._sample_fill_factors(frame, window, total_frames, 20, 60)

        session.state = CalibrationState.FIRMWARE_CALIBRATE
        progress.advance(80)
        payload = fill_factor_payload(calib_type, HOST_ASSIST_FILL_FACTOR, fill_factors)
        return self.device.run_on_chip_calibration(payload, progress.phase_callback(80), timeout_ms)

    def _ob_host_assistance(self, frame: Frame, timeout_ms: int) -> tuple[bytes, float]:
        session = self.session
        params = session.params
        progress = session.progress

        # Intrinsic scan over the full window
        frame = self._wait_for_counter_reset(frame, frame.frame_counter, 18)
        progress.advance(20)
        full, strip = roi_windows(frame.width, frame.height, params.fl_scan_location)
        total_frames = params.total_frames

        session.state = CalibrationState.HOST_ASSISTED_SAMPLING
        fill_factors, frame = self._sample_fill_factors(frame, full, total_frames, 20, 25)
        session.state = CalibrationState.FIRMWARE_CALIBRATE
        payload = fill_factor_payload(CALIB_TYPE_OB, HOST_ASSIST_FILL_FACTOR, fill_factors)
        self.device.run_on_chip_calibration(payload, lambda _: None, timeout_ms)
        progress.advance(45)

        # Focal length scan over the strip
        frame = self._wait_for_counter_reset(frame, total_frames, 53)
        progress.advance(55)
        session.state = CalibrationState.HOST_ASSISTED_SAMPLING
        fill_factors, _ = self._sample_fill_factors(frame, strip, params.fl_step_count, 55, 25)

        session.state = CalibrationState.FIRMWARE_CALIBRATE
        progress.advance(80)
        payload = fill_factor_payload(CALIB_TYPE_OB, HOST_ASSIST_FL_FILL_FACTOR, fill_factors)
        return self.device.run_on_chip_calibration(payload, progress.phase_callback(80), timeout_ms)

    def _tare_host_assistance(self, frame: Frame) -> tuple[bytes, tuple[float, float]]:
        session = self.session
        params = session.params
        progress = session.progress

        frame = self._wait_for_counter_reset(frame, frame.frame_counter, 18)
        progress.advance(20)
        full, _ = roi_windows(frame.width, frame.height)

        session.state = CalibrationState.HOST_ASSISTED_SAMPLING
        total_frames = params.step_count
        frame_num = 0
        count = 0
        depth_sum = 0.0
        deadline = self._stall_deadline()
        while frame.frame_counter < total_frames:
            if frame_num < params.average_step_count:
                c, s = roi_mean_depth(frame.data, full)
                count += c
                depth_sum += s
                if count and frame_num + 1 == params.average_step_count:
                    depth = int(depth_sum / count * 10000 + 0.5)
                    self.device.run_tare_calibration(
                        params.ground_truth_mm, tare_depth_payload(depth), lambda _: None, TARE_TIMEOUT_MS
                    )

            previous = frame.frame_counter
            frame = self.fetch_frame()
            if frame.frame_counter != previous:
                progress.step(1, 80)
                count = 0
                depth_sum = 0.0
                frame_num = 0
                deadline = self._stall_deadline()
            else:
                frame_num += 1
                self._check_stalled(deadline, previous, total_frames)

        session.state = CalibrationState.FIRMWARE_CALIBRATE
        progress.advance(80)
        return self.device.run_tare_calibration(
            params.ground_truth_mm, tare_depth_payload(-1), progress.phase_callback(80), TARE_TIMEOUT_MS
        )

    # ========================================================================
    # Target Based Actions
    # ========================================================================

    def _detect_rectangles(self, stream_ids: tuple[int, ...], progress_span: float):
        """
        Run one RectCalculator per stream until all are done or the reject
        budget (twice the detection count) runs out.

        Returns:
            (calculators, intrinsics) per stream
        """
        progress = self.session.progress
        calculators = [RectCalculator() for _ in stream_ids]
        intrinsics = [None] * len(stream_ids)
        done = [False] * len(stream_ids)
        needed = RectCalculator.FRAME_NUM * len(stream_ids)
        start = progress.value

        rejected = 0
        while rejected < 2 * RectCalculator.FRAME_NUM and not all(done):
            for i, stream_id in enumerate(stream_ids):
                if done[i]:
                    continue
                frame = self.sensor.wait_for_frame(stream_id)
                if frame is None:
                    rejected += 1
                    continue
                if intrinsics[i] is None:
                    intrinsics[i] = frame.intrinsics

                status = calculators[i].calculate(frame.data)
                if status == DetectorStatus.MORE_FRAMES_NEEDED:
                    rejected += 1
                    continue
                detections = sum(c.detections for c in calculators)
                progress.advance(start + progress_span * detections / needed)
                if status == DetectorStatus.DONE:
                    done[i] = True

        if not all(done) or any(intr is None for intr in intrinsics):
            raise InsufficientDataError(TARGET_HINT)
        return calculators, intrinsics

    def _calibrate_focal_length(self) -> None:
        session = self.session
        params = session.params
        if params.use_device_routine:
            self._calibrate_focal_length_on_device()
            return

        baseline = 0.0
        if self.sensor.supports_option(OPTION_STEREO_BASELINE):
            baseline = float(self.sensor.get_option(OPTION_STEREO_BASELINE))

        session.state = CalibrationState.HOST_ASSISTED_SAMPLING
        calculators, intrinsics = self._detect_rectangles(self.streams.stream_ids[:2], 50.0)
        if intrinsics[1].fx <= 0.1 or intrinsics[1].fy <= 0.1:
            raise InsufficientDataError(TARGET_HINT)

        target_w, target_h = self.target_size()
        sides = [np.array(c.sides.as_tuple()) for c in calculators]
        fx = [intr.fx for intr in intrinsics]
        fy = [intr.fy for intr in intrinsics]

        aspect = [0.0, 0.0]
        for i in range(2):
            height_sum = sides[i][2] + sides[i][3]
            if height_sum > 0.1:
                aspect[i] = (sides[i][0] + sides[i][1]) / height_sum
        align = aspect[1] / aspect[0] - 1.0 if aspect[0] > 0.0 else 0.0

        tilt = []
        for i in range(2):
            targets = (fx[i] * target_w,) * 2 + (fy[i] * target_h,) * 2
            ground_truth = np.mean([t / s if s > 0 else 0.0 for t, s in zip(targets, sides[i])])
            angle = math.atan(align * ground_truth / baseline) if baseline > 0 else 0.0
            tilt.append(math.degrees(angle))

        session.state = CalibrationState.FIRMWARE_CALIBRATE
        scale = (fx[0] / fx[1],) * 2 + (fy[0] / fy[1],) * 2
        ratios = [
            c * right / left if left > 0.1 else 0.0
            for c, left, right in zip(scale, sides[0], sides[1])
        ]
        ratio = (float(np.mean(ratios)) - 1.0) * 100.0
        align *= 100.0
        corrected = ratio - params.correction_factor * align

        session.ratio = ratio
        session.align = align
        session.tilt_angle = float(np.mean(tilt))
        session.corrected_ratio = corrected
        session.new_table = patch_focal_length(session.old_table, corrected / 100.0 + 1.0)
        session.progress.advance(80)

    def _calibrate_focal_length_on_device(self) -> None:
        session = self.session
        progress = session.progress
        step = 50.0 / MATCHED_FRAMES_REQUIRED

        session.state = CalibrationState.HOST_ASSISTED_SAMPLING
        pairs = gather_matched_frames(
            self.sensor,
            self.streams.stream_ids[:2],
            MATCHED_FRAMES_REQUIRED,
            on_match=lambda n: progress.advance(n * step),
        )

        session.state = CalibrationState.FIRMWARE_CALIBRATE
        target_w, target_h = self.target_size()
        new_table, corrected, tilt = self.device.run_focal_length_calibration(
            [left for left, _ in pairs],
            [right for _, right in pairs],
            target_w,
            target_h,
            session.params.adjust_both_sides,
            progress.phase_callback(50),
        )
        if not new_table:
            raise CalibrationError("Focal length calibration failed!\n" + TARGET_HINT)
        session.new_table = new_table
        session.corrected_ratio = corrected
        session.tilt_angle = tilt

    def _measure_ground_truth(self) -> None:
        session = self.session
        if session.params.use_device_routine:
            ground_truth = self._measure_ground_truth_on_device()
        else:
            session.state = CalibrationState.HOST_ASSISTED_SAMPLING
            calculators, intrinsics = self._detect_rectangles(self.streams.stream_ids[:1], 100.0)
            sides = calculators[0].sides
            target_w, target_h = self.target_size()
            targets = (intrinsics[0].fx * target_w,) * 2 + (intrinsics[0].fy * target_h,) * 2
            estimates = [t / s if s > 0 else 0.0 for t, s in zip(targets, sides.as_tuple())]
            if any(g <= 0.1 for g in estimates):
                raise CalibrationError("Bad target rectangle side sizes returned!")
            ground_truth = float(np.mean(estimates))

        session.measured_ground_truth_mm = ground_truth
        session.params = replace(session.params, ground_truth_mm=ground_truth)
        self.config.set(KEY_GROUND_TRUTH, ground_truth)

    def _measure_ground_truth_on_device(self) -> float:
        session = self.session
        progress = session.progress
        step = 50.0 / TARGET_Z_FRAMES_REQUIRED

        session.state = CalibrationState.HOST_ASSISTED_SAMPLING
        frames = gather_matched_frames(
            self.sensor,
            self.streams.stream_ids[:1],
            TARGET_Z_FRAMES_REQUIRED,
            max_attempts=2 * TARGET_Z_FRAMES_REQUIRED,
            on_match=lambda n: progress.advance(n * step),
        )

        session.state = CalibrationState.FIRMWARE_CALIBRATE
        target_w, target_h = self.target_size()
        target_z = self.device.calculate_target_z(
            [f for (f,) in frames], target_w, target_h, progress.phase_callback(50)
        )
        if target_z <= 0.0:
            raise CalibrationError("Failed to calculate target ground truth")
        session.add_log(f"Target Z distance calculated - {target_z} mm")
        return float(target_z)

    def _calibrate_uv_mapping_on_device(self) -> None:
        session = self.session
        progress = session.progress
        color_id = self.streams.color_stream_id
        if color_id is None:
            raise CalibrationError("UV-Mapping calibration needs a color stream")

        step = 50.0 / MATCHED_FRAMES_REQUIRED
        session.state = CalibrationState.HOST_ASSISTED_SAMPLING
        left_id, depth_id = self.streams.stream_ids[:2]
        triples = self._gather_uv_frames(left_id, depth_id, color_id, step)

        session.state = CalibrationState.FIRMWARE_CALIBRATE
        new_table, health = self.device.run_uv_map_calibration(
            [t[0] for t in triples],
            [t[2] for t in triples],
            [t[1] for t in triples],
            session.params.py_px_only,
            progress.phase_callback(50),
        )
        if not new_table:
            raise CalibrationError(
                "UV-Mapping calibration failed!\n"
                "Please adjust the camera position\n"
                "and make sure the specific target is\n"
                "inside the ROI of the camera images!"
            )
        session.state = CalibrationState.HEALTH_EVALUATION
        session.new_table = new_table
        session.uv_health = list(health)
        session.add_log("UV-Mapping recalibration - a new work point was generated")

    def _gather_uv_frames(self, left_id: int, depth_id: int, color_id: int, step: float):
        progress = self.session.progress
        triples = []
        for _ in range(4 * MATCHED_FRAMES_REQUIRED):
            left = self.sensor.wait_for_frame(left_id)
            depth = self.sensor.wait_for_frame(depth_id)
            color = self.color_sensor.wait_for_frame(color_id)
            if left is None or depth is None or color is None:
                continue
            triples.append((left, depth, color))
            progress.advance(len(triples) * step)
            if len(triples) >= MATCHED_FRAMES_REQUIRED:
                return triples
        raise InsufficientDataError(
            "Failed to capture sufficient amount of frames to run UV-Map calibration!"
        )

    def _calibrate_uv_mapping(self) -> None:
        """Host-side UV-mapping refinement from dot correspondences."""
        session = self.session
        progress = session.progress
        color_id = self.streams.color_stream_id
        if color_id is None or self.color_sensor is None:
            raise CalibrationError("UV-Mapping calibration needs a color stream")
        left_id, depth_id = self.streams.stream_ids[:2]

        session.state = CalibrationState.HOST_ASSISTED_SAMPLING
        frame_num = DotsCalculator.FRAME_NUM
        calculators = [DotsCalculator(), DotsCalculator()]
        first = [None, None]
        depth_frames: list[Frame] = []
        done = [False, False]
        rejected = 0

        while rejected < 2 * frame_num and not (all(done) and len(depth_frames) >= frame_num):
            if len(depth_frames) < frame_num:
                depth = self.sensor.wait_for_frame(depth_id)
                if depth is not None:
                    depth_frames.append(depth)

            for i, (sensor, stream_id) in enumerate(
                ((self.sensor, left_id), (self.color_sensor, color_id))
            ):
                if done[i]:
                    continue
                frame = sensor.wait_for_frame(stream_id)
                if frame is None:
                    rejected += 1
                    continue
                if first[i] is None:
                    first[i] = frame
                image = frame.data
                if i == 1:
                    image = undistort_image(image, first[1].intrinsics)
                status = calculators[i].calculate(image)
                if status == DetectorStatus.MORE_FRAMES_NEEDED:
                    rejected += 1
                    continue
                progress.step(50.0 / frame_num, 50)
                if status == DetectorStatus.DONE:
                    done[i] = True

        if not all(done) or len(depth_frames) < frame_num:
            raise InsufficientDataError(TARGET_HINT)
        if first[0].intrinsics is None or first[1].intrinsics is None:
            raise CalibrationError("Streams do not report intrinsics")

        session.state = CalibrationState.FIRMWARE_CALIBRATE
        left_dots = calculators[0].dots
        color_dots = calculators[1].dots
        z = find_z_at_corners(
            left_dots, [f.data for f in depth_frames], depth_frames[0].depth_units
        )
        calib = UVMappingCalib(
            left_pixels=left_dots,
            left_z=z,
            color_pixels=color_dots,
            left_intrinsics=first[0].intrinsics,
            color_intrinsics=first[1].intrinsics,
            extrinsics=self.device.get_extrinsics(left_id, color_id),
        )
        result = calib.calibrate()

        session.state = CalibrationState.HEALTH_EVALUATION
        session.uv_result = result
        session.uv_health = [result.err_before, result.err_after]
        if not result.accepted:
            session.add_log("UV-Mapping correction exceeds the allowed change and was not accepted")


# ============================================================================
# Dispatch Table
# ============================================================================

ACTION_PLANS: dict[CalibrationAction, ActionPlan] = {
    CalibrationAction.ON_CHIP_CALIB: ActionPlan(
        title="On-Chip Calibration",
        runner=CalibrationOrchestrator._calibrate_on_chip,
    ),
    CalibrationAction.ON_CHIP_FL_CALIB: ActionPlan(
        title="On-Chip Focal Length Calibration",
        runner=CalibrationOrchestrator._calibrate_on_chip,
        auto_retry=True,
    ),
    CalibrationAction.ON_CHIP_OB_CALIB: ActionPlan(
        title="On-Chip Calibration Extended",
        runner=CalibrationOrchestrator._calibrate_on_chip,
        auto_retry=True,
    ),
    CalibrationAction.TARE_CALIB: ActionPlan(
        title="Tare Calibration",
        runner=CalibrationOrchestrator._calibrate_on_chip,
    ),
    CalibrationAction.TARE_GROUND_TRUTH: ActionPlan(
        title="Get Tare Calibration Ground Truth",
        runner=CalibrationOrchestrator._measure_ground_truth,
        measures_depth=False,
        target_streams=True,
    ),
    CalibrationAction.FL_CALIB: ActionPlan(
        title="Focal Length Calibration",
        runner=CalibrationOrchestrator._calibrate_focal_length,
        stop_first=True,
        target_streams=True,
    ),
    CalibrationAction.UVMAPPING_CALIB: ActionPlan(
        title="UV-Mapping Calibration",
        runner=CalibrationOrchestrator._calibrate_uv_mapping_on_device,
        measures_depth=False,
        stop_first=True,
        target_streams=True,
        restores_selection=False,
    ),
    CalibrationAction.UVMAPPING: ActionPlan(
        title="UV-Mapping Calibration",
        runner=CalibrationOrchestrator._calibrate_uv_mapping,
        measures_depth=False,
        stop_first=True,
        target_streams=True,
        restores_selection=False,
    ),
}
