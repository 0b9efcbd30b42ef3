from __future__ import annotations

import logging
import threading
import time
from datetime import datetime

import numpy as np
import pytest

from depthtrack.config import TrackerConfig
from depthtrack.depth import decode_depth_image, depth_to_point_cloud
from depthtrack.errors import ConfigurationError, DecodeError, ResourceUnavailable
from depthtrack.model import CameraIntrinsics, DataFrame, DepthImage
from depthtrack.orchestrator import FilterPhase
from depthtrack.rendering import DiscRenderer
from depthtrack.session import TrackingSession, TrajectoryWriter

from fakes import FakeFilter

WIDTH = 8
HEIGHT = 6


def _intrinsics() -> CameraIntrinsics:
    return CameraIntrinsics(width_px=WIDTH, height_px=HEIGHT, fx_px=9.0, fy_px=8.5, cx_px=3.7, cy_px=2.6)


def _frame(stamp: float, index: int = 0, *, value: int = 1000) -> DataFrame:
    depth = np.full((HEIGHT, WIDTH), value, dtype=np.uint16)
    depth[0, 0] = 0
    image = DepthImage(
        encoding="16UC1",
        width=WIDTH,
        height=HEIGHT,
        data=depth.tobytes(),
        timestamp_s=stamp,
        frame_index=index,
    )
    return DataFrame(image=image, intrinsics=_intrinsics())


def _broken_frame(stamp: float, index: int) -> DataFrame:
    image = DepthImage(encoding="16UC1", width=WIDTH, height=HEIGHT, data=b"\x00" * 5, timestamp_s=stamp, frame_index=index)
    return DataFrame(image=image, intrinsics=_intrinsics())


def _seeds() -> list[np.ndarray]:
    return [np.array([0.0, 0.0, 1.0 + 0.01 * i, 0.0, 0.0, 0.0]) for i in range(4)]


def _session(filter_: FakeFilter, **overrides) -> TrackingSession:
    values = {"body_names": ("obj",), "downsampling_factor": 2, "evaluation_count": 10}
    values.update(overrides)
    session = TrackingSession(TrackerConfig(**values), filter_factory=lambda intrinsics: filter_)
    session.initialize(_frame(0.0), _seeds())
    return session


class SlowFilter(FakeFilter):
    def predict_update(self, observation: np.ndarray, elapsed_time: float, control: np.ndarray) -> None:
        time.sleep(0.01)
        super().predict_update(observation, elapsed_time, control)


def test_initialize_uses_downsampled_camera() -> None:
    filter_ = FakeFilter()
    received: list[CameraIntrinsics] = []

    def factory(intrinsics: CameraIntrinsics) -> FakeFilter:
        received.append(intrinsics)
        return filter_

    session = TrackingSession(TrackerConfig(body_names=("obj",), downsampling_factor=2), filter_factory=factory)
    session.initialize(_frame(0.0), _seeds())

    assert session.phase is FilterPhase.STEADY_STATE
    assert received == [_intrinsics().downsampled(2)]
    assert filter_.observations[0].shape == (3, 4)
    assert np.isnan(filter_.observations[0][0, 0])
    assert filter_.observations[0][1, 1] == pytest.approx(1.0)


def test_elapsed_time_is_the_timestamp_difference() -> None:
    filter_ = SlowFilter()
    session = _session(filter_)
    staged_calls = len(filter_.elapsed_times)

    results = [session.process_frame(_frame(stamp, index)) for index, stamp in enumerate((10.0, 10.03, 10.065))]

    assert filter_.elapsed_times[staged_calls:] == [0.0, pytest.approx(0.03), pytest.approx(0.035)]
    assert [result.elapsed_s for result in results] == [0.0, pytest.approx(0.03), pytest.approx(0.035)]
    assert session.last_frame_timestamp == pytest.approx(10.065)


def test_frame_skip_is_logged_and_processing_continues(caplog: pytest.LogCaptureFixture) -> None:
    filter_ = FakeFilter()
    session = _session(filter_)
    staged_calls = len(filter_.elapsed_times)

    with caplog.at_level(logging.WARNING, logger="depthtrack.session"):
        results = [session.process_frame(_frame(stamp, index)) for index, stamp in enumerate((0.0, 0.03, 0.2))]

    assert [result.frame_skipped for result in results] == [False, False, True]
    assert all(result.filter_updated for result in results)
    assert filter_.elapsed_times[staged_calls:] == [0.0, pytest.approx(0.03), pytest.approx(0.17)]
    assert any("frames were skipped" in record.getMessage() for record in caplog.records)


def test_drop_policy_skips_the_update_and_carries_elapsed_time() -> None:
    filter_ = FakeFilter()
    session = _session(filter_, frame_skip_policy="drop")
    staged_calls = len(filter_.elapsed_times)

    results = [session.process_frame(_frame(stamp, index)) for index, stamp in enumerate((0.0, 0.03, 0.2, 0.23))]

    assert [result.filter_updated for result in results] == [True, True, False, True]
    assert filter_.elapsed_times[staged_calls:] == [0.0, pytest.approx(0.03), pytest.approx(0.2)]
    assert results[3].elapsed_s == pytest.approx(0.03)
    np.testing.assert_allclose(results[2].mean_state, results[1].mean_state)


def test_decode_errors_carry_frame_context() -> None:
    filter_ = FakeFilter()
    session = _session(filter_)
    session.process_frame(_frame(1.0, 4))

    with pytest.raises(DecodeError) as info:
        session.process_frame(_broken_frame(1.03, 5))

    assert info.value.frame_index == 5
    assert info.value.timestamp_s == pytest.approx(1.03)
    assert "frame=5" in str(info.value)
    assert session.last_frame_timestamp == pytest.approx(1.0)
    assert session.process_frame(_frame(1.06, 6)).elapsed_s == pytest.approx(0.06)


def test_run_skips_or_propagates_undecodable_frames(caplog: pytest.LogCaptureFixture) -> None:
    frames = [_frame(0.0, 0), _broken_frame(0.03, 1), _frame(0.06, 2)]

    with caplog.at_level(logging.WARNING, logger="depthtrack.session"):
        results = _session(FakeFilter()).run(frames)
    assert [result.frame_index for result in results] == [0, 2]
    assert any("undecodable" in record.getMessage() for record in caplog.records)

    with pytest.raises(DecodeError):
        _session(FakeFilter()).run(frames, skip_undecodable=False)


def test_processing_before_initialize_fails() -> None:
    session = TrackingSession(TrackerConfig(body_names=("obj",)), filter_factory=lambda intrinsics: FakeFilter())
    assert session.phase is FilterPhase.UNINITIALIZED
    with pytest.raises(RuntimeError, match="not initialized"):
        session.process_frame(_frame(0.0))
    with pytest.raises(RuntimeError):
        session.mean_state()


def test_point_cloud_restores_full_resolution_camera() -> None:
    session = _session(FakeFilter())
    frame = _frame(0.5, 1, value=1700)

    cloud = session.point_cloud(frame)
    direct = depth_to_point_cloud(decode_depth_image(frame.image), frame.intrinsics)

    assert cloud.shape == (WIDTH * HEIGHT, 3)
    np.testing.assert_allclose(cloud, direct, rtol=1e-12, atol=1e-12, equal_nan=True)
    result = session.process_frame(frame, with_point_cloud=True)
    assert result.point_cloud is not None
    assert np.isnan(result.point_cloud[0]).all()


def test_result_carries_transform_hierarchy() -> None:
    session = _session(FakeFilter(), tf_prefix="MEAN", camera_frame="depth_optical")

    result = session.process_frame(_frame(0.0))

    assert [(frame.name, frame.parent) for frame in result.transforms] == [
        ("MEAN/depth_optical", "depth_optical"),
        ("MEAN/obj", "MEAN/depth_optical"),
    ]
    assert result.transforms[1].translation[2] == pytest.approx(float(result.mean_state[2]))


def test_mismatched_camera_info_is_rejected() -> None:
    session = TrackingSession(TrackerConfig(body_names=("obj",)), filter_factory=lambda intrinsics: FakeFilter())
    frame = _frame(0.0)
    wrong = DataFrame(image=frame.image, intrinsics=CameraIntrinsics(WIDTH * 2, HEIGHT * 2, 9.0, 9.0, 7.5, 5.5))

    with pytest.raises(ConfigurationError):
        session.initialize(wrong, _seeds())


def test_missing_assets_abort_session_construction(tmp_path) -> None:
    with pytest.raises(ResourceUnavailable, match="shader"):
        TrackingSession(TrackerConfig(use_gpu=True, shader_paths=(str(tmp_path / "missing.vert"),)))
    with pytest.raises(ResourceUnavailable, match="mesh"):
        TrackingSession(TrackerConfig(mesh_paths=(str(tmp_path / "missing.obj"),)))

    session = TrackingSession(TrackerConfig(body_names=("obj",)))
    with pytest.raises(ConfigurationError, match="body_radii_m"):
        session.initialize(_frame(0.0), _seeds())


def test_frames_are_processed_one_at_a_time() -> None:
    active = 0
    peak = 0
    guard = threading.Lock()

    class CountingFilter(FakeFilter):
        def predict_update(self, observation: np.ndarray, elapsed_time: float, control: np.ndarray) -> None:
            nonlocal active, peak
            with guard:
                active += 1
                peak = max(peak, active)
            time.sleep(0.005)
            with guard:
                active -= 1
            super().predict_update(observation, elapsed_time, control)

    session = _session(CountingFilter())
    threads = [
        threading.Thread(target=lambda offset=offset: [session.process_frame(_frame(offset + 0.01 * i, i)) for i in range(5)])
        for offset in (0.0, 100.0)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert peak == 1


def test_trajectory_writer_appends_timestamped_lines(tmp_path) -> None:
    session = _session(FakeFilter())
    writer = TrajectoryWriter.in_directory(tmp_path, now=datetime(2026, 1, 2, 3, 4, 5))

    with writer:
        session.run([_frame(0.0, 0), _frame(0.033, 1)], writer=writer)

    assert writer.path.name == "tracking_data_20260102_030405.txt"
    lines = writer.path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    fields = lines[1].split()
    assert float(fields[0]) == pytest.approx(0.033)
    assert len(fields) == 1 + 6
    with pytest.raises(ValueError):
        writer.write(session.process_frame(_frame(0.066, 2)))


def test_overlay_needs_a_renderer() -> None:
    filter_ = FakeFilter()
    session = _session(filter_)
    staged_calls = len(filter_.elapsed_times)

    with pytest.raises(ValueError, match="with_overlay needs a renderer"):
        session.process_frame(_frame(0.03, 1), with_overlay=True)
    assert len(filter_.elapsed_times) == staged_calls
    assert session.last_frame_timestamp is None

    config = TrackerConfig(body_names=("obj",), downsampling_factor=2, evaluation_count=10)
    drawn = TrackingSession(
        config,
        filter_factory=lambda intrinsics: FakeFilter(),
        renderer=DiscRenderer(config.layout(), [0.1]),
    )
    drawn.initialize(_frame(0.0), _seeds())
    result = drawn.process_frame(_frame(0.03, 1), with_overlay=True)
    assert result.overlay is not None
    assert result.overlay.shape == (HEIGHT // 2, WIDTH // 2, 3)
