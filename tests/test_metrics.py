import json
import os
import sys

import pytest
from scipy.spatial.transform import Rotation

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from sportmetrics.assets import AssetMaps, AssetResolver
from sportmetrics.metrics import (
    DataProcessor, MetricsData, MetricsExporter, RigidBodyMetrics, SkeletonMetrics,
    compute_acceleration, compute_horizontal_distance, compute_joint_angle,
    compute_tilt, compute_velocity, euler_angles
)
from sportmetrics.receiver import FrameData, RigidBodyData, SkeletonData


def _quat(order: str, angles, degrees: bool = True):
    return tuple(float(v) for v in Rotation.from_euler(order, angles, degrees=degrees).as_quat())


def _rb_frame(number: int, timestamp: float, position, orientation=(0.0, 0.0, 0.0, 1.0), body_id: int = 5):
    return FrameData(
        frame_number=number,
        timestamp=timestamp,
        rigid_bodies=(RigidBodyData(id=body_id, position=position, orientation=orientation),),
    )


@pytest.mark.parametrize("position", [(0.0, 0.0, 0.0), (1.5, -2.0, 3.25)])
@pytest.mark.parametrize("dt", [0.001, 0.5, 10.0])
def test_velocity_is_zero_for_equal_positions(position, dt) -> None:
    assert compute_velocity(position, position, dt) == 0.0


@pytest.mark.parametrize("dt", [0.0, -0.1])
def test_velocity_is_zero_for_non_positive_dt(dt) -> None:
    assert compute_velocity((1.0, 2.0, 3.0), (4.0, 5.0, 6.0), dt) == 0.0


def test_velocity_is_distance_over_time() -> None:
    assert compute_velocity((3.0, 4.0, 0.0), (0.0, 0.0, 0.0), 0.5) == pytest.approx(10.0)


@pytest.mark.parametrize("yaw", [0.0, 45.0, 170.0])
def test_tilt_ignores_yaw(yaw) -> None:
    assert compute_tilt(3.0, 4.0) == pytest.approx(5.0)

    pitch, decoded_yaw, roll = euler_angles(_quat("YXZ", [yaw, 3.0, 4.0]))
    assert pitch == pytest.approx(3.0)
    assert decoded_yaw == pytest.approx(yaw)
    assert roll == pytest.approx(4.0)
    assert compute_tilt(pitch, roll) == pytest.approx(5.0)


def test_euler_of_zero_quaternion_is_zero() -> None:
    assert euler_angles((0.0, 0.0, 0.0, 0.0)) == (0.0, 0.0, 0.0)


def test_acceleration_uses_speed_difference() -> None:
    # speed 1 m/s, then 3 m/s over 0.5 s steps
    accel = compute_acceleration((2.0, 0.0, 0.0), (0.5, 0.0, 0.0), (0.0, 0.0, 0.0), 0.5, 0.5)
    assert accel == pytest.approx((3.0 - 1.0) / 0.5)
    assert compute_acceleration((2.0, 0.0, 0.0), (0.5, 0.0, 0.0), (0.0, 0.0, 0.0), 0.0, 0.5) == 0.0


def test_joint_angle() -> None:
    identity = (0.0, 0.0, 0.0, 1.0)
    bent = _quat("X", 90.0)

    assert compute_joint_angle(identity, identity) == pytest.approx(0.0, abs=1e-6)
    assert compute_joint_angle(identity, bent) == pytest.approx(90.0)
    assert compute_joint_angle(bent, bent) == pytest.approx(0.0, abs=1e-5)


def test_horizontal_distance_ignores_height() -> None:
    assert compute_horizontal_distance((0.0, 0.0, 0.0), (0.03, 5.0, 0.04)) == pytest.approx(5.0)


def test_velocity_scenario_through_processor() -> None:
    resolver = AssetResolver()
    resolver.set_rigid_body_map({5: "Bat"})
    processor = DataProcessor(resolver)
    processor.set_metric_settings([{"class": "velocity", "ids": [5], "labels": ["vx"]}], [])
    processor.select_assets(rigid_body="Bat")

    results = [
        processor.on_frame(_rb_frame(n, 0.1 * n, (float(n), 0.0, 0.0)))
        for n in range(3)
    ]

    assert results[0][0].is_empty and results[1][0].is_empty
    rb_metrics = results[2][0]
    assert rb_metrics.id == 2
    assert rb_metrics.metrics["vx"] == pytest.approx(10.0)


def test_rigid_body_metrics_all_kinds() -> None:
    calc = RigidBodyMetrics()
    calc.set_metric_settings([
        {"class": "tilt", "ids": [], "labels": ["tilt"]},
        {"class": "velocity", "ids": [], "labels": ["speed"]},
        {"class": "acceleration", "ids": [], "labels": ["accel"]},
        {"class": "position", "ids": [], "labels": ["x", "y", "z"]},
        {"class": "orientation", "ids": [], "labels": ["pitch", "yaw", "roll"]},
    ])
    calc.select(5)

    orientation = _quat("YXZ", [30.0, 3.0, 4.0])
    second_previous = _rb_frame(1, 0.0, (0.0, 0.0, 0.0))
    previous = _rb_frame(2, 1.0, (1.0, 0.0, 0.0))
    current = _rb_frame(3, 2.0, (3.0, 1.0, 0.0), orientation)

    data = calc.compute_metrics(current, previous, second_previous)

    assert data.id == 3
    assert data.metrics["tilt"] == pytest.approx(5.0)
    assert data.metrics["speed"] == pytest.approx(5.0 ** 0.5)
    assert data.metrics["accel"] == pytest.approx(5.0 ** 0.5 - 1.0)
    assert (data.metrics["x"], data.metrics["y"], data.metrics["z"]) == (3.0, 1.0, 0.0)
    assert data.metrics["pitch"] == pytest.approx(3.0)
    assert data.metrics["yaw"] == pytest.approx(30.0)
    assert data.metrics["roll"] == pytest.approx(4.0)


def test_subject_missing_from_history_gives_zero_velocity() -> None:
    calc = RigidBodyMetrics()
    calc.set_metric_settings([{"class": "velocity", "ids": [], "labels": ["speed"]}])
    calc.select(5)

    current = _rb_frame(3, 2.0, (3.0, 0.0, 0.0))
    other = _rb_frame(2, 1.0, (0.0, 0.0, 0.0), body_id=6)

    data = calc.compute_metrics(current, other, other)
    assert data.metrics["speed"] == 0.0


def test_unknown_asset_name_gives_empty_results() -> None:
    resolver = AssetResolver()
    resolver.set_maps(AssetMaps(rigid_bodies={5: "Bat"}, skeletons={100: "Player"}))
    processor = DataProcessor(resolver)
    processor.set_metric_settings(
        [{"class": "velocity", "ids": [], "labels": ["speed"]}],
        [{"class": "angle", "ids": [0, 1], "labels": ["angle"]}],
    )

    assert processor.select_assets(rigid_body="Racket", skeleton="Nobody") == (-1, -1)

    for n in range(5):
        rb_metrics, skel_metrics = processor.on_frame(_rb_frame(n, 0.1 * n, (float(n), 0.0, 0.0)))
        assert rb_metrics.is_empty
        assert skel_metrics.is_empty


def test_selection_is_refreshed_when_maps_change() -> None:
    resolver = AssetResolver()
    processor = DataProcessor(resolver)
    processor.select_assets(rigid_body="Bat")
    assert processor.rigid_body_metrics.selected_asset == -1

    resolver.set_rigid_body_map({5: "Bat"})
    processor.refresh_selection()
    assert processor.rigid_body_metrics.selected_asset == 5


def _skeleton_frame(number: int, bend_degrees: float) -> FrameData:
    bones = (
        RigidBodyData(id=1001, position=(0.0, 1.0, 0.0)),
        RigidBodyData(id=1002, parent_id=1001, position=(0.0, 1.3, 0.0)),
        RigidBodyData(id=1003, parent_id=1002, position=(0.3, 1.3, 0.4),
                      orientation=_quat("X", bend_degrees)),
    )
    return FrameData(frame_number=number, skeletons=(SkeletonData(id=100, bones=bones),))


def test_skeleton_metrics_by_bone_index() -> None:
    calc = SkeletonMetrics()
    calc.set_metric_settings([
        {"class": "angle", "ids": [1, 2], "labels": ["elbow"]},
        {"class": "distance", "ids": [0, 2], "labels": ["reach"]},
        {"class": "angle", "ids": [1, 9], "labels": ["out_of_range"]},
    ])
    calc.select(100)

    data = calc.compute_metrics(_skeleton_frame(4, 90.0))

    assert data.id == 4
    assert data.metrics["elbow"] == pytest.approx(90.0)
    assert data.metrics["reach"] == pytest.approx(50.0)
    assert "out_of_range" not in data.metrics


def test_skeleton_metrics_by_joint_name(tmp_path) -> None:
    config = tmp_path / "skeleton_config.json"
    config.write_text(json.dumps({
        "FBX": {"joints": {"rightElbow": ["RightArm", "RightForeArm"], "missing": ["RightArm", "Nope"]}}
    }))
    resolver = AssetResolver(str(config))
    resolver.set_naming_convention("FBX")
    resolver.set_bone_map({100: {1001: "Hips", 1002: "RightArm", 1003: "RightForeArm"}})

    calc = SkeletonMetrics(resolver)
    calc.set_metric_settings([
        {"class": "angle", "ids": [], "labels": ["elbow"], "configuration": {"joint": "rightElbow"}},
        {"class": "angle", "ids": [], "labels": ["missing"], "configuration": {"joint": "missing"}},
    ])
    calc.select(100)

    data = calc.compute_metrics(_skeleton_frame(1, 45.0))

    assert data.metrics == {"elbow": pytest.approx(45.0)}


def test_processor_reset_restarts_warm_up() -> None:
    resolver = AssetResolver()
    resolver.set_rigid_body_map({5: "Bat"})
    processor = DataProcessor(resolver)
    processor.set_metric_settings([{"class": "velocity", "ids": [], "labels": ["v"]}], [])
    processor.select_assets(rigid_body="Bat")

    for n in range(3):
        processor.on_frame(_rb_frame(n, 0.1 * n, (0.0, 0.0, 0.0)))
    processor.reset()

    rb_metrics, _ = processor.on_frame(_rb_frame(10, 1.0, (0.0, 0.0, 0.0)))
    assert rb_metrics.is_empty


def test_exporter_writes_json_and_jsonl(tmp_path) -> None:
    rb = MetricsData(id=3, metrics={"v": 1.5})
    skel = MetricsData()

    json_path = tmp_path / "metrics.json"
    MetricsExporter.to_json([rb, skel], str(json_path))
    assert json.loads(json_path.read_text()) == [
        {"id": 3, "metrics": {"v": 1.5}},
        {"id": -1, "metrics": {}},
    ]

    jsonl_path = tmp_path / "metrics.jsonl"
    MetricsExporter.to_jsonl(rb, skel, str(jsonl_path))
    MetricsExporter.to_jsonl(rb, skel, str(jsonl_path))
    lines = jsonl_path.read_text().splitlines()
    assert len(lines) == 2
    assert json.loads(lines[0])["rigidBody"]["metrics"]["v"] == 1.5
