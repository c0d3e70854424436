import json
import os
import sys
import threading
import time

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from sportmetrics.assets import AssetMaps
from sportmetrics.receiver import FrameData, RigidBodyData, SkeletonData
from sportmetrics.recorder import TakeRecorder, list_sample_takes, list_take_files, sample_take_path
from sportmetrics.replay import (
    ReplayController, Take, TakeParseError, load_take, parse_take, save_take,
    validate_take_integrity
)
from sportmetrics.source import MarkerOffsets, RenderTopology


def _frames(count: int, start: int = 1):
    return [
        FrameData(
            frame_number=n,
            timestamp=(n - start) / 120.0,
            rigid_bodies=(RigidBodyData(id=1, position=(0.01 * n, 1.0, 0.0), orientation=(0.0, 0.0, 0.0, 1.0)),),
            skeletons=(SkeletonData(id=100, bones=(
                RigidBodyData(id=1001),
                RigidBodyData(id=1002, parent_id=1001),
            )),),
        )
        for n in range(start, start + count)
    ]


def _take(count: int = 5) -> Take:
    return Take(
        maps=AssetMaps(rigid_bodies={1: "Racket"}, skeletons={100: "Player"},
                       bones={100: {1001: "Hips", 1002: "Spine1"}}),
        frames=_frames(count),
        topology=RenderTopology(
            skeleton_bones=[[(0, 1)]],
            rb_offsets=[MarkerOffsets(body_id=1, marker_offsets=[(0.05, 0.0, 0.0)])],
        ),
        capture_start="2026-01-01T10:00:00",
        capture_end="2026-01-01T10:00:05",
    )


@pytest.fixture()
def take_file(tmp_path) -> str:
    return str(save_take(_take(), str(tmp_path / "take_20260101_100000.json")))


def test_take_file_layout(take_file: str) -> None:
    with open(take_file, "r", encoding="utf-8") as f:
        data = json.load(f)

    assert data["rigidBodies"] == {"1": "Racket"}
    assert data["skeletons"] == {"100": "Player"}
    assert data["bones"] == {"100": {"1001": "Hips", "1002": "Spine1"}}
    assert data["glAssets"] == {
        "skeletons": [[[0, 1]]],
        "rbOffsets": [{"bodyID": 1, "markerOffsets": [[0.05, 0.0, 0.0]]}],
    }
    assert data["schemaVersion"] == "1.0"
    frame = data["frames"][0]
    assert set(frame) == {"frameNumber", "timestamp", "rigidBodies", "skeletons"}
    assert frame["rigidBodies"][0]["orientation"] == [0.0, 0.0, 0.0, 1.0]


def test_load_take(take_file: str) -> None:
    take = load_take(take_file)

    assert take.frames == _frames(5)
    assert take.maps == _take().maps
    assert take.topology.skeleton_bones == [[(0, 1)]]
    assert take.capture_start == "2026-01-01T10:00:00"
    assert take.get_duration_seconds() == pytest.approx(4 / 120.0)


def test_parse_take_ignores_unknown_keys_and_missing_sections() -> None:
    take = parse_take({"frames": [], "comment": "hand written"})

    assert take.frames == []
    assert take.maps == AssetMaps()
    assert take.topology.skeleton_bones == []


@pytest.mark.parametrize("document", [
    [],
    {"frames": {}},
    {"rigidBodies": []},
    {"frames": [{"frameNumber": "seven"}]},
    {"frames": [{"rigidBodies": [{"position": 5}]}]},
    {"rigidBodies": {"one": "Racket"}},
])
def test_parse_take_rejects_malformed_documents(document) -> None:
    with pytest.raises(TakeParseError):
        parse_take(document)


def test_load_take_errors(tmp_path) -> None:
    with pytest.raises(TakeParseError):
        load_take(str(tmp_path / "missing.json"))

    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    with pytest.raises(TakeParseError):
        load_take(str(broken))


def test_validate_take_integrity(take_file: str) -> None:
    result = validate_take_integrity(take_file)

    assert result["valid"]
    assert result["errors"] == []
    assert result["warnings"] == []
    assert result["stats"]["total_frames"] == 5
    assert result["stats"]["rigid_bodies"] == ["Racket"]


def test_validate_take_integrity_reports_problems(tmp_path) -> None:
    take = _take()
    take.frames = _frames(3) + _frames(1, start=3) + _frames(1, start=1)
    take.schema_version = "0.9"
    path = save_take(take, str(tmp_path / "take.json"))

    result = validate_take_integrity(str(path))

    assert result["valid"]
    warnings = " ".join(result["warnings"])
    assert "0.9" in warnings
    assert "1 duplicate" in warnings
    assert "1 non-monotonic" in warnings


def test_validate_take_integrity_unreadable(tmp_path) -> None:
    path = tmp_path / "take.json"
    path.write_text("[]")

    result = validate_take_integrity(str(path))

    assert not result["valid"]
    assert result["errors"]


def test_replay_emits_every_frame_in_order() -> None:
    emitted = []
    controller = ReplayController(emit=emitted.append, base_interval=0.001)
    controller.load(_take(10))

    assert controller.start_replay(100.0)
    assert controller.wait(timeout=5.0)

    assert emitted == _frames(10)
    assert not controller.is_replaying()
    assert controller.stats["frames_emitted"] == 10


def test_replay_does_not_loop() -> None:
    emitted = []
    done = threading.Event()
    controller = ReplayController(emit=emitted.append, base_interval=0.001)
    controller.set_complete_callback(done.set)
    controller.load(_take(3))

    controller.start_replay()
    assert done.wait(timeout=5.0)
    time.sleep(0.05)

    assert len(emitted) == 3


def test_replay_of_empty_take_does_not_start() -> None:
    controller = ReplayController(emit=lambda frame: None)
    controller.load(Take())

    assert not controller.start_replay(100.0)
    assert not controller.is_replaying()


def test_replay_rejects_non_positive_speed() -> None:
    controller = ReplayController(emit=lambda frame: None)
    controller.load(_take(3))

    assert not controller.start_replay(0.0)
    assert not controller.start_replay(-50.0)


def test_stop_replay_cancels_pending_tick() -> None:
    emitted = []
    controller = ReplayController(emit=emitted.append, base_interval=0.05)
    controller.load(_take(20))

    controller.start_replay(100.0)
    time.sleep(0.12)
    controller.stop_replay()
    count = len(emitted)
    time.sleep(0.15)

    assert 1 <= count < 20
    assert len(emitted) == count
    assert not controller.is_replaying()
    assert controller.wait(timeout=0.0)


def test_stop_replay_waits_for_frame_in_flight() -> None:
    emitted = []
    entered = threading.Event()
    release = threading.Event()

    def slow_emit(frame):
        emitted.append(frame)
        entered.set()
        release.wait(timeout=5.0)

    controller = ReplayController(emit=slow_emit, base_interval=0.001)
    controller.load(_take(10))
    controller.start_replay(100.0)
    assert entered.wait(timeout=5.0)

    stopper = threading.Thread(target=controller.stop_replay)
    stopper.start()
    time.sleep(0.05)
    assert stopper.is_alive()

    release.set()
    stopper.join(timeout=5.0)
    assert not stopper.is_alive()
    count = len(emitted)
    time.sleep(0.05)

    assert count == 1
    assert len(emitted) == 1
    assert controller.stats["frames_emitted"] == 1


def _replay_duration(speed_percent: float) -> float:
    controller = ReplayController(emit=lambda frame: None, base_interval=0.02)
    controller.load(_take(11))
    start = time.perf_counter()
    controller.start_replay(speed_percent)
    assert controller.wait(timeout=10.0)
    return time.perf_counter() - start


def test_half_speed_takes_twice_as_long() -> None:
    full = _replay_duration(100.0)
    half = _replay_duration(50.0)

    assert full == pytest.approx(0.2, rel=0.5)
    assert 1.6 < half / full < 2.5


def test_recorder_writes_timestamped_take(tmp_path) -> None:
    recorder = TakeRecorder(take_dir=str(tmp_path / "saved_takes"))
    new_takes = []
    recorder.set_new_take_callback(new_takes.append)
    take = _take(4)

    recorder.start_recording(take.maps, take.topology)
    for frame in take.frames:
        assert recorder.record(frame)
    path = recorder.stop_recording()

    assert path.name.startswith("take_") and path.suffix == ".json"
    assert new_takes == [path]
    loaded = load_take(str(path))
    assert loaded.frames == take.frames
    assert loaded.maps == take.maps
    assert loaded.capture_start and loaded.capture_end


def test_recorder_requires_active_recording(tmp_path) -> None:
    recorder = TakeRecorder(take_dir=str(tmp_path))

    assert not recorder.record(_frames(1)[0])
    assert recorder.stop_recording() is None

    recorder.start_recording(AssetMaps(), RenderTopology())
    with pytest.raises(RuntimeError):
        recorder.start_recording(AssetMaps(), RenderTopology())


def test_recorder_never_overwrites_takes(tmp_path) -> None:
    recorder = TakeRecorder(take_dir=str(tmp_path))
    paths = []
    for _ in range(3):
        recorder.start_recording(AssetMaps(), RenderTopology())
        paths.append(recorder.stop_recording())

    assert len(set(paths)) == 3
    assert list_take_files(str(tmp_path)) == sorted(paths)


def test_recorder_keeps_session_when_write_fails(tmp_path) -> None:
    blocker = tmp_path / "saved_takes"
    blocker.write_text("not a directory")
    recorder = TakeRecorder(take_dir=str(blocker))
    new_takes = []
    recorder.set_new_take_callback(new_takes.append)
    take = _take(4)

    recorder.start_recording(take.maps, take.topology)
    for frame in take.frames:
        recorder.record(frame)

    assert recorder.stop_recording() is None
    assert recorder.is_recording
    assert recorder.stats["frames_recorded"] == 4
    assert new_takes == []

    recorder.take_dir = tmp_path / "retry"
    path = recorder.stop_recording()

    assert path is not None
    assert new_takes == [path]
    assert load_take(str(path)).frames == take.frames
    assert not recorder.is_recording


def test_list_take_files_missing_dir(tmp_path) -> None:
    assert list_take_files(str(tmp_path / "nowhere")) == []


def test_bundled_sample_take_is_valid() -> None:
    assert "take_sample_tennis_serve" in list_sample_takes()
    path = sample_take_path("take_sample_tennis_serve")

    result = validate_take_integrity(str(path))

    assert result["valid"]
    assert result["warnings"] == []
    assert result["stats"]["total_frames"] == 36
    assert result["stats"]["rigid_bodies"] == ["Racket"]


def test_unknown_sample_take() -> None:
    with pytest.raises(KeyError):
        sample_take_path("take_curling")
