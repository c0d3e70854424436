import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from sportmetrics.assets import AssetMaps
from sportmetrics.receiver import (
    FrameBuffer, FrameChannel, FrameData, RigidBodyData, SkeletonData,
    FRAME_EVENT, ASSETS_EVENT
)


def _frame(number: int, timestamp: float = 0.0) -> FrameData:
    return FrameData(
        frame_number=number,
        timestamp=timestamp,
        rigid_bodies=(RigidBodyData(id=1, position=(float(number), 0.0, 0.0)),),
    )


def test_consecutive_duplicate_is_dropped() -> None:
    buffer = FrameBuffer()

    assert buffer.append(_frame(1))
    assert not buffer.append(_frame(1))
    assert buffer.append(_frame(2))
    assert not buffer.append(_frame(2))

    assert [f.frame_number for f in buffer.history()] == [1, 2]
    assert buffer.stats == {"frames_buffered": 2, "duplicates_dropped": 2}


def test_only_last_frame_is_compared() -> None:
    buffer = FrameBuffer()
    for number in (1, 2, 1):
        buffer.append(_frame(number))

    assert [f.frame_number for f in buffer.history()] == [1, 2, 1]


def test_latest_on_empty_buffer_is_empty_frame() -> None:
    buffer = FrameBuffer()

    latest = buffer.latest()
    assert latest.frame_number == 0
    assert latest.rigid_bodies == ()
    assert len(buffer) == 0


def test_history_is_a_snapshot() -> None:
    buffer = FrameBuffer()
    buffer.append(_frame(1))
    snapshot = buffer.history()

    buffer.append(_frame(2))

    assert len(snapshot) == 1
    assert buffer.latest().frame_number == 2


def test_clear_resets_frames_and_stats() -> None:
    buffer = FrameBuffer()
    buffer.append(_frame(1))
    buffer.append(_frame(1))

    buffer.clear()

    assert len(buffer) == 0
    assert buffer.stats["duplicates_dropped"] == 0
    assert buffer.append(_frame(1))


def test_frame_dict_layout() -> None:
    frame = FrameData(
        frame_number=7,
        timestamp=0.25,
        rigid_bodies=(RigidBodyData(id=3, position=(1.0, 2.0, 3.0), orientation=(0.0, 0.0, 0.0, 1.0)),),
        skeletons=(SkeletonData(id=100, bones=(RigidBodyData(id=1, parent_id=-1),)),),
    )

    data = frame.to_dict()

    assert data["frameNumber"] == 7
    assert data["rigidBodies"][0] == {
        "id": 3, "parentId": -1, "position": [1.0, 2.0, 3.0], "orientation": [0.0, 0.0, 0.0, 1.0]
    }
    assert data["skeletons"][0]["bones"][0]["id"] == 1
    assert FrameData.from_dict(data) == frame


def test_from_dict_defaults_for_short_vectors() -> None:
    rb = RigidBodyData.from_dict({"id": 4, "position": [1.0], "orientation": []})

    assert rb.position == (0.0, 0.0, 0.0)
    assert rb.orientation == (0.0, 0.0, 0.0, 1.0)


def test_find_helpers() -> None:
    skeleton = SkeletonData(id=100, bones=(RigidBodyData(id=11), RigidBodyData(id=12)))
    frame = FrameData(frame_number=1, rigid_bodies=(RigidBodyData(id=5),), skeletons=(skeleton,))

    assert frame.find_rigid_body(5).id == 5
    assert frame.find_rigid_body(6) is None
    assert frame.find_skeleton(100) is skeleton
    assert skeleton.bone_index(12) == 1
    assert skeleton.bone_index(99) == -1


def test_channel_preserves_order() -> None:
    channel = FrameChannel()
    maps = AssetMaps(rigid_bodies={1: "Racket"})

    channel.put_assets(maps, "topology")
    channel.put_frame(_frame(1))
    channel.put_frame(_frame(2))

    events = channel.drain()
    assert [e.kind for e in events] == [ASSETS_EVENT, FRAME_EVENT, FRAME_EVENT]
    assert events[0].payload is maps
    assert events[0].extra["topology"] == "topology"
    assert events[2].payload.frame_number == 2
    assert len(channel) == 0


def test_channel_get_times_out() -> None:
    channel = FrameChannel()

    assert channel.get(timeout=0.01) is None

    channel.put_frame(_frame(3))
    event = channel.get(timeout=0.01)
    assert event is not None and event.payload.frame_number == 3
