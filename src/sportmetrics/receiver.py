"""
Frame data model and buffering for motion capture streams.

Provides functionality to:
- Represent rigid bodies, skeletons and complete capture frames as value types
- Buffer delivered frames thread-safely, dropping duplicate frame numbers
- Hand frames and asset updates from the I/O thread to the consumer thread
"""

import queue
import threading
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple


Vector3 = Tuple[float, float, float]
Quaternion = Tuple[float, float, float, float]  # (x, y, z, w)

IDENTITY_QUATERNION: Quaternion = (0.0, 0.0, 0.0, 1.0)


@dataclass(frozen=True)
class RigidBodyData:
    """Pose of a single rigid body (or skeleton bone) in one frame."""
    id: int = -1
    parent_id: int = -1
    position: Vector3 = (0.0, 0.0, 0.0)
    orientation: Quaternion = IDENTITY_QUATERNION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "parentId": self.parent_id,
            "position": list(self.position),
            "orientation": list(self.orientation),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RigidBodyData":
        position = data.get("position", [])
        orientation = data.get("orientation", [])
        return cls(
            id=int(data.get("id", -1)),
            parent_id=int(data.get("parentId", -1)),
            position=_vector3(position) if len(position) == 3 else (0.0, 0.0, 0.0),
            orientation=(
                _quaternion(orientation) if len(orientation) == 4 else IDENTITY_QUATERNION
            ),
        )


@dataclass(frozen=True)
class SkeletonData:
    """A skeleton and its bones, in the bone order fixed at connection time."""
    id: int = -1
    bones: Tuple[RigidBodyData, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "bones": [bone.to_dict() for bone in self.bones]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SkeletonData":
        return cls(
            id=int(data.get("id", -1)),
            bones=tuple(RigidBodyData.from_dict(b) for b in data.get("bones", [])),
        )

    def bone_index(self, bone_id: int) -> int:
        """Index of the bone with the given id, or -1."""
        for index, bone in enumerate(self.bones):
            if bone.id == bone_id:
                return index
        return -1


@dataclass(frozen=True)
class FrameData:
    """One frame of motion capture data as delivered by the server."""
    frame_number: int = 0
    timestamp: float = 0.0  # seconds
    rigid_bodies: Tuple[RigidBodyData, ...] = ()
    skeletons: Tuple[SkeletonData, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frameNumber": self.frame_number,
            "timestamp": self.timestamp,
            "rigidBodies": [rb.to_dict() for rb in self.rigid_bodies],
            "skeletons": [sk.to_dict() for sk in self.skeletons],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FrameData":
        return cls(
            frame_number=int(data.get("frameNumber", 0)),
            timestamp=float(data.get("timestamp", 0.0)),
            rigid_bodies=tuple(
                RigidBodyData.from_dict(rb) for rb in data.get("rigidBodies", [])
            ),
            skeletons=tuple(SkeletonData.from_dict(sk) for sk in data.get("skeletons", [])),
        )

    def find_rigid_body(self, rigid_body_id: int) -> Optional[RigidBodyData]:
        for rb in self.rigid_bodies:
            if rb.id == rigid_body_id:
                return rb
        return None

    def find_skeleton(self, skeleton_id: int) -> Optional[SkeletonData]:
        for skeleton in self.skeletons:
            if skeleton.id == skeleton_id:
                return skeleton
        return None


def _vector3(values) -> Vector3:
    return (float(values[0]), float(values[1]), float(values[2]))


def _quaternion(values) -> Quaternion:
    return (float(values[0]), float(values[1]), float(values[2]), float(values[3]))


class FrameBuffer:
    """
    Append-only, thread-safe store of delivered frames.

    The adapter's I/O thread appends; the consumer reads snapshots. The lock
    is held only while the list is touched, never across computation. Frames
    are immutable, so handing one out is a safe copy.

    A frame whose number equals the last buffered frame's number is a
    duplicate and is dropped. Only the last entry is compared, so an
    out-of-order frame number further back in history is not detected.
    """

    def __init__(self):
        self._frames: List[FrameData] = []
        self._lock = threading.Lock()
        self._duplicates_dropped = 0

    def append(self, frame: FrameData) -> bool:
        """
        Add a frame unless it duplicates the last buffered frame.

        Returns:
            True if the frame was buffered, False if it was dropped
        """
        with self._lock:
            if self._frames and self._frames[-1].frame_number == frame.frame_number:
                self._duplicates_dropped += 1
                return False
            self._frames.append(frame)
            return True

    def latest(self) -> FrameData:
        """Most recent frame, or an empty FrameData if nothing is buffered."""
        with self._lock:
            return self._frames[-1] if self._frames else FrameData()

    def history(self) -> Tuple[FrameData, ...]:
        """Read-only snapshot of every buffered frame, oldest first."""
        with self._lock:
            return tuple(self._frames)

    def clear(self) -> None:
        with self._lock:
            self._frames.clear()
            self._duplicates_dropped = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._frames)

    @property
    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "frames_buffered": len(self._frames),
                "duplicates_dropped": self._duplicates_dropped,
            }


FRAME_EVENT = "frame"
ASSETS_EVENT = "assets"


@dataclass
class ChannelEvent:
    """An item queued from the I/O thread for the consumer thread."""
    kind: str
    payload: Any = None
    extra: Dict[str, Any] = field(default_factory=dict)


class FrameChannel:
    """
    Unbounded queue between the producer (I/O or replay) thread and the consumer.

    Producers never block; the consumer drains on its own schedule.

    Usage:
        channel = FrameChannel()
        channel.put_frame(frame)          # I/O thread
        for event in channel.drain():     # consumer thread
            handle(event)
    """

    def __init__(self):
        self._queue: "queue.Queue[ChannelEvent]" = queue.Queue()

    def put_frame(self, frame: FrameData) -> None:
        self._queue.put(ChannelEvent(kind=FRAME_EVENT, payload=frame))

    def put_assets(self, maps: Any, topology: Any) -> None:
        self._queue.put(ChannelEvent(kind=ASSETS_EVENT, payload=maps, extra={"topology": topology}))

    def get(self, timeout: Optional[float] = None) -> Optional[ChannelEvent]:
        """Block for the next event; None on timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[ChannelEvent]:
        """Remove and return every queued event without blocking."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def clear(self) -> None:
        self.drain()

    def __len__(self) -> int:
        return self._queue.qsize()
