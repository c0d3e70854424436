"""
Frame source adapters for motion capture servers.

Provides functionality to:
- Define the MotionCaptureSource capability every adapter implements
- Drive the Disconnected -> Connecting -> Connected state machine
- Turn server data descriptions into asset maps and render topology
- Synthesize a deterministic capture stream (DummySource)
- Wrap the NatNet SDK Python client (NatNetSource)

Adapters deliver frames and description changes on their own I/O thread
through two callbacks; they never call back into the consumer.
"""

import importlib
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple, Callable, Protocol, cast

import numpy as np
from scipy.spatial.transform import Rotation

from .assets import AssetMaps
from .receiver import FrameData, RigidBodyData, SkeletonData, Vector3

logger = logging.getLogger(__name__)


class ConnectionType(Enum):
    UNICAST = "Unicast"
    MULTICAST = "Multicast"

    @classmethod
    def parse(cls, value: "str | ConnectionType") -> "ConnectionType":
        if isinstance(value, ConnectionType):
            return value
        for member in cls:
            if member.value.lower() == str(value).strip().lower():
                return member
        raise ValueError(f"unknown connection type: {value!r}")


class ConnectionState(Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


class SourceUnavailableError(RuntimeError):
    """Raised when an adapter's native client cannot be created."""


# Data descriptions

@dataclass
class ServerDescription:
    host_app: str = ""
    version: Tuple[int, ...] = ()
    host_present: bool = True


@dataclass
class RigidBodyDescription:
    id: int
    name: str
    parent_id: int = -1
    marker_positions: List[Vector3] = field(default_factory=list)


@dataclass
class SkeletonDescription:
    id: int
    name: str
    bones: List[RigidBodyDescription] = field(default_factory=list)


@dataclass
class DataDescriptions:
    """Snapshot of the assets a server currently streams."""
    rigid_bodies: List[RigidBodyDescription] = field(default_factory=list)
    skeletons: List[SkeletonDescription] = field(default_factory=list)


@dataclass
class MarkerOffsets:
    """Marker displacements from a rigid body's centroid, in body space."""
    body_id: int
    marker_offsets: List[Vector3] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bodyID": self.body_id,
            "markerOffsets": [list(offset) for offset in self.marker_offsets],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarkerOffsets":
        return cls(
            body_id=int(data.get("bodyID", -1)),
            marker_offsets=[
                (float(v[0]), float(v[1]), float(v[2]))
                for v in data.get("markerOffsets", [])
                if len(v) == 3
            ],
        )


@dataclass
class RenderTopology:
    """
    Static drawing data for the renderer.

    skeleton_bones holds one list of (parent_index, child_index) bone index
    pairs per skeleton, in description order.
    """
    skeleton_bones: List[List[Tuple[int, int]]] = field(default_factory=list)
    rb_offsets: List[MarkerOffsets] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "skeletons": [[[p, c] for p, c in pairs] for pairs in self.skeleton_bones],
            "rbOffsets": [offsets.to_dict() for offsets in self.rb_offsets],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RenderTopology":
        return cls(
            skeleton_bones=[
                [(int(pair[0]), int(pair[1])) for pair in pairs if len(pair) == 2]
                for pairs in data.get("skeletons", [])
            ],
            rb_offsets=[MarkerOffsets.from_dict(o) for o in data.get("rbOffsets", [])],
        )


def process_data_descriptions(descriptions: DataDescriptions) -> Tuple[AssetMaps, RenderTopology]:
    """
    Classify descriptions into name maps and render topology.

    Returns:
        (asset maps, render topology)
    """
    maps = AssetMaps()
    topology = RenderTopology()

    for rb in descriptions.rigid_bodies:
        maps.rigid_bodies[rb.id] = rb.name
        topology.rb_offsets.append(MarkerOffsets(
            body_id=rb.id,
            marker_offsets=compute_marker_offsets(rb.marker_positions),
        ))

    for skeleton in descriptions.skeletons:
        maps.skeletons[skeleton.id] = skeleton.name
        maps.bones[skeleton.id] = {bone.id: bone.name for bone in skeleton.bones}

        bone_index = {bone.id: index for index, bone in enumerate(skeleton.bones)}
        pairs = []
        for index, bone in enumerate(skeleton.bones):
            if bone.parent_id == -1:
                continue
            parent_index = bone_index.get(bone.parent_id, -1)
            if parent_index != -1:
                pairs.append((parent_index, index))
        topology.skeleton_bones.append(pairs)

    return maps, topology


def compute_marker_offsets(marker_positions: List[Vector3]) -> List[Vector3]:
    """Offset of each marker from the centroid of all markers."""
    if not marker_positions:
        return []
    markers = np.asarray(marker_positions, dtype=np.float64)
    offsets = markers - markers.mean(axis=0)
    return [(float(x), float(y), float(z)) for x, y, z in offsets]


# Capability interface

FrameCallback = Callable[[FrameData], None]
AssetCallback = Callable[[AssetMaps, RenderTopology], None]


class MotionCaptureSource(Protocol):
    def connect(
        self,
        server_address: str,
        client_address: str,
        connection_type: ConnectionType
    ) -> bool: ...

    def disconnect(self) -> None: ...

    def is_connected(self) -> bool: ...

    def get_data_descriptions(self) -> Optional[DataDescriptions]: ...

    def set_frame_callback(self, callback: Optional[FrameCallback]) -> None: ...

    def set_asset_callback(self, callback: Optional[AssetCallback]) -> None: ...


class BaseSource:
    """
    Connection lifecycle shared by all adapters.

    Subclasses implement _open, _fetch_server_description,
    _fetch_data_descriptions, _start_streaming and _close. Any failure while
    connecting closes what was opened and returns the source to
    DISCONNECTED; nothing is retried.
    """

    def __init__(self):
        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.Lock()

        self._frame_callback: Optional[FrameCallback] = None
        self._asset_callback: Optional[AssetCallback] = None

        self._server_description: Optional[ServerDescription] = None
        self._descriptions: Optional[DataDescriptions] = None
        self._maps = AssetMaps()
        self._topology = RenderTopology()

        self.server_address = ""
        self.client_address = ""
        self.connection_type = ConnectionType.MULTICAST

        self._frames_delivered = 0

    def set_frame_callback(self, callback: Optional[FrameCallback]) -> None:
        self._frame_callback = callback

    def set_asset_callback(self, callback: Optional[AssetCallback]) -> None:
        self._asset_callback = callback

    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    def get_data_descriptions(self) -> Optional[DataDescriptions]:
        return self._descriptions

    @property
    def server_description(self) -> Optional[ServerDescription]:
        return self._server_description

    @property
    def asset_maps(self) -> AssetMaps:
        return self._maps.copy()

    @property
    def topology(self) -> RenderTopology:
        return self._topology

    def connect(
        self,
        server_address: str,
        client_address: str,
        connection_type: ConnectionType = ConnectionType.MULTICAST
    ) -> bool:
        """
        Connect to a capture server.

        Returns:
            True once the server description and data descriptions were
            retrieved and streaming started; False otherwise
        """
        connection_type = ConnectionType.parse(connection_type)

        with self._state_lock:
            if self._state != ConnectionState.DISCONNECTED:
                return self._state == ConnectionState.CONNECTED
            self._state = ConnectionState.CONNECTING

        self.server_address = server_address
        self.client_address = client_address
        self.connection_type = connection_type

        try:
            self._open()

            server = self._fetch_server_description()
            if server is None or not server.host_present:
                raise ConnectionError("unable to get server description")
            self._server_description = server

            descriptions = self._fetch_data_descriptions()
            if descriptions is None:
                raise ConnectionError("unable to get data descriptions")

            with self._state_lock:
                self._state = ConnectionState.CONNECTED

            self.process_descriptions(descriptions)
            self._start_streaming()
        except (ConnectionError, OSError, SourceUnavailableError) as e:
            logger.warning("Unable to connect to %s: %s", server_address, e)
            self._teardown()
            return False
        except Exception:
            logger.exception("Connection to %s failed", server_address)
            self._teardown()
            return False

        logger.info("Connected to %s (%s)", server_address, self._server_description.host_app)
        return True

    def disconnect(self) -> None:
        if self._state == ConnectionState.DISCONNECTED:
            return
        self._teardown()
        logger.info("Disconnected from %s", self.server_address)

    def process_descriptions(self, descriptions: DataDescriptions) -> None:
        """Rebuild maps and topology from new descriptions and notify."""
        self._descriptions = descriptions
        self._maps, self._topology = process_data_descriptions(descriptions)
        callback = self._asset_callback
        if callback:
            callback(self._maps.copy(), self._topology)

    def _deliver_frame(self, frame: FrameData) -> None:
        """Hand a frame to the frame callback (called on the I/O thread)."""
        if self._state != ConnectionState.CONNECTED:
            return
        self._frames_delivered += 1
        callback = self._frame_callback
        if callback:
            callback(frame)

    def _teardown(self) -> None:
        with self._state_lock:
            self._state = ConnectionState.DISCONNECTED
        try:
            self._close()
        finally:
            self._server_description = None
            self._descriptions = None
            self._maps = AssetMaps()
            self._topology = RenderTopology()

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "frames_delivered": self._frames_delivered,
            "rigid_bodies": len(self._maps.rigid_bodies),
            "skeletons": len(self._maps.skeletons),
        }

    # Adapter hooks

    def _open(self) -> None:
        raise NotImplementedError

    def _fetch_server_description(self) -> Optional[ServerDescription]:
        raise NotImplementedError

    def _fetch_data_descriptions(self) -> Optional[DataDescriptions]:
        raise NotImplementedError

    def _start_streaming(self) -> None:
        raise NotImplementedError

    def _close(self) -> None:
        raise NotImplementedError


# Synthetic source

DUMMY_SKELETON_BONES = (
    ("Hips", -1, (0.0, 1.0, 0.0)),
    ("Spine1", 0, (0.0, 1.3, 0.0)),
    ("Neck", 1, (0.0, 1.55, 0.0)),
    ("Head", 2, (0.0, 1.7, 0.0)),
    ("LeftArm", 1, (-0.2, 1.45, 0.0)),
    ("LeftForeArm", 4, (-0.45, 1.45, 0.0)),
    ("LeftHand", 5, (-0.7, 1.45, 0.0)),
    ("RightArm", 1, (0.2, 1.45, 0.0)),
    ("RightForeArm", 7, (0.45, 1.45, 0.0)),
    ("RightHand", 8, (0.7, 1.45, 0.0)),
    ("LeftUpLeg", 0, (-0.1, 0.95, 0.0)),
    ("LeftLeg", 10, (-0.1, 0.5, 0.0)),
    ("LeftFoot", 11, (-0.1, 0.08, 0.0)),
    ("RightUpLeg", 0, (0.1, 0.95, 0.0)),
    ("RightLeg", 13, (0.1, 0.5, 0.0)),
    ("RightFoot", 14, (0.1, 0.08, 0.0)),
)


@dataclass
class DummySourceConfig:
    rigid_bodies: Tuple[str, ...] = ("Racket",)
    skeletons: Tuple[str, ...] = ("Player",)
    fps: float = 120.0
    seed: int = 0
    max_frames: Optional[int] = None
    duplicate_every: int = 0  # resend every Nth frame number, 0 = never
    fail_on: Optional[str] = None  # "open", "server", "descriptions"


class DummySource(BaseSource):
    """
    Deterministic in-process capture server.

    Rigid bodies circle the origin and skeleton limbs swing; markers are
    jittered with a seeded generator so runs are reproducible.

    Usage:
        source = DummySource(DummySourceConfig(fps=60.0, max_frames=100))
        source.set_frame_callback(on_frame)
        source.connect("127.0.0.1", "127.0.0.1", ConnectionType.UNICAST)
        ...
        source.disconnect()
    """

    def __init__(self, config: Optional[DummySourceConfig] = None):
        super().__init__()
        self.config = config if config is not None else DummySourceConfig()
        self._rng = np.random.default_rng(self.config.seed)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._frame_number = 0

    def _open(self) -> None:
        if self.config.fail_on == "open":
            raise ConnectionError("dummy server unreachable")
        self._stop.clear()

    def _fetch_server_description(self) -> Optional[ServerDescription]:
        if self.config.fail_on == "server":
            return None
        return ServerDescription(host_app="DummyServer", version=(4, 1, 0, 0))

    def _fetch_data_descriptions(self) -> Optional[DataDescriptions]:
        if self.config.fail_on == "descriptions":
            return None
        return self.build_descriptions()

    def build_descriptions(self) -> DataDescriptions:
        descriptions = DataDescriptions()

        for index, name in enumerate(self.config.rigid_bodies):
            markers = [
                (0.05, 0.0, 0.0),
                (-0.05, 0.0, 0.0),
                (0.0, 0.0, 0.08),
                (0.0, 0.03, -0.02),
            ]
            jitter = self._rng.normal(0.0, 0.001, size=(len(markers), 3))
            descriptions.rigid_bodies.append(RigidBodyDescription(
                id=index + 1,
                name=name,
                marker_positions=[
                    (float(m[0] + j[0]), float(m[1] + j[1]), float(m[2] + j[2]))
                    for m, j in zip(markers, jitter)
                ],
            ))

        for index, name in enumerate(self.config.skeletons):
            skeleton_id = 100 + index
            bones = []
            for bone_index, (bone_name, parent_index, _rest) in enumerate(DUMMY_SKELETON_BONES):
                bones.append(RigidBodyDescription(
                    id=skeleton_id * 1000 + bone_index + 1,
                    name=bone_name,
                    parent_id=-1 if parent_index == -1 else skeleton_id * 1000 + parent_index + 1,
                ))
            descriptions.skeletons.append(SkeletonDescription(id=skeleton_id, name=name, bones=bones))

        return descriptions

    def _start_streaming(self) -> None:
        self._frame_number = 0
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def _close(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        self._thread = None

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for a max_frames-limited stream to finish."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)

    def _loop(self) -> None:
        period = 1.0 / self.config.fps if self.config.fps > 0 else 0.0
        next_time = time.perf_counter()

        while not self._stop.is_set():
            if self.config.max_frames is not None and self._frame_number >= self.config.max_frames:
                break

            self._frame_number += 1
            frame = self.synthesize_frame(self._frame_number)
            self._deliver_frame(frame)

            every = self.config.duplicate_every
            if every > 0 and self._frame_number % every == 0:
                self._deliver_frame(frame)

            next_time += period
            delay = next_time - time.perf_counter()
            if delay > 0:
                self._stop.wait(delay)

    def synthesize_frame(self, frame_number: int) -> FrameData:
        """Frame content as a pure function of the frame number."""
        period = 1.0 / self.config.fps if self.config.fps > 0 else 0.0
        t = (frame_number - 1) * period

        rigid_bodies = []
        for index, _name in enumerate(self.config.rigid_bodies):
            phase = t * (1.0 + 0.25 * index)
            angle = 2.0 * math.pi * 0.5 * phase
            position = (math.cos(angle), 1.0 + 0.1 * math.sin(3.0 * angle), math.sin(angle))
            orientation = Rotation.from_euler(
                "YXZ", [math.degrees(angle), 10.0 * math.sin(angle), 5.0 * math.cos(angle)],
                degrees=True,
            ).as_quat()
            rigid_bodies.append(RigidBodyData(
                id=index + 1,
                position=position,
                orientation=tuple(float(v) for v in orientation),
            ))

        skeletons = []
        for index, _name in enumerate(self.config.skeletons):
            skeleton_id = 100 + index
            swing = 45.0 * math.sin(2.0 * math.pi * 0.5 * t)
            bones = []
            for bone_index, (_bone_name, parent_index, rest) in enumerate(DUMMY_SKELETON_BONES):
                bend = swing if bone_index in (5, 8, 11, 14) else 0.0
                orientation = Rotation.from_euler("X", bend, degrees=True).as_quat()
                bones.append(RigidBodyData(
                    id=skeleton_id * 1000 + bone_index + 1,
                    parent_id=-1 if parent_index == -1 else skeleton_id * 1000 + parent_index + 1,
                    position=(rest[0] + 0.1 * t, rest[1], rest[2]),
                    orientation=tuple(float(v) for v in orientation),
                ))
            skeletons.append(SkeletonData(id=skeleton_id, bones=tuple(bones)))

        return FrameData(
            frame_number=frame_number,
            timestamp=t,
            rigid_bodies=tuple(rigid_bodies),
            skeletons=tuple(skeletons),
        )


# NatNet SDK adapter

class _NatNetClientApi(Protocol):
    def set_client_address(self, local_ip_address: str) -> None: ...

    def set_server_address(self, server_ip_address: str) -> None: ...

    def set_use_multicast(self, use_multicast: bool) -> None: ...

    def set_print_level(self, print_level: int = 0) -> int: ...

    def run(self) -> bool: ...

    def connected(self) -> bool: ...

    def get_application_name(self) -> str: ...

    def get_server_version(self) -> Tuple[int, ...]: ...

    def send_request(self, in_socket: Any, command: int, command_str: str, address: Tuple[str, int]) -> int: ...

    def shutdown(self) -> None: ...


class NatNetSource(BaseSource):
    """
    Adapter over the NatNet SDK Python client (module ``NatNetClient``).

    The SDK module ships with OptiTrack's NatNet SDK samples and is imported
    lazily at connect time. Only this class touches SDK objects: frames and
    descriptions are converted into FrameData / DataDescriptions at the
    listener boundary.
    """

    MODULE_NAME = "NatNetClient"
    NAT_REQUEST_MODELDEF = 4

    def __init__(self, description_timeout: float = 2.0):
        super().__init__()
        self.description_timeout = description_timeout
        self._client: Optional[_NatNetClientApi] = None
        self._descriptions_ready = threading.Event()
        self._pending_descriptions: Optional[DataDescriptions] = None

    def _open(self) -> None:
        try:
            module = importlib.import_module(self.MODULE_NAME)
            client_cls = getattr(module, "NatNetClient", None)
            if client_cls is None:
                raise SourceUnavailableError("natnet_missing_NatNetClient")
        except ImportError as exc:
            raise SourceUnavailableError(f"natnet_import_failed: {exc}") from exc

        try:
            client = cast(_NatNetClientApi, client_cls())
            client.set_client_address(self.client_address)
            client.set_server_address(self.server_address)
            client.set_use_multicast(self.connection_type == ConnectionType.MULTICAST)
            client.set_print_level(0)
        except (AttributeError, TypeError) as exc:
            raise SourceUnavailableError(f"natnet_api_mismatch: {exc}") from exc

        setattr(client, "new_frame_with_data_listener", self._on_natnet_frame)
        setattr(client, "data_descriptions_listener", self._on_natnet_descriptions)

        self._descriptions_ready.clear()
        self._client = client
        if not client.run():
            raise ConnectionError("natnet client failed to start")

    def _fetch_server_description(self) -> Optional[ServerDescription]:
        client = self._client
        if client is None or not client.connected():
            return None
        return ServerDescription(
            host_app=str(client.get_application_name()),
            version=tuple(int(v) for v in client.get_server_version()),
        )

    def _fetch_data_descriptions(self) -> Optional[DataDescriptions]:
        client = self._client
        if client is None:
            return None
        command_socket = getattr(client, "command_socket", None)
        command_port = int(getattr(client, "command_port", 1510))
        client.send_request(command_socket, self.NAT_REQUEST_MODELDEF, "",
                            (self.server_address, command_port))
        if not self._descriptions_ready.wait(self.description_timeout):
            return None
        return self._pending_descriptions

    def _start_streaming(self) -> None:
        # The SDK client streams from its own threads once run() succeeded.
        pass

    def _close(self) -> None:
        client = self._client
        self._client = None
        if client is not None:
            try:
                client.shutdown()
            except OSError as e:
                logger.warning("NatNet client shutdown failed: %s", e)

    def _on_natnet_descriptions(self, data_descriptions: Any) -> None:
        descriptions = descriptions_from_natnet(data_descriptions)
        if self._state == ConnectionState.CONNECTED:
            self.process_descriptions(descriptions)
        else:
            self._pending_descriptions = descriptions
            self._descriptions_ready.set()

    def _on_natnet_frame(self, data_dict: Dict[str, Any], mocap_data: Any) -> None:
        self._deliver_frame(frame_from_natnet(data_dict, mocap_data))


def frame_from_natnet(data_dict: Dict[str, Any], mocap_data: Any) -> FrameData:
    """Convert a NatNet client MoCapData object to a FrameData."""
    rigid_bodies = tuple(
        _rigid_body_from_natnet(rb)
        for rb in getattr(getattr(mocap_data, "rigid_body_data", None), "rigid_body_list", [])
    )
    skeletons = tuple(
        SkeletonData(
            id=int(skeleton.id_num),
            bones=tuple(_rigid_body_from_natnet(bone) for bone in skeleton.rigid_body_list),
        )
        for skeleton in getattr(getattr(mocap_data, "skeleton_data", None), "skeleton_list", [])
    )
    suffix = getattr(mocap_data, "suffix_data", None)
    return FrameData(
        frame_number=int(data_dict.get("frame_number", 0)),
        timestamp=float(getattr(suffix, "timestamp", 0.0)),
        rigid_bodies=rigid_bodies,
        skeletons=skeletons,
    )


def _rigid_body_from_natnet(rb: Any) -> RigidBodyData:
    pos = rb.pos
    rot = rb.rot  # (qx, qy, qz, qw)
    return RigidBodyData(
        id=int(rb.id_num),
        position=(float(pos[0]), float(pos[1]), float(pos[2])),
        orientation=(float(rot[0]), float(rot[1]), float(rot[2]), float(rot[3])),
    )


def descriptions_from_natnet(data_descriptions: Any) -> DataDescriptions:
    """Convert a NatNet client DataDescriptions object."""
    def rigid_body(desc: Any) -> RigidBodyDescription:
        name = desc.sz_name
        if isinstance(name, bytes):
            name = name.decode("utf-8")
        return RigidBodyDescription(
            id=int(desc.id_num),
            name=str(name),
            parent_id=int(getattr(desc, "parent_id", -1)),
            marker_positions=[
                (float(m.pos[0]), float(m.pos[1]), float(m.pos[2]))
                for m in getattr(desc, "rb_marker_list", [])
            ],
        )

    descriptions = DataDescriptions()
    for desc in getattr(data_descriptions, "rigid_body_list", []):
        descriptions.rigid_bodies.append(rigid_body(desc))
    for skeleton in getattr(data_descriptions, "skeleton_list", []):
        name = skeleton.name
        if isinstance(name, bytes):
            name = name.decode("utf-8")
        descriptions.skeletons.append(SkeletonDescription(
            id=int(skeleton.id_num),
            name=str(name),
            bones=[rigid_body(b) for b in skeleton.rigid_body_description_list],
        ))
    return descriptions


SOURCE_FACTORIES: Dict[str, Callable[[], BaseSource]] = {
    "dummy": DummySource,
    "natnet": NatNetSource,
}


def create_source(name: str = "natnet") -> BaseSource:
    """Create a fresh adapter instance; each connection owns its own."""
    factory = SOURCE_FACTORIES.get(name)
    if factory is None:
        raise SourceUnavailableError(f"unknown_source: {name}")
    return factory()
