"""
Kinematic metrics for the selected rigid body and skeleton.

Provides functionality to:
- Derive tilt, speed, acceleration, position and orientation of a rigid body
  from up to three consecutive frames
- Derive joint angles and horizontal bone distances of a skeleton
- Orchestrate both calculators once per delivered frame
- Export computed metrics (JSON, JSONL)

Nothing in this module raises on bad input: an unselected subject, missing
history or a non-positive time step yields an empty or zeroed result.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple, Callable

import numpy as np
from scipy.spatial.transform import Rotation

from .assets import AssetResolver, UNRESOLVED
from .definitions import (
    MetricDefinition, MetricKind, RIGID_BODY_KINDS, SKELETON_KINDS,
    parse_metric_definitions
)
from .receiver import FrameData, RigidBodyData, SkeletonData, Vector3, Quaternion

logger = logging.getLogger(__name__)


@dataclass
class MetricsData:
    """Metric values computed for one frame, keyed by label."""
    id: int = -1  # frame number, -1 when nothing was computed
    metrics: Dict[str, float] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.id == -1 and not self.metrics

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "metrics": dict(self.metrics)}


# Core formulas

def euler_angles(orientation: Quaternion) -> Tuple[float, float, float]:
    """
    Convert an (x, y, z, w) quaternion to (pitch, yaw, roll) in degrees.

    Rotation order is roll about Z, then pitch about X, then yaw about Y,
    i.e. R = Ry(yaw) @ Rx(pitch) @ Rz(roll).
    """
    if np.linalg.norm(orientation) < 1e-12:
        return (0.0, 0.0, 0.0)
    yaw, pitch, roll = Rotation.from_quat(orientation).as_euler("YXZ", degrees=True)
    return (float(pitch), float(yaw), float(roll))


def compute_tilt(pitch: float, roll: float) -> float:
    """Total tilt from horizontal; yaw does not contribute."""
    return float(np.sqrt(pitch * pitch + roll * roll))


def compute_velocity(current: Vector3, previous: Vector3, delta_time: float) -> float:
    """Speed between two positions, 0 when delta_time <= 0."""
    if delta_time <= 0.0:
        return 0.0
    distance = np.linalg.norm(np.subtract(current, previous))
    return float(distance / delta_time)


def compute_acceleration(
    current: Vector3,
    previous: Vector3,
    second_previous: Vector3,
    current_delta_time: float,
    previous_delta_time: float
) -> float:
    """
    Rate of change of speed magnitude over the current time step.

    This is d|v|/dt, not |dv/dt|: a body moving in a circle at constant
    speed has zero acceleration here.
    """
    if current_delta_time <= 0.0:
        return 0.0
    current_speed = compute_velocity(current, previous, current_delta_time)
    previous_speed = compute_velocity(previous, second_previous, previous_delta_time)
    return (current_speed - previous_speed) / current_delta_time


def compute_joint_angle(bone1_orientation: Quaternion, bone2_orientation: Quaternion) -> float:
    """Angle in degrees of the rotation taking bone 1 onto bone 2."""
    if (np.linalg.norm(bone1_orientation) < 1e-12
            or np.linalg.norm(bone2_orientation) < 1e-12):
        return 0.0
    relative = Rotation.from_quat(bone1_orientation).inv() * Rotation.from_quat(bone2_orientation)
    w = float(np.clip(relative.as_quat()[3], -1.0, 1.0))
    return float(np.degrees(2.0 * np.arccos(w)))


def compute_horizontal_distance(position1: Vector3, position2: Vector3) -> float:
    """Distance in the X-Z plane, scaled from meters to centimeters."""
    dx = position2[0] - position1[0]
    dz = position2[2] - position1[2]
    return float(np.sqrt(dx * dx + dz * dz) * 100.0)


# Rigid body metrics

@dataclass
class _RigidBodyContext:
    current: RigidBodyData
    previous: Optional[RigidBodyData]
    second_previous: Optional[RigidBodyData]
    current_delta_time: float
    previous_delta_time: float
    euler: Tuple[float, float, float]


def _first_label(definition: MetricDefinition, value: float) -> List[Tuple[str, float]]:
    if not definition.labels:
        return []
    return [(definition.labels[0], value)]


def _rb_tilt(definition: MetricDefinition, ctx: _RigidBodyContext) -> List[Tuple[str, float]]:
    pitch, _yaw, roll = ctx.euler
    return _first_label(definition, compute_tilt(pitch, roll))


def _rb_velocity(definition: MetricDefinition, ctx: _RigidBodyContext) -> List[Tuple[str, float]]:
    if ctx.previous is None:
        return _first_label(definition, 0.0)
    velocity = compute_velocity(ctx.current.position, ctx.previous.position, ctx.current_delta_time)
    return _first_label(definition, velocity)


def _rb_acceleration(definition: MetricDefinition, ctx: _RigidBodyContext) -> List[Tuple[str, float]]:
    if ctx.previous is None or ctx.second_previous is None:
        return _first_label(definition, 0.0)
    acceleration = compute_acceleration(
        ctx.current.position,
        ctx.previous.position,
        ctx.second_previous.position,
        ctx.current_delta_time,
        ctx.previous_delta_time,
    )
    return _first_label(definition, acceleration)


def _rb_position(definition: MetricDefinition, ctx: _RigidBodyContext) -> List[Tuple[str, float]]:
    return list(zip(definition.labels[:3], ctx.current.position))


def _rb_orientation(definition: MetricDefinition, ctx: _RigidBodyContext) -> List[Tuple[str, float]]:
    return list(zip(definition.labels[:3], ctx.euler))


_RIGID_BODY_DISPATCH: Dict[MetricKind, Callable[[MetricDefinition, _RigidBodyContext], List[Tuple[str, float]]]] = {
    MetricKind.TILT: _rb_tilt,
    MetricKind.VELOCITY: _rb_velocity,
    MetricKind.ACCELERATION: _rb_acceleration,
    MetricKind.POSITION: _rb_position,
    MetricKind.ORIENTATION: _rb_orientation,
}


class RigidBodyMetrics:
    """
    Computes rigid body metrics for the selected rigid body.

    Usage:
        calc = RigidBodyMetrics()
        calc.set_metric_settings([{"class": "velocity", "ids": [5], "labels": ["vx"]}])
        calc.select(5)
        data = calc.compute_metrics(current, previous, second_previous)
    """

    def __init__(self):
        self.selected_asset = UNRESOLVED
        self._definitions: List[MetricDefinition] = []

    @property
    def definitions(self) -> List[MetricDefinition]:
        return list(self._definitions)

    def set_metric_settings(self, raw_definitions: List[Dict[str, Any]]) -> None:
        """Replace the active metric list with a sport's rigidMetrics array."""
        self._definitions = parse_metric_definitions(raw_definitions, RIGID_BODY_KINDS)

    def set_definitions(self, definitions: List[MetricDefinition]) -> None:
        self._definitions = [d for d in definitions if d.kind in RIGID_BODY_KINDS]

    def select(self, rigid_body_id: int) -> None:
        self.selected_asset = rigid_body_id

    def compute_metrics(
        self,
        current: FrameData,
        previous: FrameData,
        second_previous: FrameData
    ) -> MetricsData:
        """
        Compute every configured metric for the selected rigid body.

        Args:
            current: Frame being processed
            previous: Frame delivered before current
            second_previous: Frame delivered before previous

        Returns:
            MetricsData for current's frame number; empty if no subject is
            selected or the subject is absent from current
        """
        data = MetricsData()

        if self.selected_asset == UNRESOLVED:
            return data

        body = current.find_rigid_body(self.selected_asset)
        if body is None:
            return data

        data.id = current.frame_number
        ctx = _RigidBodyContext(
            current=body,
            previous=previous.find_rigid_body(self.selected_asset),
            second_previous=second_previous.find_rigid_body(self.selected_asset),
            current_delta_time=current.timestamp - previous.timestamp,
            previous_delta_time=previous.timestamp - second_previous.timestamp,
            euler=euler_angles(body.orientation),
        )

        for definition in self._definitions:
            handler = _RIGID_BODY_DISPATCH.get(definition.kind)
            if handler is None:
                continue
            for label, value in handler(definition, ctx):
                data.metrics[label] = value

        return data


# Skeleton metrics

class SkeletonMetrics:
    """
    Computes joint metrics for the selected skeleton.

    Bones are addressed by their index in the skeleton's bone list through a
    definition's ids, or by a joint name (configuration["joint"]) resolved
    through the resolver's joint mapping for the current naming convention.
    """

    def __init__(self, resolver: Optional[AssetResolver] = None):
        self.resolver = resolver
        self.selected_asset = UNRESOLVED
        self._definitions: List[MetricDefinition] = []

    @property
    def definitions(self) -> List[MetricDefinition]:
        return list(self._definitions)

    def set_metric_settings(self, raw_definitions: List[Dict[str, Any]]) -> None:
        """Replace the active metric list with a sport's bodyMetrics array."""
        self._definitions = parse_metric_definitions(raw_definitions, SKELETON_KINDS)

    def set_definitions(self, definitions: List[MetricDefinition]) -> None:
        self._definitions = [d for d in definitions if d.kind in SKELETON_KINDS]

    def select(self, skeleton_id: int) -> None:
        self.selected_asset = skeleton_id

    def compute_metrics(self, current: FrameData) -> MetricsData:
        """
        Compute every configured metric for the selected skeleton.

        Only the first skeleton in the frame with the selected id is used.
        """
        data = MetricsData()

        if self.selected_asset == UNRESOLVED:
            return data

        skeleton = current.find_skeleton(self.selected_asset)
        if skeleton is None:
            return data

        data.id = current.frame_number

        for definition in self._definitions:
            bones = self._bone_pair(definition, skeleton)
            if bones is None or not definition.labels:
                continue
            bone1, bone2 = bones

            if definition.kind == MetricKind.ANGLE:
                value = compute_joint_angle(bone1.orientation, bone2.orientation)
            elif definition.kind == MetricKind.DISTANCE:
                value = compute_horizontal_distance(bone1.position, bone2.position)
            else:
                continue
            data.metrics[definition.labels[0]] = value

        return data

    def _bone_pair(
        self,
        definition: MetricDefinition,
        skeleton: SkeletonData
    ) -> Optional[Tuple[RigidBodyData, RigidBodyData]]:
        if definition.joint:
            if self.resolver is None:
                return None
            bone_ids = self.resolver.joint_bone_ids(skeleton.id, definition.joint)
            indices = [skeleton.bone_index(bone_id) for bone_id in bone_ids]
        else:
            indices = list(definition.ids)

        if len(indices) < 2:
            return None
        first, second = indices[0], indices[1]
        if not (0 <= first < len(skeleton.bones) and 0 <= second < len(skeleton.bones)):
            return None
        return skeleton.bones[first], skeleton.bones[second]


# Orchestration

class DataProcessor:
    """
    Runs both calculators once per frame on the consumer thread.

    Keeps the two previously processed frames. Until both exist the
    processor only shifts its history and reports empty results.

    Usage:
        processor = DataProcessor(resolver)
        processor.set_metric_settings(rigid_metrics, body_metrics)
        processor.select_assets(rigid_body="Racket", skeleton="Player")
        rb_metrics, skel_metrics = processor.on_frame(frame)
    """

    def __init__(self, resolver: Optional[AssetResolver] = None):
        self.resolver = resolver if resolver is not None else AssetResolver()
        self.rigid_body_metrics = RigidBodyMetrics()
        self.skeleton_metrics = SkeletonMetrics(self.resolver)

        self._previous: Optional[FrameData] = None
        self._second_previous: Optional[FrameData] = None

        self._rigid_body_name: Optional[str] = None
        self._skeleton_name: Optional[str] = None

    def on_frame(self, frame: FrameData) -> Tuple[MetricsData, MetricsData]:
        """
        Compute rigid body and skeleton metrics for a new frame.

        Returns:
            (rigid_body_metrics, skeleton_metrics)
        """
        if self._previous is None or self._second_previous is None:
            self._second_previous = self._previous
            self._previous = frame
            return MetricsData(), MetricsData()

        rb_metrics = self.rigid_body_metrics.compute_metrics(
            frame, self._previous, self._second_previous
        )
        skel_metrics = self.skeleton_metrics.compute_metrics(frame)

        self._second_previous = self._previous
        self._previous = frame

        return rb_metrics, skel_metrics

    def reset(self) -> None:
        """Forget frame history (new connection or new take)."""
        self._previous = None
        self._second_previous = None

    def set_metric_settings(
        self,
        rigid_metric_settings: List[Dict[str, Any]],
        body_metric_settings: List[Dict[str, Any]]
    ) -> None:
        self.rigid_body_metrics.set_metric_settings(rigid_metric_settings)
        self.skeleton_metrics.set_metric_settings(body_metric_settings)

    def select_assets(
        self,
        rigid_body: Optional[str] = None,
        skeleton: Optional[str] = None
    ) -> Tuple[int, int]:
        """
        Select the subjects by name.

        An unknown name leaves that calculator with no subject.

        Returns:
            (rigid_body_id, skeleton_id), UNRESOLVED where not found
        """
        self._rigid_body_name = rigid_body
        self._skeleton_name = skeleton
        return self.refresh_selection()

    def refresh_selection(self) -> Tuple[int, int]:
        """Re-resolve the selected names against the current asset maps."""
        rigid_body_id = self.resolver.resolve_rigid_body(self._rigid_body_name)
        skeleton_id = self.resolver.resolve_skeleton(self._skeleton_name)

        if self._rigid_body_name and rigid_body_id == UNRESOLVED:
            logger.warning("Invalid rigid body asset: %s", self._rigid_body_name)
        if self._skeleton_name and skeleton_id == UNRESOLVED:
            logger.warning("Invalid skeleton asset: %s", self._skeleton_name)

        self.rigid_body_metrics.select(rigid_body_id)
        self.skeleton_metrics.select(skeleton_id)
        return rigid_body_id, skeleton_id


class MetricsExporter:
    """
    Export computed metrics to file.
    """

    @staticmethod
    def to_json(metrics: List[MetricsData], filepath: str) -> None:
        """Write a list of MetricsData to a JSON file."""
        with open(filepath, 'w') as f:
            json.dump([m.to_dict() for m in metrics], f, indent=2)

    @staticmethod
    def to_jsonl(
        rigid_body_metrics: MetricsData,
        skeleton_metrics: MetricsData,
        filepath: str
    ) -> None:
        """Append one frame's metrics pair as a JSONL line."""
        entry = {
            "rigidBody": rigid_body_metrics.to_dict(),
            "skeleton": skeleton_metrics.to_dict(),
        }
        with open(filepath, 'a') as f:
            f.write(json.dumps(entry) + '\n')
