"""
Asset naming for rigid bodies, skeletons and skeleton bones.

Provides functionality to:
- Hold the id -> name maps reported by the capture server (or a loaded take)
- Rebuild the reverse name -> id maps whenever a forward map changes
- Resolve user-selected asset names without raising
- Load joint -> bone name mappings per skeleton naming convention
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)

UNRESOLVED = -1

NAMING_CONVENTIONS = ("Motive", "FBX", "BVH", "UnrealEngine")

DEFAULT_JOINT_CONFIG = Path(__file__).resolve().parent / "data" / "skeleton_config.json"


@dataclass
class AssetMaps:
    """Forward id -> name maps for every asset type."""
    rigid_bodies: Dict[int, str] = field(default_factory=dict)
    skeletons: Dict[int, str] = field(default_factory=dict)
    bones: Dict[int, Dict[int, str]] = field(default_factory=dict)  # skeleton id -> bone id -> name

    def copy(self) -> "AssetMaps":
        return AssetMaps(
            rigid_bodies=dict(self.rigid_bodies),
            skeletons=dict(self.skeletons),
            bones={sk: dict(b) for sk, b in self.bones.items()},
        )

    def to_dict(self) -> Dict[str, Any]:
        """Take-file layout: JSON object keys are stringified ids."""
        return {
            "rigidBodies": {str(k): v for k, v in self.rigid_bodies.items()},
            "skeletons": {str(k): v for k, v in self.skeletons.items()},
            "bones": {
                str(sk): {str(b): name for b, name in bones.items()}
                for sk, bones in self.bones.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssetMaps":
        return cls(
            rigid_bodies={int(k): str(v) for k, v in data.get("rigidBodies", {}).items()},
            skeletons={int(k): str(v) for k, v in data.get("skeletons", {}).items()},
            bones={
                int(sk): {int(b): str(name) for b, name in bones.items()}
                for sk, bones in data.get("bones", {}).items()
            },
        )


class AssetResolver:
    """
    Id <-> name lookup for the assets currently known to the pipeline.

    Forward maps are replaced wholesale and the reverse maps are rebuilt in
    full after every replacement, so they never go stale.

    Usage:
        resolver = AssetResolver()
        resolver.set_maps(maps)
        body_id = resolver.resolve_rigid_body("Racket")   # UNRESOLVED if unknown
    """

    def __init__(self, joint_config_path: Optional[str] = None):
        """
        Args:
            joint_config_path: Joint mapping file (default: bundled skeleton_config.json)
        """
        self.joint_config_path = Path(joint_config_path) if joint_config_path else DEFAULT_JOINT_CONFIG

        self._rigid_bodies: Dict[int, str] = {}
        self._skeletons: Dict[int, str] = {}
        self._bones: Dict[int, Dict[int, str]] = {}

        self._rigid_body_ids: Dict[str, int] = {}
        self._skeleton_ids: Dict[str, int] = {}
        self._bone_ids: Dict[int, Dict[str, int]] = {}

        self._naming_convention: Optional[str] = None
        self._joint_mappings: Dict[str, List[str]] = {}

    def set_rigid_body_map(self, rigid_bodies: Dict[int, str]) -> None:
        self._rigid_bodies = dict(rigid_bodies)
        self.rebuild_reverse_maps()

    def set_skeleton_map(self, skeletons: Dict[int, str]) -> None:
        self._skeletons = dict(skeletons)
        self.rebuild_reverse_maps()

    def set_bone_map(self, bones: Dict[int, Dict[int, str]]) -> None:
        self._bones = {sk: dict(b) for sk, b in bones.items()}
        self.rebuild_reverse_maps()

    def set_maps(self, maps: AssetMaps) -> None:
        """Replace all three forward maps at once."""
        self._rigid_bodies = dict(maps.rigid_bodies)
        self._skeletons = dict(maps.skeletons)
        self._bones = {sk: dict(b) for sk, b in maps.bones.items()}
        self.rebuild_reverse_maps()

    def clear(self) -> None:
        self.set_maps(AssetMaps())

    def rebuild_reverse_maps(self) -> None:
        self._rigid_body_ids = {name: rb_id for rb_id, name in self._rigid_bodies.items()}
        self._skeleton_ids = {name: sk_id for sk_id, name in self._skeletons.items()}
        self._bone_ids = {
            sk_id: {name: bone_id for bone_id, name in bones.items()}
            for sk_id, bones in self._bones.items()
        }

    @property
    def maps(self) -> AssetMaps:
        return AssetMaps(
            rigid_bodies=dict(self._rigid_bodies),
            skeletons=dict(self._skeletons),
            bones={sk: dict(b) for sk, b in self._bones.items()},
        )

    @property
    def rigid_body_names(self) -> Dict[str, int]:
        return dict(self._rigid_body_ids)

    @property
    def skeleton_names(self) -> Dict[str, int]:
        return dict(self._skeleton_ids)

    def resolve_rigid_body(self, name: Optional[str]) -> int:
        if not name:
            return UNRESOLVED
        return self._rigid_body_ids.get(name, UNRESOLVED)

    def resolve_skeleton(self, name: Optional[str]) -> int:
        if not name:
            return UNRESOLVED
        return self._skeleton_ids.get(name, UNRESOLVED)

    def resolve_bone(self, skeleton_id: int, name: str) -> int:
        return self._bone_ids.get(skeleton_id, {}).get(name, UNRESOLVED)

    # Joint mappings

    @property
    def naming_convention(self) -> Optional[str]:
        return self._naming_convention

    @property
    def joint_mappings(self) -> Dict[str, List[str]]:
        return {joint: list(bones) for joint, bones in self._joint_mappings.items()}

    def set_naming_convention(self, convention: str) -> bool:
        """
        Switch naming convention and reload its joint mapping.

        The previous mapping is always discarded; if the file cannot be read
        the mapping stays empty.

        Returns:
            True if the mapping was loaded
        """
        self._naming_convention = convention
        self._joint_mappings = {}
        try:
            self._joint_mappings = load_joint_mappings(self.joint_config_path, convention)
        except (OSError, ValueError) as e:
            logger.warning("Could not load joint mapping for %s from %s: %s",
                           convention, self.joint_config_path, e)
            return False
        return True

    def joint_bone_ids(self, skeleton_id: int, joint: str) -> List[int]:
        """
        Bone ids for a named joint of a skeleton.

        Returns:
            Resolved bone ids in mapping order; empty if any bone is unknown
        """
        ids = []
        for bone_name in self._joint_mappings.get(joint, []):
            bone_id = self.resolve_bone(skeleton_id, bone_name)
            if bone_id == UNRESOLVED:
                return []
            ids.append(bone_id)
        return ids


def load_joint_mappings(path: Path, convention: str) -> Dict[str, List[str]]:
    """
    Read the joint -> bone names table for one naming convention.

    File layout:
        {"FBX": {"joints": {"leftKnee": ["LeftUpLeg", "LeftLeg"], ...}}, ...}

    Raises:
        OSError: If the file cannot be read
        ValueError: If the file is not valid JSON or has the wrong shape
    """
    with open(path, "r", encoding="utf-8") as f:
        root = json.load(f)

    if not isinstance(root, dict):
        raise ValueError("joint mapping root must be an object")

    section = root.get(convention, {})
    joints = section.get("joints", {}) if isinstance(section, dict) else None
    if not isinstance(joints, dict):
        raise ValueError(f"joints for {convention} must be an object")

    return {str(joint): [str(b) for b in bones] for joint, bones in joints.items()}
