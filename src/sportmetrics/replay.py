"""
Take files and replay of recorded sessions.

Provides functionality to:
- Read and write take files (one JSON document per recorded session)
- Replay a take's frames at a chosen speed through a frame callback
- Keep replay cadence under processing jitter with a self-correcting timer
- Validate take files for integrity and consistency
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any, List, Callable

from .assets import AssetMaps
from .receiver import FrameData
from .source import RenderTopology

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0"


class TakeParseError(ValueError):
    """Raised when a take file cannot be read or decoded."""


@dataclass
class Take:
    """A recorded session: frames plus the asset maps and topology they refer to."""
    maps: AssetMaps = field(default_factory=AssetMaps)
    frames: List[FrameData] = field(default_factory=list)
    topology: RenderTopology = field(default_factory=RenderTopology)
    schema_version: str = SCHEMA_VERSION
    capture_start: str = ""
    capture_end: str = ""

    @property
    def frame_count(self) -> int:
        return len(self.frames)

    def get_duration_seconds(self) -> float:
        if not self.frames:
            return 0.0
        return self.frames[-1].timestamp - self.frames[0].timestamp

    def to_dict(self) -> Dict[str, Any]:
        data = self.maps.to_dict()
        data["frames"] = [frame.to_dict() for frame in self.frames]
        data["glAssets"] = self.topology.to_dict()
        data["schemaVersion"] = self.schema_version
        data["captureStart"] = self.capture_start
        data["captureEnd"] = self.capture_end
        return data


def parse_take(data: Any) -> Take:
    """
    Decode a take document.

    Unknown keys are ignored; missing sections decode as empty.

    Raises:
        TakeParseError: If a section has the wrong shape
    """
    if not isinstance(data, dict):
        raise TakeParseError("take root must be an object")

    for key in ("rigidBodies", "skeletons", "bones", "glAssets"):
        if key in data and not isinstance(data[key], dict):
            raise TakeParseError(f"'{key}' must be an object")
    frames = data.get("frames", [])
    if not isinstance(frames, list):
        raise TakeParseError("'frames' must be an array")

    try:
        return Take(
            maps=AssetMaps.from_dict(data),
            frames=[FrameData.from_dict(frame) for frame in frames],
            topology=RenderTopology.from_dict(data.get("glAssets", {})),
            schema_version=str(data.get("schemaVersion", SCHEMA_VERSION)),
            capture_start=str(data.get("captureStart", "")),
            capture_end=str(data.get("captureEnd", "")),
        )
    except (TypeError, ValueError, AttributeError, KeyError, IndexError) as e:
        raise TakeParseError(f"malformed take: {e}") from e


def load_take(path: str) -> Take:
    """
    Fully read and decode a take file.

    Raises:
        TakeParseError: If the file cannot be read or decoded
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise TakeParseError(f"cannot read take {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise TakeParseError(f"invalid JSON in take {path}: {e}") from e
    return parse_take(data)


def save_take(take: Take, path: str) -> Path:
    """Write a take to path, creating parent directories."""
    take_path = Path(path)
    take_path.parent.mkdir(parents=True, exist_ok=True)
    with open(take_path, "w", encoding="utf-8") as f:
        json.dump(take.to_dict(), f, indent=2)
    return take_path


class ReplayController:
    """
    Replays frames one at a time through an emit callback.

    Exactly one timer is outstanding while replaying. Each tick first checks
    that replay is still active, emits one frame, then schedules the next
    tick after max(0, interval - time spent in this tick). Replay stops after
    the last frame; it does not loop.

    Usage:
        controller = ReplayController(emit=pipeline.submit_frame)
        controller.load(take)
        controller.start_replay(speed_percent=50.0)
        controller.wait()
    """

    def __init__(
        self,
        emit: Callable[[FrameData], None],
        base_interval: float = 0.001
    ):
        """
        Args:
            emit: Receives each replayed frame, on the timer thread
            base_interval: Seconds between frames at 100% speed
        """
        self._emit = emit
        self.base_interval = base_interval

        self._frames: List[FrameData] = []
        self._index = 0
        self._interval = base_interval
        self._replaying = False
        self._generation = 0
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        # Held by a tick from its active check through emit
        self._emit_lock = threading.RLock()
        self._done = threading.Event()
        self._done.set()

        self._complete_callback: Optional[Callable[[], None]] = None
        self._frames_emitted = 0

    def set_complete_callback(self, callback: Optional[Callable[[], None]]) -> None:
        """Called on the timer thread when replay reaches the last frame."""
        self._complete_callback = callback

    def load(self, take: Take) -> None:
        self.stop_replay()
        with self._lock:
            self._frames = list(take.frames)
            self._index = 0

    def clear(self) -> None:
        self.stop_replay()
        with self._lock:
            self._frames = []
            self._index = 0

    @property
    def frame_count(self) -> int:
        return len(self._frames)

    def is_replaying(self) -> bool:
        return self._replaying

    def start_replay(self, speed_percent: float = 100.0) -> bool:
        """
        Start replaying the loaded frames from the beginning.

        Args:
            speed_percent: Playback speed, 100 = recorded rate

        Returns:
            False if nothing is loaded or the speed is not positive
        """
        if speed_percent <= 0:
            logger.warning("Invalid replay speed: %s%%", speed_percent)
            return False

        self.stop_replay()

        with self._lock:
            if not self._frames:
                logger.warning("No frames to replay")
                return False
            self._interval = self.base_interval / (speed_percent / 100.0)
            self._index = 0
            self._frames_emitted = 0
            self._replaying = True
            self._generation += 1
            self._done.clear()
            self._schedule_locked(0.0)

        logger.info("Replay started: %d frames at %.0f%%", len(self._frames), speed_percent)
        return True

    def stop_replay(self) -> None:
        """Cancel the pending tick. No frame is emitted after this returns."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            was_replaying = self._replaying
            self._replaying = False
            self._generation += 1
        # Wait out a tick that is emitting
        with self._emit_lock:
            self._done.set()
        if was_replaying:
            logger.info("Replay stopped at frame %d/%d", self._index, len(self._frames))

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until replay finishes or is stopped."""
        return self._done.wait(timeout)

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "replaying": self._replaying,
            "position": self._index,
            "frame_count": len(self._frames),
            "frames_emitted": self._frames_emitted,
            "interval_s": self._interval,
        }

    def _schedule_locked(self, delay: float) -> None:
        timer = threading.Timer(delay, self._tick, args=(self._generation,))
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _tick(self, generation: int) -> None:
        tick_start = time.perf_counter()

        with self._emit_lock:
            with self._lock:
                if not self._replaying or generation != self._generation:
                    return
                frame = self._frames[self._index]
                self._index += 1
                finished = self._index >= len(self._frames)

            try:
                self._emit(frame)
            except Exception:
                logger.exception("Replay emit failed at frame %d", frame.frame_number)
                self.stop_replay()
                raise

            with self._lock:
                self._frames_emitted += 1

        with self._lock:
            if not self._replaying or generation != self._generation:
                return
            if finished:
                self._replaying = False
                self._timer = None
                self._done.set()
            else:
                elapsed = time.perf_counter() - tick_start
                self._schedule_locked(max(0.0, self._interval - elapsed))
                return

        logger.info("Replay finished: %d frames", self._frames_emitted)
        callback = self._complete_callback
        if callback:
            callback()


def validate_take_integrity(take_file: str) -> Dict[str, Any]:
    """
    Validate a take file for integrity and consistency.

    Args:
        take_file: Path to the take file

    Returns:
        Validation result dictionary
    """
    result: Dict[str, Any] = {
        "valid": True,
        "errors": [],
        "warnings": [],
        "stats": {}
    }

    try:
        take = load_take(take_file)
    except TakeParseError as e:
        result["valid"] = False
        result["errors"].append(str(e))
        return result

    if take.schema_version != SCHEMA_VERSION:
        result["warnings"].append(f"Unknown schema version: {take.schema_version}")

    if not take.frames:
        result["warnings"].append("Take has no frames")

    duplicates = 0
    out_of_order = 0
    for previous, current in zip(take.frames, take.frames[1:]):
        if current.frame_number == previous.frame_number:
            duplicates += 1
        elif current.frame_number < previous.frame_number:
            out_of_order += 1
    if duplicates:
        result["warnings"].append(f"{duplicates} duplicate frame number(s)")
    if out_of_order:
        result["warnings"].append(f"{out_of_order} non-monotonic frame number(s)")

    for frame in take.frames:
        unknown = [rb.id for rb in frame.rigid_bodies if rb.id not in take.maps.rigid_bodies]
        unknown += [sk.id for sk in frame.skeletons if sk.id not in take.maps.skeletons]
        if unknown:
            result["warnings"].append(
                f"Frame {frame.frame_number}: asset id(s) {sorted(set(unknown))} not in name maps"
            )
            break

    if len(take.topology.skeleton_bones) != len(take.maps.skeletons):
        result["warnings"].append("Skeleton topology does not match skeleton map")

    result["stats"] = {
        "total_frames": take.frame_count,
        "rigid_bodies": sorted(take.maps.rigid_bodies.values()),
        "skeletons": sorted(take.maps.skeletons.values()),
        "duration_seconds": take.get_duration_seconds(),
        "capture_start": take.capture_start,
        "capture_end": take.capture_end,
    }

    return result
