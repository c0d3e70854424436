"""
Recorder for capture sessions.

Provides functionality to:
- Buffer every processed frame of a session in memory
- Snapshot the asset maps and render topology the frames refer to
- Write the session to a timestamped take file when recording stops
- List the take files saved in a directory and the bundled sample takes
"""

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, List, Callable

from .assets import AssetMaps
from .config import SAMPLE_TAKE_DIR
from .receiver import FrameData
from .replay import Take, save_take, SCHEMA_VERSION
from .source import RenderTopology

logger = logging.getLogger(__name__)

TAKE_PREFIX = "take_"
TAKE_SUFFIX = ".json"


class TakeRecorder:
    """
    Thread-safe recorder producing take files.

    Usage:
        recorder = TakeRecorder(take_dir="./saved_takes")
        recorder.start_recording(maps, topology)
        recorder.record(frame)
        path = recorder.stop_recording()
    """

    def __init__(self, take_dir: str = "./saved_takes"):
        """
        Args:
            take_dir: Directory to store take files
        """
        self.take_dir = Path(take_dir)

        self._recording = False
        self._lock = threading.Lock()
        self._frames: List[FrameData] = []
        self._maps = AssetMaps()
        self._topology = RenderTopology()
        self._start_time: Optional[str] = None
        self._last_take: Optional[Path] = None

        self._new_take_callback: Optional[Callable[[Path], None]] = None

    def set_new_take_callback(self, callback: Optional[Callable[[Path], None]]) -> None:
        """Called with the file path after a take has been written."""
        self._new_take_callback = callback

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def last_take(self) -> Optional[Path]:
        return self._last_take

    def start_recording(self, maps: AssetMaps, topology: RenderTopology) -> None:
        """
        Start buffering frames.

        Args:
            maps: Asset name maps valid now
            topology: Render topology valid now

        Raises:
            RuntimeError: If recording is already in progress
        """
        with self._lock:
            if self._recording:
                raise RuntimeError("Recording already in progress")

            self._frames = []
            self._maps = maps.copy()
            self._topology = topology
            self._start_time = datetime.now().isoformat()
            self._recording = True

        logger.info("Recording started")

    def update_assets(self, maps: AssetMaps, topology: RenderTopology) -> None:
        """Replace the snapshot when the server re-describes its assets mid-recording."""
        with self._lock:
            if self._recording:
                self._maps = maps.copy()
                self._topology = topology

    def record(self, frame: FrameData) -> bool:
        """
        Append a frame to the current recording.

        Returns:
            False if not recording
        """
        with self._lock:
            if not self._recording:
                return False
            self._frames.append(frame)
            return True

    def stop_recording(self) -> Optional[Path]:
        """
        Stop recording and write the take file.

        Returns:
            Path to the written take, or None if not recording or the
            file could not be written. A failed write keeps the recording
            so it can be stopped again.
        """
        with self._lock:
            if not self._recording:
                return None

            take = Take(
                maps=self._maps,
                frames=list(self._frames),
                topology=self._topology,
                schema_version=SCHEMA_VERSION,
                capture_start=self._start_time or "",
                capture_end=datetime.now().isoformat(),
            )
            try:
                path = save_take(take, str(self._next_take_path()))
            except OSError as e:
                logger.error("Failed to write take to %s: %s", self.take_dir, e)
                return None

            self._recording = False
            self._frames = []
            self._last_take = path

        logger.info("Saved take %s (%d frames)", path, take.frame_count)

        callback = self._new_take_callback
        if callback:
            callback(path)
        return path

    def _next_take_path(self) -> Path:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        path = self.take_dir / f"{TAKE_PREFIX}{stamp}{TAKE_SUFFIX}"
        counter = 1
        while path.exists():
            path = self.take_dir / f"{TAKE_PREFIX}{stamp}_{counter}{TAKE_SUFFIX}"
            counter += 1
        return path

    @property
    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "recording": self._recording,
                "frames_recorded": len(self._frames),
                "start_time": self._start_time,
                "last_take": str(self._last_take) if self._last_take else None,
            }


def list_take_files(take_dir: str = "./saved_takes") -> List[Path]:
    """Take files in a directory, oldest first."""
    directory = Path(take_dir)
    if not directory.is_dir():
        return []
    return sorted(directory.glob(f"{TAKE_PREFIX}*{TAKE_SUFFIX}"))


def list_sample_takes() -> List[str]:
    """Names of the take files bundled with the package."""
    return [path.stem for path in list_take_files(str(SAMPLE_TAKE_DIR))]


def sample_take_path(name: str) -> Path:
    """
    Raises:
        KeyError: If no bundled take has that name
    """
    path = SAMPLE_TAKE_DIR / f"{name}{TAKE_SUFFIX}"
    if name not in list_sample_takes():
        raise KeyError(f"unknown sample take: {name}")
    return path
