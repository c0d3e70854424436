"""
Metrics pipeline that integrates all components.

Provides the complete processing chain:
- Source (live) or replay timer -> Frame buffer -> Channel -> Recorder + Metrics -> Output
"""

import logging
import threading
import time
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple, Callable

from .assets import AssetMaps, AssetResolver, UNRESOLVED
from .config import ConnectionSettings, SportCatalog
from .metrics import DataProcessor, MetricsData
from .receiver import (
    FrameBuffer, FrameChannel, FrameData, ChannelEvent,
    FRAME_EVENT, ASSETS_EVENT
)
from .recorder import TakeRecorder, sample_take_path
from .replay import ReplayController, Take, TakeParseError, load_take
from .source import BaseSource, RenderTopology, SourceUnavailableError, create_source

logger = logging.getLogger(__name__)

MetricsCallback = Callable[[MetricsData, MetricsData], None]


class MetricsPipeline:
    """
    Complete metrics pipeline from capture frames to MetricsData.

    Live and replayed frames enter through the same producer path
    (submit_frame): buffered with duplicate rejection, then queued for the
    consumer. The consumer records the frame if a recording is active and
    computes both metric sets.

    Usage:
        pipeline = MetricsPipeline(take_dir="./saved_takes")
        pipeline.set_metrics_callback(on_metrics)
        pipeline.set_sport(SportCatalog.load(), "Tennis")
        pipeline.select_assets(rigid_body="Racket", skeleton="Player")
        pipeline.connect(ConnectionSettings())
        pipeline.start()
        # ... running ...
        pipeline.stop()
        pipeline.disconnect()
    """

    def __init__(
        self,
        source: Optional[BaseSource] = None,
        take_dir: str = "./saved_takes",
        joint_config_path: Optional[str] = None,
        naming_convention: str = "FBX",
        replay_base_interval: float = 0.001
    ):
        """
        Initialize metrics pipeline.

        Args:
            source: Frame source adapter (default: created on connect)
            take_dir: Directory for recorded takes
            joint_config_path: Joint mapping file (default: bundled)
            naming_convention: Skeleton naming convention for joint lookup
            replay_base_interval: Seconds between replayed frames at 100%
        """
        self.source = source

        self.resolver = AssetResolver(joint_config_path)
        self.resolver.set_naming_convention(naming_convention)

        self.buffer = FrameBuffer()
        self.channel = FrameChannel()
        self.processor = DataProcessor(self.resolver)
        self.recorder = TakeRecorder(take_dir=take_dir)
        self.replay = ReplayController(emit=self.submit_frame, base_interval=replay_base_interval)

        self._topology = RenderTopology()
        self._loaded_take: Optional[Take] = None
        self._process_lock = threading.Lock()

        # Callbacks
        self._metrics_callback: Optional[MetricsCallback] = None
        self._assets_callback: Optional[Callable[[AssetMaps, RenderTopology], None]] = None
        self._error_callback: Optional[Callable[[Exception], None]] = None

        # Consumer thread
        self._running = False
        self._consumer_thread: Optional[threading.Thread] = None

        # Statistics
        self.frames_processed = 0
        self.metrics_emitted = 0
        self.start_time: Optional[float] = None

    def set_metrics_callback(self, callback: Optional[MetricsCallback]) -> None:
        """Set callback receiving (rigid_body_metrics, skeleton_metrics) per frame."""
        self._metrics_callback = callback

    def set_assets_callback(self, callback: Optional[Callable[[AssetMaps, RenderTopology], None]]) -> None:
        """Set callback for asset map and topology changes."""
        self._assets_callback = callback

    def set_error_callback(self, callback: Optional[Callable[[Exception], None]]) -> None:
        """Set callback for errors raised while handling a frame."""
        self._error_callback = callback

    # Connection

    def connect(self, settings: Optional[ConnectionSettings] = None) -> bool:
        """
        Connect the live source.

        Returns:
            True if the source reached CONNECTED
        """
        settings = settings or ConnectionSettings()

        if self.replay.is_replaying():
            self.stop_replay()

        if self.source is None:
            try:
                self.source = create_source(settings.source)
            except SourceUnavailableError as e:
                logger.warning("Unable to connect: %s", e)
                return False
        if self.source.is_connected():
            return True

        self.set_naming_convention(settings.naming_convention)
        self._reset_stream_state()

        self.source.set_frame_callback(self.submit_frame)
        self.source.set_asset_callback(self.submit_assets)

        return self.source.connect(
            settings.server_address,
            settings.client_address,
            settings.connection_type,
        )

    def disconnect(self) -> None:
        """Disconnect the live source and clear frame and asset data."""
        if self.source is not None:
            self.source.disconnect()
        self._reset_stream_state()
        self._apply_assets(AssetMaps(), RenderTopology())

    def is_connected(self) -> bool:
        return self.source is not None and self.source.is_connected()

    # Producer side (source I/O thread or replay timer)

    def submit_frame(self, frame: FrameData) -> bool:
        """
        Buffer a frame and queue it for processing.

        Returns:
            False if the frame was dropped as a duplicate
        """
        if not self.buffer.append(frame):
            return False
        self.channel.put_frame(frame)
        return True

    def submit_assets(self, maps: AssetMaps, topology: RenderTopology) -> None:
        self.channel.put_assets(maps, topology)

    # Consumer side

    def start(self) -> None:
        """Start the consumer thread."""
        if self._running:
            return
        self._running = True
        self.start_time = time.time()
        self._consumer_thread = threading.Thread(target=self._consumer_loop, daemon=True)
        self._consumer_thread.start()

    def stop(self) -> Dict[str, Any]:
        """Stop the consumer thread."""
        self._running = False
        if self._consumer_thread is not None:
            self._consumer_thread.join(timeout=2.0)
            self._consumer_thread = None
        return {
            "frames_processed": self.frames_processed,
            "metrics_emitted": self.metrics_emitted,
            "duration_seconds": time.time() - self.start_time if self.start_time else 0,
        }

    def _consumer_loop(self) -> None:
        while self._running:
            event = self.channel.get(timeout=0.05)
            if event is not None:
                self.process_event(event)

    def process_pending(self) -> int:
        """
        Handle every queued event on the calling thread.

        Returns:
            Number of frames processed
        """
        processed = 0
        for event in self.channel.drain():
            if self.process_event(event):
                processed += 1
        return processed

    def process_event(self, event: ChannelEvent) -> bool:
        """Returns True if the event was a frame."""
        if event.kind == FRAME_EVENT:
            self.process_frame(event.payload)
            return True
        if event.kind == ASSETS_EVENT:
            self._apply_assets(event.payload, event.extra.get("topology", RenderTopology()))
        return False

    def process_frame(self, frame: FrameData) -> Tuple[MetricsData, MetricsData]:
        """Record a frame and compute its metrics."""
        with self._process_lock:
            self.recorder.record(frame)
            rb_metrics, skel_metrics = self.processor.on_frame(frame)
            self.frames_processed += 1

        try:
            if self._metrics_callback:
                self._metrics_callback(rb_metrics, skel_metrics)
                self.metrics_emitted += 1
        except Exception as e:
            if self._error_callback:
                self._error_callback(e)
            else:
                logger.exception("Metrics callback failed for frame %d", frame.frame_number)

        return rb_metrics, skel_metrics

    def _apply_assets(self, maps: AssetMaps, topology: RenderTopology) -> None:
        with self._process_lock:
            self.resolver.set_maps(maps)
            self._topology = topology
            self.recorder.update_assets(maps, topology)
            if maps.rigid_bodies or maps.skeletons:
                self.processor.refresh_selection()
            else:
                self.processor.rigid_body_metrics.select(UNRESOLVED)
                self.processor.skeleton_metrics.select(UNRESOLVED)

        if self._assets_callback:
            try:
                self._assets_callback(maps.copy(), topology)
            except Exception as e:
                if self._error_callback:
                    self._error_callback(e)
                else:
                    logger.exception("Assets callback failed")

    def _reset_stream_state(self) -> None:
        self.channel.clear()
        with self._process_lock:
            self.buffer.clear()
            self.processor.reset()

    # Configuration

    def set_metric_settings(
        self,
        rigid_metric_settings: List[Dict[str, Any]],
        body_metric_settings: List[Dict[str, Any]]
    ) -> None:
        with self._process_lock:
            self.processor.set_metric_settings(rigid_metric_settings, body_metric_settings)

    def set_sport(self, catalog: SportCatalog, sport: str) -> None:
        """
        Raises:
            KeyError: If the sport is not in the catalog
        """
        rigid, body = catalog.metric_settings(sport)
        self.set_metric_settings(rigid, body)
        logger.info("Sport set to %s", sport)

    def select_assets(
        self,
        rigid_body: Optional[str] = None,
        skeleton: Optional[str] = None
    ) -> Tuple[int, int]:
        with self._process_lock:
            return self.processor.select_assets(rigid_body, skeleton)

    def set_naming_convention(self, convention: str) -> bool:
        with self._process_lock:
            return self.resolver.set_naming_convention(convention)

    @property
    def topology(self) -> RenderTopology:
        return self._topology

    # Recording

    def start_recording(self) -> None:
        """
        Raises:
            RuntimeError: If recording is already in progress
        """
        with self._process_lock:
            self.recorder.start_recording(self.resolver.maps, self._topology)

    def stop_recording(self) -> Optional[Path]:
        with self._process_lock:
            return self.recorder.stop_recording()

    # Replay

    def load_take(self, path: str) -> bool:
        """
        Load a take for replay.

        The file is fully parsed before anything is applied; on failure the
        pipeline keeps its previous state.

        Returns:
            True if the take is ready to replay
        """
        try:
            take = load_take(path)
        except TakeParseError as e:
            logger.warning("Could not load take: %s", e)
            return False

        if self.is_connected():
            self.source.disconnect()

        self.replay.load(take)
        self._reset_stream_state()
        self._apply_assets(take.maps, take.topology)
        self._loaded_take = take

        logger.info("Loaded take %s (%d frames)", path, take.frame_count)
        return True

    def load_sample_take(self, name: str) -> bool:
        """Load one of the bundled takes by name (see list_sample_takes)."""
        try:
            path = sample_take_path(name)
        except KeyError as e:
            logger.warning("Could not load take: %s", e)
            return False
        return self.load_take(str(path))

    @property
    def loaded_take(self) -> Optional[Take]:
        return self._loaded_take

    def start_replay(self, speed_percent: float = 100.0) -> bool:
        """Replay the loaded take from its first frame."""
        self.replay.stop_replay()
        self._reset_stream_state()
        return self.replay.start_replay(speed_percent)

    def stop_replay(self) -> None:
        self.replay.stop_replay()

    def wait_for_replay(self, timeout: Optional[float] = None) -> bool:
        return self.replay.wait(timeout)

    def get_status(self) -> Dict[str, Any]:
        """Get current pipeline status."""
        return {
            "running": self._running,
            "connected": self.is_connected(),
            "frames_processed": self.frames_processed,
            "metrics_emitted": self.metrics_emitted,
            "pending_events": len(self.channel),
            "uptime_seconds": time.time() - self.start_time if self.start_time else 0,
            "buffer": self.buffer.stats,
            "source": self.source.stats if self.source is not None else None,
            "recorder": self.recorder.stats,
            "replay": self.replay.stats,
            "naming_convention": self.resolver.naming_convention,
            "rigid_bodies": sorted(self.resolver.rigid_body_names),
            "skeletons": sorted(self.resolver.skeleton_names),
        }

    @property
    def is_running(self) -> bool:
        return self._running
