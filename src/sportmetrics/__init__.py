"""
Sports motion capture metrics.

Modules:
- receiver: Frame data model, frame buffer and producer/consumer channel
- source: Capture server adapters (NatNet, synthetic) and descriptor processing
- assets: Asset id <-> name resolution and joint mappings
- definitions: Metric definitions decoded from sport configuration
- metrics: Rigid body and skeleton metric calculators
- recorder: Take recording
- replay: Take files, replay and integrity checks
- config: Settings and sport catalog
- pipeline: Complete metrics pipeline
"""

from .receiver import (
    RigidBodyData, SkeletonData, FrameData, FrameBuffer, FrameChannel
)
from .source import (
    ConnectionType, ConnectionState, SourceUnavailableError,
    DataDescriptions, RigidBodyDescription, SkeletonDescription,
    RenderTopology, MarkerOffsets, MotionCaptureSource, BaseSource,
    DummySource, DummySourceConfig, NatNetSource,
    process_data_descriptions, create_source
)
from .assets import AssetMaps, AssetResolver, UNRESOLVED, NAMING_CONVENTIONS
from .definitions import MetricKind, MetricDefinition, parse_metric_definitions
from .metrics import (
    MetricsData, RigidBodyMetrics, SkeletonMetrics, DataProcessor, MetricsExporter
)
from .recorder import TakeRecorder, list_take_files, list_sample_takes
from .replay import (
    Take, TakeParseError, ReplayController,
    load_take, save_take, validate_take_integrity
)
from .config import (
    ConnectionSettings, AssetSettings, ReplaySettings, SportCatalog, parse_play_speed
)
from .pipeline import MetricsPipeline

__all__ = [
    # Receiver
    "RigidBodyData",
    "SkeletonData",
    "FrameData",
    "FrameBuffer",
    "FrameChannel",
    # Source
    "ConnectionType",
    "ConnectionState",
    "SourceUnavailableError",
    "DataDescriptions",
    "RigidBodyDescription",
    "SkeletonDescription",
    "RenderTopology",
    "MarkerOffsets",
    "MotionCaptureSource",
    "BaseSource",
    "DummySource",
    "DummySourceConfig",
    "NatNetSource",
    "process_data_descriptions",
    "create_source",
    # Assets
    "AssetMaps",
    "AssetResolver",
    "UNRESOLVED",
    "NAMING_CONVENTIONS",
    # Definitions
    "MetricKind",
    "MetricDefinition",
    "parse_metric_definitions",
    # Metrics
    "MetricsData",
    "RigidBodyMetrics",
    "SkeletonMetrics",
    "DataProcessor",
    "MetricsExporter",
    # Recorder
    "TakeRecorder",
    "list_take_files",
    "list_sample_takes",
    # Replay
    "Take",
    "TakeParseError",
    "ReplayController",
    "load_take",
    "save_take",
    "validate_take_integrity",
    # Config
    "ConnectionSettings",
    "AssetSettings",
    "ReplaySettings",
    "SportCatalog",
    "parse_play_speed",
    # Pipeline
    "MetricsPipeline",
]
