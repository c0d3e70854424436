"""
Metric definitions decoded from sport configuration.

A sport lists its metrics as JSON objects:
    {"class": "velocity", "ids": [5], "labels": ["vx"], "configuration": {...}}

They are decoded once, when the settings change, into MetricDefinition
values tagged with a MetricKind. Calculators dispatch on the kind.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Iterable, Tuple

logger = logging.getLogger(__name__)


class MetricKind(Enum):
    TILT = "tilt"
    VELOCITY = "velocity"
    ACCELERATION = "acceleration"
    POSITION = "position"
    ORIENTATION = "orientation"
    ANGLE = "angle"
    DISTANCE = "distance"


RIGID_BODY_KINDS = frozenset({
    MetricKind.TILT,
    MetricKind.VELOCITY,
    MetricKind.ACCELERATION,
    MetricKind.POSITION,
    MetricKind.ORIENTATION,
})

SKELETON_KINDS = frozenset({MetricKind.ANGLE, MetricKind.DISTANCE})


@dataclass(frozen=True)
class MetricDefinition:
    """One configured metric: what to compute, on which ids, under which labels."""
    kind: MetricKind
    ids: Tuple[int, ...] = ()
    labels: Tuple[str, ...] = ()
    configuration: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def joint(self) -> str:
        """Joint name from the configuration, or '' when bones are given by index."""
        joint = self.configuration.get("joint", "")
        return joint if isinstance(joint, str) else ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "class": self.kind.value,
            "ids": list(self.ids),
            "labels": list(self.labels),
        }
        if self.configuration:
            data["configuration"] = dict(self.configuration)
        return data


class MetricDefinitionError(ValueError):
    """Raised for a metric definition that cannot be decoded."""


def parse_metric_definition(raw: Dict[str, Any]) -> MetricDefinition:
    """
    Decode a single JSON metric definition.

    Raises:
        MetricDefinitionError: If the class is unknown or a field has the wrong type
    """
    if not isinstance(raw, dict):
        raise MetricDefinitionError(f"metric definition must be an object, got {type(raw).__name__}")

    metric_class = raw.get("class")
    try:
        kind = MetricKind(metric_class)
    except ValueError:
        raise MetricDefinitionError(f"unknown metric class: {metric_class!r}") from None

    ids = raw.get("ids", [])
    labels = raw.get("labels", [])
    configuration = raw.get("configuration", {})

    if not isinstance(ids, list) or not all(isinstance(i, int) and not isinstance(i, bool) for i in ids):
        raise MetricDefinitionError(f"{kind.value}: ids must be a list of integers")
    if not isinstance(labels, list) or not all(isinstance(label, str) for label in labels):
        raise MetricDefinitionError(f"{kind.value}: labels must be a list of strings")
    if not isinstance(configuration, dict):
        raise MetricDefinitionError(f"{kind.value}: configuration must be an object")

    return MetricDefinition(
        kind=kind,
        ids=tuple(ids),
        labels=tuple(labels),
        configuration=dict(configuration),
    )


def parse_metric_definitions(
    raw_definitions: Iterable[Dict[str, Any]],
    allowed: frozenset = frozenset(MetricKind)
) -> List[MetricDefinition]:
    """
    Decode a sport's metric list, skipping entries that cannot be used.

    Args:
        raw_definitions: JSON array of metric objects
        allowed: Kinds accepted by the calculator the list is meant for

    Returns:
        Decoded definitions in configuration order
    """
    definitions = []
    for index, raw in enumerate(raw_definitions or []):
        try:
            definition = parse_metric_definition(raw)
        except MetricDefinitionError as e:
            logger.warning("Skipping metric definition #%d: %s", index, e)
            continue
        if definition.kind not in allowed:
            logger.warning("Skipping metric definition #%d: %s is not supported here",
                           index, definition.kind.value)
            continue
        definitions.append(definition)
    return definitions
