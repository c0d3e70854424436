"""
Settings and sport catalog.

Provides functionality to:
- Hold connection, asset and replay settings with their defaults
- Load the sport catalog (per-sport rigid body and skeleton metric lists)
- Parse play speed strings such as "50%"
"""

import json
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple

from .assets import NAMING_CONVENTIONS
from .source import ConnectionType

logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).resolve().parent / "data"
DEFAULT_SPORTS_FILE = DATA_DIR / "sports.json"
DEFAULT_SKELETON_CONFIG = DATA_DIR / "skeleton_config.json"
DEFAULT_TAKE_DIR = "./saved_takes"
SAMPLE_TAKE_DIR = DATA_DIR / "takes"

PLAY_SPEEDS = ("25%", "50%", "75%", "100%", "150%", "200%")


@dataclass
class ConnectionSettings:
    server_address: str = "127.0.0.1"
    client_address: str = "127.0.0.1"
    connection_type: ConnectionType = ConnectionType.MULTICAST
    naming_convention: str = "FBX"
    source: str = "natnet"

    def __post_init__(self):
        self.connection_type = ConnectionType.parse(self.connection_type)
        if self.naming_convention not in NAMING_CONVENTIONS:
            raise ValueError(
                f"naming_convention must be one of {NAMING_CONVENTIONS}, got {self.naming_convention!r}"
            )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["connection_type"] = self.connection_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionSettings":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class AssetSettings:
    """Names of the subjects the calculators follow."""
    rigid_body: Optional[str] = None
    skeleton: Optional[str] = None


@dataclass
class ReplaySettings:
    take_dir: str = DEFAULT_TAKE_DIR
    play_speed: str = "100%"
    base_interval: float = 0.001  # seconds between frames at 100%

    @property
    def speed_percent(self) -> float:
        return parse_play_speed(self.play_speed)


def parse_play_speed(value: Any) -> float:
    """
    Parse a play speed such as "50%", "50" or 50 into a percentage.

    Raises:
        ValueError: If the value is not a positive number
    """
    text = str(value).strip()
    if text.endswith("%"):
        text = text[:-1].strip()
    try:
        speed = float(text)
    except ValueError:
        raise ValueError(f"invalid play speed: {value!r}") from None
    if speed <= 0:
        raise ValueError(f"play speed must be positive: {value!r}")
    return speed


@dataclass
class Sport:
    name: str
    rigid_metrics: List[Dict[str, Any]] = field(default_factory=list)
    body_metrics: List[Dict[str, Any]] = field(default_factory=list)


class SportCatalog:
    """
    Sports and their metric definition arrays.

    File layout:
        {"sports": [{"name": "Tennis", "rigidMetrics": [...], "bodyMetrics": [...]}]}

    Usage:
        catalog = SportCatalog.load()
        rigid, body = catalog.metric_settings("Tennis")
    """

    def __init__(self, sports: Optional[List[Sport]] = None):
        self._sports: Dict[str, Sport] = {}
        for sport in sports or []:
            self._sports[sport.name] = sport

    @classmethod
    def load(cls, path: Optional[str] = None) -> "SportCatalog":
        """
        Raises:
            OSError: If the file cannot be read
            ValueError: If the file is not valid JSON or has the wrong shape
        """
        catalog_path = Path(path) if path else DEFAULT_SPORTS_FILE
        with open(catalog_path, "r", encoding="utf-8") as f:
            root = json.load(f)

        if not isinstance(root, dict) or not isinstance(root.get("sports"), list):
            raise ValueError(f"{catalog_path}: expected an object with a 'sports' array")

        sports = []
        for entry in root["sports"]:
            if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
                logger.warning("Skipping sport entry without a name in %s", catalog_path)
                continue
            rigid = entry.get("rigidMetrics", [])
            body = entry.get("bodyMetrics", [])
            if not isinstance(rigid, list) or not isinstance(body, list):
                logger.warning("Skipping sport %s: metric lists must be arrays", entry["name"])
                continue
            sports.append(Sport(name=entry["name"], rigid_metrics=rigid, body_metrics=body))

        return cls(sports)

    def sport_names(self) -> List[str]:
        return list(self._sports)

    def get(self, name: str) -> Optional[Sport]:
        return self._sports.get(name)

    def metric_settings(self, name: str) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """
        Returns:
            (rigidMetrics, bodyMetrics) for the sport

        Raises:
            KeyError: If the sport is not in the catalog
        """
        sport = self._sports.get(name)
        if sport is None:
            raise KeyError(f"unknown sport: {name}")
        return list(sport.rigid_metrics), list(sport.body_metrics)
