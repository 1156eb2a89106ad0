#!/usr/bin/env python3
"""
Hail Field Configuration
Dataclass settings for normalization, confidence scoring, gridding and contouring.
Values resolve as defaults -> optional JSON file -> HAIL_* environment variables.
"""

import json
import logging
import math
import os
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when configuration values are invalid"""
    pass


class ContourStrategy(Enum):
    """How contour polygons are derived"""
    MARCHING_SQUARES = "marching_squares"
    CONVEX_HULL = "convex_hull"
    AUTO = "auto"


@dataclass(frozen=True)
class ContourStyle:
    """Rendering metadata for one contour threshold"""
    level: float   # threshold in inches
    color: str     # RGBA string consumed by the map renderer
    label: str     # human readable size description


# Standard hail categories (penny through softball)
DEFAULT_CONTOUR_STYLES: Tuple[ContourStyle, ...] = (
    ContourStyle(0.75, 'rgba(144, 238, 144, 0.6)', '0.75-1.0" (Penny-Quarter)'),
    ContourStyle(1.00, 'rgba(255, 255, 0, 0.6)', '1.0-1.25" (Quarter-Half dollar)'),
    ContourStyle(1.25, 'rgba(255, 215, 0, 0.6)', '1.25-1.5" (Half dollar-Walnut)'),
    ContourStyle(1.50, 'rgba(255, 140, 0, 0.6)', '1.5-1.75" (Walnut-Golf ball)'),
    ContourStyle(1.75, 'rgba(255, 69, 0, 0.6)', '1.75-2.0" (Golf ball-Egg)'),
    ContourStyle(2.00, 'rgba(255, 0, 0, 0.6)', '2.0-2.5" (Egg-Tennis ball)'),
    ContourStyle(2.50, 'rgba(220, 20, 60, 0.6)', '2.5"+ (Tennis ball+)'),
    ContourStyle(3.00, 'rgba(139, 0, 0, 0.6)', '3.0"+ (Baseball+)'),
    ContourStyle(4.00, 'rgba(128, 0, 128, 0.6)', '4.0"+ (Softball+)'),
)

FALLBACK_COLOR = 'rgba(128, 128, 128, 0.5)'

# Oklahoma coverage area used by the original field deployment
OKLAHOMA_BOUNDS = {'north': 37.0, 'south': 33.6, 'east': -94.4, 'west': -103.0}


def style_for_level(level: float, styles: Tuple[ContourStyle, ...] = DEFAULT_CONTOUR_STYLES) -> ContourStyle:
    """
    Look up the style for a threshold
    Exact matches win, otherwise the nearest style at or below the level, else grey
    """
    ordered = sorted(styles, key=lambda s: s.level)
    for style in ordered:
        if math.isclose(style.level, level, abs_tol=1e-9):
            return style

    below = [s for s in ordered if s.level <= level]
    if below:
        base = below[-1]
        return ContourStyle(level, base.color, f'{level:g}"+ ({base.label})')

    return ContourStyle(level, FALLBACK_COLOR, f'{level:g}"+')


@dataclass
class NormalizationConfig:
    """Settings for turning feed records into canonical hail reports"""
    mm_per_inch: float = 25.4
    dedup_decimals: int = 3          # ~100 m location key
    min_size_inches: float = 0.0     # 0 disables the size filter

    # Metro tagging (Oklahoma City by default)
    metro_center: Tuple[float, float] = (35.4676, -97.5164)
    metro_radius_miles: float = 50.0
    metro_label: str = "Metro OKC"
    miles_per_degree: float = 69.0


@dataclass
class ConfidenceConfig:
    """Weights and windows for multi-factor confidence scoring"""
    density_radius_deg: float = 0.1
    density_window_minutes: Optional[float] = 30.0
    social_window_hours: float = 2.0

    mesh_weight: float = 1.0
    density_weight: float = 1.0
    recency_weight: float = 1.0
    social_weight: float = 1.0

    recency_floor: float = 0.0
    min_total_score: float = 10.0
    max_total_score: float = 100.0


@dataclass
class EngineConfig:
    """Configuration for grid interpolation, smoothing and contour extraction"""

    # Grid
    grid_resolution: float = 0.01       # degrees (~1 km)
    influence_radius_cells: int = 10

    # Smoothing - lower sigma keeps peak hail sizes, higher sigma gives softer swaths
    smoothing_sigma: float = 1.0

    # Contours
    contour_thresholds: List[float] = field(
        default_factory=lambda: [s.level for s in DEFAULT_CONTOUR_STYLES])
    contour_styles: Tuple[ContourStyle, ...] = DEFAULT_CONTOUR_STYLES
    strategy: ContourStrategy = ContourStrategy.AUTO
    auto_min_grid_reports: int = 3
    ring_closure_epsilon: float = 1e-6

    # Sparse point fallback
    hull_buffer_deg: float = 0.05       # ~5 km
    circle_radius_deg: float = 0.05
    circle_segments: int = 32

    # Providers
    proxy_url: Optional[str] = None
    iem_url: Optional[str] = None
    request_timeout: int = 30
    max_retries: int = 3

    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    confidence: ConfidenceConfig = field(default_factory=ConfidenceConfig)

    def validate(self) -> 'EngineConfig':
        """Check value ranges, raising ConfigError on the first problem"""
        if not (self.grid_resolution > 0 and math.isfinite(self.grid_resolution)):
            raise ConfigError(f"grid_resolution must be positive, got {self.grid_resolution}")
        if self.influence_radius_cells < 0:
            raise ConfigError(f"influence_radius_cells must be >= 0, got {self.influence_radius_cells}")
        if not (self.smoothing_sigma >= 0 and math.isfinite(self.smoothing_sigma)):
            raise ConfigError(f"smoothing_sigma must be >= 0, got {self.smoothing_sigma}")
        if not self.contour_thresholds:
            raise ConfigError("contour_thresholds must not be empty")
        for level in self.contour_thresholds:
            if not (level > 0 and math.isfinite(level)):
                raise ConfigError(f"contour thresholds must be positive, got {level}")
        if self.hull_buffer_deg < 0 or self.circle_radius_deg <= 0:
            raise ConfigError("hull_buffer_deg must be >= 0 and circle_radius_deg > 0")
        if self.circle_segments < 16:
            raise ConfigError(f"circle_segments must be >= 16, got {self.circle_segments}")
        if self.max_retries < 1:
            raise ConfigError(f"max_retries must be >= 1, got {self.max_retries}")
        return self

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe view of the effective configuration"""
        data = asdict(self)
        data['strategy'] = self.strategy.value
        data['contour_styles'] = [asdict(s) for s in self.contour_styles]
        data['normalization']['metro_center'] = list(self.normalization.metro_center)
        return data


def _parse_thresholds(raw: str) -> List[float]:
    try:
        values = [float(part) for part in raw.split(',') if part.strip()]
    except ValueError as e:
        raise ConfigError(f"Invalid HAIL_CONTOUR_THRESHOLDS '{raw}': {e}")
    return sorted(values)


def _parse_strategy(raw: str) -> ContourStrategy:
    try:
        return ContourStrategy(raw.strip().lower())
    except ValueError:
        options = ', '.join(s.value for s in ContourStrategy)
        raise ConfigError(f"Unknown contour strategy '{raw}' (expected one of: {options})")


def _coerce(name: str, current: Any, value: Any) -> Any:
    """Convert a JSON override to the type of the setting it replaces"""
    if value is None or current is None or isinstance(current, str):
        return value
    try:
        if isinstance(current, bool):
            if not isinstance(value, bool):
                raise TypeError(f"expected true/false, got {value!r}")
            return value
        if isinstance(current, int):
            if isinstance(value, bool) or float(value) != int(value):
                raise ValueError(f"expected an integer, got {value!r}")
            return int(value)
        if isinstance(current, float):
            if isinstance(value, bool):
                raise TypeError(f"expected a number, got {value!r}")
            return float(value)
        if isinstance(current, tuple):
            return tuple(float(v) for v in value)
    except (TypeError, ValueError, OverflowError) as e:
        raise ConfigError(f"Invalid value for {name}: {e}")
    return value


def _apply_overrides(config: EngineConfig, overrides: Dict[str, Any]) -> None:
    """Apply a flat or nested override mapping (JSON file contents)"""
    for key, value in overrides.items():
        if key in ('normalization', 'confidence') and isinstance(value, dict):
            section = getattr(config, key)
            for sub_key, sub_value in value.items():
                if not hasattr(section, sub_key):
                    raise ConfigError(f"Unknown {key} setting: {sub_key}")
                current = getattr(section, sub_key)
                setattr(section, sub_key, _coerce(f"{key}.{sub_key}", current, sub_value))
        elif key == 'strategy':
            config.strategy = _parse_strategy(str(value))
        elif key == 'contour_styles':
            try:
                config.contour_styles = tuple(
                    ContourStyle(float(s['level']), str(s['color']), str(s['label'])) for s in value
                )
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigError(f"Invalid contour_styles entry: {e}")
        elif key == 'contour_thresholds':
            try:
                config.contour_thresholds = sorted(float(v) for v in value)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Invalid contour_thresholds {value!r}: {e}")
        elif hasattr(config, key) and key not in ('normalization', 'confidence'):
            setattr(config, key, _coerce(key, getattr(config, key), value))
        else:
            raise ConfigError(f"Unknown configuration key: {key}")


def load_engine_config(path: Optional[str] = None) -> EngineConfig:
    """
    Load configuration from defaults, an optional JSON file and the environment

    Args:
        path: JSON config file; falls back to HAIL_CONFIG_FILE when omitted

    Returns:
        Validated EngineConfig

    Raises:
        ConfigError: on unreadable files, unknown keys or out-of-range values
    """
    config = EngineConfig()

    config_file = path or os.getenv('HAIL_CONFIG_FILE')
    if config_file:
        config_path = Path(config_file)
        try:
            with open(config_path, 'r') as f:
                overrides = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Failed to read config file {config_path}: {e}")
        if not isinstance(overrides, dict):
            raise ConfigError(f"Config file {config_path} must contain a JSON object")
        _apply_overrides(config, overrides)
        logger.info(f"Loaded configuration overrides from {config_path}")

    env = os.environ
    try:
        if env.get('HAIL_GRID_RESOLUTION'):
            config.grid_resolution = float(env['HAIL_GRID_RESOLUTION'])
        if env.get('HAIL_SMOOTHING_SIGMA'):
            config.smoothing_sigma = float(env['HAIL_SMOOTHING_SIGMA'])
    except ValueError as e:
        raise ConfigError(f"Invalid numeric environment setting: {e}")

    if env.get('HAIL_CONTOUR_THRESHOLDS'):
        config.contour_thresholds = _parse_thresholds(env['HAIL_CONTOUR_THRESHOLDS'])
    if env.get('HAIL_CONTOUR_STRATEGY'):
        config.strategy = _parse_strategy(env['HAIL_CONTOUR_STRATEGY'])

    config.proxy_url = env.get('HAIL_PROXY_URL', config.proxy_url)
    config.iem_url = env.get('HAIL_IEM_URL', config.iem_url)

    return config.validate()
