#!/usr/bin/env python3
"""
Pytest fixtures and helpers for hail field tests
"""

import os
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional, Tuple

import numpy as np
import psutil
import pytest

from hail_pipeline.config import EngineConfig, OKLAHOMA_BOUNDS
from hail_pipeline.grid_align import GridBounds, HailGrid
from hail_pipeline.report_ingest import HailReport

# Reference "now" for recency scoring (day after the Sept 24, 2024 OKC storm)
FIXED_NOW = datetime(2024, 9, 25, 0, 0, tzinfo=timezone.utc)
STORM_TIME = datetime(2024, 9, 24, 22, 0, tzinfo=timezone.utc)

HAIL_ENV_VARS = (
    'HAIL_GRID_RESOLUTION', 'HAIL_SMOOTHING_SIGMA', 'HAIL_CONTOUR_THRESHOLDS',
    'HAIL_CONTOUR_STRATEGY', 'HAIL_PROXY_URL', 'HAIL_IEM_URL', 'HAIL_CONFIG_FILE',
)


@pytest.fixture(autouse=True)
def clean_hail_env(monkeypatch):
    """Keep developer HAIL_* settings out of the tests"""
    for name in HAIL_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def engine_config():
    """Default engine configuration"""
    return EngineConfig()


@pytest.fixture
def oklahoma_bounds():
    """Oklahoma coverage area: 860 x 340 cells at 0.01 degree"""
    return GridBounds.from_dict(OKLAHOMA_BOUNDS)


@pytest.fixture
def exact_bounds():
    """Bounds and resolution that are exact in binary floating point"""
    return GridBounds(north=10.0, south=0.0, east=10.0, west=0.0)


def make_report(lat: float, lon: float, size: float, report_id: Optional[str] = None,
                timestamp: Optional[datetime] = None, confidence: float = 60.0) -> HailReport:
    """Helper to build a HailReport with sensible defaults"""
    return HailReport(
        id=report_id or f"test_{lat:.4f}_{lon:.4f}",
        latitude=lat,
        longitude=lon,
        size=size,
        timestamp=timestamp or STORM_TIME,
        confidence=confidence,
    )


def make_grid(shape: Tuple[int, int], cells: Dict[Tuple[int, int], float],
              resolution: float = 1.0) -> HailGrid:
    """
    Helper to create a hail grid with values at (row, col) cells
    Bounds start at (0, 0) so cell (i, j) sits at lat=i*res, lon=j*res
    """
    height, width = shape
    values = np.zeros((height, width), dtype=np.float64)
    for (row, col), value in cells.items():
        values[row, col] = value
    bounds = GridBounds(north=height * resolution, south=0.0, east=width * resolution, west=0.0)
    return HailGrid(values=values, bounds=bounds, resolution=resolution)


def make_block(rows: range, cols: range, value: float) -> Dict[Tuple[int, int], float]:
    """Cells of a rectangular block"""
    return {(r, c): value for r in rows for c in cols}


def clock_and_peak_mem(fn, *args, **kwargs) -> Tuple[Any, float, float]:
    """
    Measure function execution time and peak memory usage

    Returns:
        (result, elapsed_seconds, peak_memory_mb)
    """
    process = psutil.Process(os.getpid())
    initial_memory = process.memory_info().rss / 1024 / 1024  # MB

    start_time = time.perf_counter()
    result = fn(*args, **kwargs)
    elapsed = time.perf_counter() - start_time

    final_memory = process.memory_info().rss / 1024 / 1024  # MB
    peak_memory = final_memory - initial_memory

    return result, elapsed, peak_memory


@pytest.fixture
def okc_storm_records() -> List[Dict[str, Any]]:
    """Raw proxy-style records around Oklahoma City, mixed units and shapes"""
    return [
        {'id': 'okc_1', 'latitude': 35.4676, 'longitude': -97.5164, 'size': 2.0,
         'timestamp': '2024-09-24T22:00:00Z', 'city': 'Oklahoma City'},
        {'id': 'okc_2', 'lat': 35.50, 'lon': -97.50, 'meshValue': 38.1,
         'timestamp': '2024-09-24T22:10:00Z'},
        {'id': 'okc_3', 'lat': 35.45, 'lng': -97.55, 'size_inches': 1.25,
         'time': 1727215800},
        {'id': 'okc_4', 'lat': 35.40, 'lon': -97.45, 'hail_size': 1.0},
        {'type': 'Feature', 'id': 'okc_5',
         'geometry': {'type': 'Point', 'coordinates': [-97.60, 35.52]},
         'properties': {'size': 1.75, 'valid': '2024-09-24T22:20:00Z'}},
        {'id': 'bad_coords', 'lat': None, 'lon': -97.5, 'size': 1.0},
        {'id': 'bad_size', 'lat': 35.3, 'lon': -97.3, 'size': 0},
    ]


@pytest.fixture
def scenario_reports() -> List[HailReport]:
    """Three reports: a 2.0" and a nearby 1.0" near OKC, plus an isolated 3.0" """
    return [
        make_report(35.0, -97.0, 2.0, 'r1'),
        make_report(35.001, -97.001, 1.0, 'r2'),
        make_report(36.0, -98.0, 3.0, 'r3'),
    ]


def cluster_reports(center: Tuple[float, float], count: int, size: float,
                    spread: float = 0.05, seed: int = 42,
                    start: Optional[datetime] = None) -> List[HailReport]:
    """Deterministic cluster of reports around a (lat, lon) centre"""
    rng = np.random.default_rng(seed)
    start = start or STORM_TIME
    reports = []
    for k in range(count):
        dlat, dlon = rng.uniform(-spread, spread, size=2)
        reports.append(make_report(center[0] + dlat, center[1] + dlon, size,
                                   f"cluster_{seed}_{k}", start + timedelta(minutes=k)))
    return reports


# Parametrized test data
MESH_SCORE_CASES = [
    # (size_inches, expected_score, description)
    (0.5, 10, "below_penny"),
    (0.75, 20, "penny"),
    (0.99, 20, "just_below_quarter"),
    (1.0, 35, "quarter"),
    (1.5, 55, "walnut"),
    (2.0, 65, "egg"),
    (2.49, 65, "just_below_tennis_ball"),
    (2.5, 70, "tennis_ball"),
    (4.5, 70, "softball_capped"),
]

RECENCY_CASES = [
    # (age, expected_score, description)
    (timedelta(hours=2), 10, "same_day"),
    (timedelta(days=1), 10, "one_day"),
    (timedelta(days=2), 8, "two_days"),
    (timedelta(days=5), 6, "five_days"),
    (timedelta(days=10), 4, "ten_days"),
    (timedelta(days=20), 2, "twenty_days"),
    (timedelta(days=45), 0, "stale"),
    (-timedelta(hours=3), 10, "future_counts_as_now"),
]

DENSITY_CASES = [
    # (neighbor_count, expected_score)
    (0, 0),
    (1, 2),
    (2, 2),
    (3, 4),
    (5, 6),
    (7, 8),
    (10, 10),
    (14, 10),
]

BASELINE_CASES = [
    # (profile_value, size, has_polygon, provided, expected)
    ("realtime", 0.75, False, None, 60),
    ("realtime", 1.0, False, None, 65),
    ("realtime", 2.0, False, None, 70),
    ("historical", 0.75, False, None, 70),
    ("historical", 1.0, False, None, 75),
    ("historical", 1.5, False, None, 77),
    ("historical", 2.0, False, None, 80),
    ("historical", 2.0, True, None, 85),
    ("historical", 1.5, True, None, 82),
    ("proxy", 1.0, False, None, 85),
    ("proxy", 1.0, False, 42.0, 42),
    ("manual", 1.0, False, None, 50),
    ("manual", 1.0, False, 150.0, 100),
]
