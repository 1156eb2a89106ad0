#!/usr/bin/env python3
"""
Grid Alignment and IDW Interpolation
Regular lat/lon lattice over a bounding box and max-influence IDW binning of hail reports
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, Any, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .config import EngineConfig
from .report_ingest import HailReport

logger = logging.getLogger(__name__)

# Tolerance (in cells) for float noise in dimension and index math
CELL_EPSILON = 1e-9


@dataclass(frozen=True)
class GridBounds:
    """Geographic bounding box in degrees"""
    north: float
    south: float
    east: float
    west: float

    def __post_init__(self):
        values = (self.north, self.south, self.east, self.west)
        if not all(math.isfinite(v) for v in values):
            raise ValueError(f"Grid bounds must be finite: {values}")
        if self.north <= self.south:
            raise ValueError(f"north ({self.north}) must be greater than south ({self.south})")
        if self.east <= self.west:
            raise ValueError(f"east ({self.east}) must be greater than west ({self.west})")

    @classmethod
    def from_dict(cls, data: Dict[str, float]) -> 'GridBounds':
        return cls(float(data['north']), float(data['south']),
                   float(data['east']), float(data['west']))

    def contains(self, lat: float, lon: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lon <= self.east

    def to_dict(self) -> Dict[str, float]:
        return {'north': self.north, 'south': self.south, 'east': self.east, 'west': self.west}


@dataclass(frozen=True)
class GridPoint:
    """One lattice cell: origin coordinates and interpolated hail size (inches)"""
    lat: float
    lon: float
    value: float


def grid_dimensions(bounds: GridBounds, resolution: float) -> Tuple[int, int]:
    """
    Deterministic grid shape for bounds + resolution
    Returns (height, width) = (ceil(lat_span/res), ceil(lon_span/res))
    """
    if not (resolution > 0 and math.isfinite(resolution)):
        raise ValueError(f"Grid resolution must be positive, got {resolution}")
    height = int(math.ceil((bounds.north - bounds.south) / resolution - CELL_EPSILON))
    width = int(math.ceil((bounds.east - bounds.west) / resolution - CELL_EPSILON))
    return max(height, 1), max(width, 1)


@dataclass
class HailGrid:
    """
    Hail size lattice
    values[i, j] sits at lat = south + i*res, lon = west + j*res (row 0 is southernmost)
    """
    values: np.ndarray
    bounds: GridBounds
    resolution: float

    @property
    def height(self) -> int:
        return int(self.values.shape[0])

    @property
    def width(self) -> int:
        return int(self.values.shape[1])

    @property
    def max_value(self) -> float:
        finite = self.values[np.isfinite(self.values)]
        return float(finite.max()) if finite.size else 0.0

    def is_empty(self) -> bool:
        """True when no cell carries any hail"""
        return not bool(np.any(self.values > 0))

    def cell_to_lonlat(self, row: int, col: int) -> Tuple[float, float]:
        """Cell origin as (longitude, latitude)"""
        return (self.bounds.west + col * self.resolution,
                self.bounds.south + row * self.resolution)

    def lonlat_to_cell(self, lon: float, lat: float) -> Tuple[int, int]:
        """(row, col) by floor - may be out of bounds"""
        return lonlat_to_cell(self.bounds, self.resolution, lon, lat)

    def point(self, row: int, col: int) -> GridPoint:
        if not (0 <= row < self.height and 0 <= col < self.width):
            raise ValueError(f"Grid indices out of bounds: ({row}, {col})")
        lon, lat = self.cell_to_lonlat(row, col)
        return GridPoint(lat=lat, lon=lon, value=float(self.values[row, col]))

    def points(self) -> Iterator[GridPoint]:
        for row in range(self.height):
            for col in range(self.width):
                yield self.point(row, col)

    def copy_with(self, values: np.ndarray) -> 'HailGrid':
        """Same lattice, new values"""
        if values.shape != self.values.shape:
            raise ValueError(f"Shape mismatch: {values.shape} != {self.values.shape}")
        return HailGrid(values=values, bounds=self.bounds, resolution=self.resolution)


def lonlat_to_cell(bounds: GridBounds, resolution: float, lon: float, lat: float) -> Tuple[int, int]:
    """
    Convert longitude/latitude to grid indices
    Points on a cell edge map to the cell whose lower/left edge they sit on
    """
    row = int(math.floor((lat - bounds.south) / resolution + CELL_EPSILON))
    col = int(math.floor((lon - bounds.west) / resolution + CELL_EPSILON))
    return row, col


def empty_grid(bounds: GridBounds, resolution: float) -> HailGrid:
    height, width = grid_dimensions(bounds, resolution)
    return HailGrid(values=np.zeros((height, width), dtype=np.float64),
                    bounds=bounds, resolution=resolution)


class GridProcessor:
    """
    Bins point hail reports onto the lattice with inverse-distance weighting
    Each cell keeps the MAX influence (not the sum) so overlapping reports never inflate sizes
    """

    def __init__(self, config: EngineConfig = None):
        self.config = config or EngineConfig()
        self._stencil = self._build_stencil(self.config.influence_radius_cells)

    @staticmethod
    def _build_stencil(radius: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Offsets (di, dj) inside the influence circle and their 1/d^2 weights"""
        offsets = np.arange(-radius, radius + 1)
        di, dj = np.meshgrid(offsets, offsets, indexing='ij')
        distance = np.sqrt(di * di + dj * dj)
        inside = distance <= radius

        di = di[inside]
        dj = dj[inside]
        distance = distance[inside]

        weights = np.ones_like(distance, dtype=np.float64)
        nonzero = distance > 0
        weights[nonzero] = 1.0 / (distance[nonzero] ** 2)
        return di, dj, weights

    def interpolate(self, reports: Sequence[HailReport], bounds: GridBounds,
                    resolution: Optional[float] = None) -> HailGrid:
        """
        IDW interpolation of reports onto a grid over `bounds`
        Returns an all-zero grid when no report reaches the bounds
        Cost is O(reports x influence cells)
        """
        resolution = resolution or self.config.grid_resolution
        grid = empty_grid(bounds, resolution)
        values = grid.values
        height, width = values.shape
        di, dj, weights = self._stencil

        applied = 0
        for report in reports:
            row, col = lonlat_to_cell(bounds, resolution, report.longitude, report.latitude)
            rows = row + di
            cols = col + dj
            valid = (rows >= 0) & (rows < height) & (cols >= 0) & (cols < width)
            if not valid.any():
                continue

            influence = report.size * weights[valid]
            r, c = rows[valid], cols[valid]
            np.maximum.at(values, (r, c), influence)
            applied += 1

        logger.info(f"Interpolated {applied}/{len(reports)} reports onto {width}x{height} grid "
                    f"(max={grid.max_value:.2f}\")")
        logger.debug(f"IDW cost ~{len(reports) * len(weights):,} cell updates")
        return grid

    def extract_cells_above(self, grid: HailGrid, threshold: float,
                            max_cells: int = 1000) -> List[Dict[str, Any]]:
        """Geographic locations of cells at or above a threshold, largest first"""
        rows, cols = np.where(grid.values >= threshold)
        if len(rows) == 0:
            return []

        order = np.argsort(-grid.values[rows, cols], kind='stable')[:max_cells]
        if len(rows) > max_cells:
            logger.info(f"Limiting cell extraction to {max_cells} of {len(rows)} cells")

        cells = []
        for idx in order:
            point = grid.point(int(rows[idx]), int(cols[idx]))
            cells.append({
                'grid_row': int(rows[idx]),
                'grid_col': int(cols[idx]),
                'longitude': point.lon,
                'latitude': point.lat,
                'value': point.value,
            })
        return cells

    def check_grid_alignment(self, bounds: GridBounds, test_points: List[Tuple[float, float]],
                             resolution: Optional[float] = None) -> Dict[str, Any]:
        """
        Round-trip (lon, lat) -> cell -> cell origin and measure the error
        Errors up to one cell diagonal are expected
        """
        resolution = resolution or self.config.grid_resolution
        height, width = grid_dimensions(bounds, resolution)
        results = {
            'test_points': len(test_points),
            'max_error_meters': 0.0,
            'mean_error_meters': 0.0,
            'alignment_ok': True,
        }

        errors = []
        for lon, lat in test_points:
            row, col = lonlat_to_cell(bounds, resolution, lon, lat)
            if 0 <= row < height and 0 <= col < width:
                lon_back = bounds.west + col * resolution
                lat_back = bounds.south + row * resolution

                lon_error_m = (lon_back - lon) * 111320 * np.cos(np.radians(lat))
                lat_error_m = (lat_back - lat) * 110540
                errors.append(float(np.sqrt(lon_error_m ** 2 + lat_error_m ** 2)))

        if errors:
            cell_diagonal_m = math.hypot(resolution * 111320, resolution * 110540)
            results['max_error_meters'] = float(np.max(errors))
            results['mean_error_meters'] = float(np.mean(errors))
            results['alignment_ok'] = results['max_error_meters'] <= cell_diagonal_m

        logger.info(f"Grid alignment check: max error {results['max_error_meters']:.1f}m, "
                    f"mean error {results['mean_error_meters']:.1f}m")
        return results
