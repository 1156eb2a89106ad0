#!/usr/bin/env python3
"""
Hail Swath Contour Extraction
Marching squares over the smoothed hail grid, producing closed, oriented
polygons (with holes) for each size threshold
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from shapely.geometry import LinearRing, Point, Polygon

from .config import ContourStyle, DEFAULT_CONTOUR_STYLES, style_for_level
from .grid_align import HailGrid

logger = logging.getLogger(__name__)

Ring = List[List[float]]
EdgeKey = Tuple[str, int, int]

# Square corners: bl=1, br=2, tr=4, tl=8 (rows grow northward)
# Edges: B bottom, R right, T top, L left
SEGMENT_TABLE: Dict[int, Tuple[Tuple[str, str], ...]] = {
    0: (),
    1: (('L', 'B'),),
    2: (('B', 'R'),),
    3: (('L', 'R'),),
    4: (('R', 'T'),),
    6: (('B', 'T'),),
    7: (('L', 'T'),),
    8: (('L', 'T'),),
    9: (('B', 'T'),),
    11: (('R', 'T'),),
    12: (('L', 'R'),),
    13: (('B', 'R'),),
    14: (('L', 'B'),),
    15: (),
}

# Saddles keyed by (case, centre_inside)
SADDLE_TABLE: Dict[Tuple[int, bool], Tuple[Tuple[str, str], ...]] = {
    (5, True): (('B', 'R'), ('L', 'T')),
    (5, False): (('L', 'B'), ('R', 'T')),
    (10, True): (('L', 'B'), ('R', 'T')),
    (10, False): (('B', 'R'), ('L', 'T')),
}


@dataclass
class ContourLevel:
    """All swath polygons for one hail size threshold"""
    level: float
    color: str
    description: str
    polygons: List[Ring] = field(default_factory=list)
    holes: List[List[Ring]] = field(default_factory=list)
    report_count: Optional[int] = None

    @classmethod
    def from_style(cls, style: ContourStyle, polygons: List[Ring],
                   holes: Optional[List[List[Ring]]] = None,
                   report_count: Optional[int] = None) -> 'ContourLevel':
        return cls(
            level=style.level,
            color=style.color,
            description=style.label,
            polygons=polygons,
            holes=holes if holes is not None else [[] for _ in polygons],
            report_count=report_count,
        )


def _edge_key(edge: str, p: int, q: int) -> EdgeKey:
    """Global key of a cell edge, shared by the two cells that border it"""
    if edge == 'B':
        return ('h', p, q)
    if edge == 'T':
        return ('h', p + 1, q)
    if edge == 'L':
        return ('v', p, q)
    return ('v', p, q + 1)


class _EdgeInterpolator:
    """Threshold crossing positions on padded-grid edges, in lon/lat"""

    def __init__(self, padded: np.ndarray, grid: HailGrid, threshold: float):
        self.padded = padded
        self.threshold = threshold
        self.west = grid.bounds.west
        self.south = grid.bounds.south
        self.res = grid.resolution
        self._cache: Dict[EdgeKey, Tuple[float, float]] = {}

    def _fraction(self, a: float, b: float) -> float:
        if b == a:
            return 0.5
        return min(max((self.threshold - a) / (b - a), 0.0), 1.0)

    def point(self, key: EdgeKey) -> Tuple[float, float]:
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        kind, p, q = key
        a = float(self.padded[p, q])
        if kind == 'h':
            t = self._fraction(a, float(self.padded[p, q + 1]))
            row, col = p, q + t
        else:
            t = self._fraction(a, float(self.padded[p + 1, q]))
            row, col = p + t, q

        # Padded index 1 is grid row/col 0
        lon = self.west + (col - 1) * self.res
        lat = self.south + (row - 1) * self.res
        self._cache[key] = (lon, lat)
        return lon, lat


def _march(padded: np.ndarray, threshold: float) -> List[Tuple[EdgeKey, EdgeKey]]:
    """Segments (as pairs of edge keys) for every mixed cell of the padded grid"""
    inside = padded >= threshold
    bl = inside[:-1, :-1]
    br = inside[:-1, 1:]
    tr = inside[1:, 1:]
    tl = inside[1:, :-1]
    cases = (bl.astype(np.uint8) | (br.astype(np.uint8) << 1) |
             (tr.astype(np.uint8) << 2) | (tl.astype(np.uint8) << 3))

    segments = []
    rows, cols = np.nonzero((cases != 0) & (cases != 15))
    for p, q in zip(rows.tolist(), cols.tolist()):
        case = int(cases[p, q])
        if case in (5, 10):
            centre = (padded[p, q] + padded[p, q + 1] +
                      padded[p + 1, q + 1] + padded[p + 1, q]) / 4.0
            pairs = SADDLE_TABLE[(case, bool(centre >= threshold))]
        else:
            pairs = SEGMENT_TABLE[case]
        for start, end in pairs:
            segments.append((_edge_key(start, p, q), _edge_key(end, p, q)))
    return segments


def _chain_segments(segments: List[Tuple[EdgeKey, EdgeKey]]) -> Tuple[List[List[EdgeKey]], List[List[EdgeKey]]]:
    """
    Link segments sharing a grid edge into chains
    Returns (closed, open) chains; closed chains repeat their first key at the end
    """
    by_node: Dict[EdgeKey, List[int]] = {}
    for idx, (a, b) in enumerate(segments):
        by_node.setdefault(a, []).append(idx)
        by_node.setdefault(b, []).append(idx)

    used = [False] * len(segments)

    def walk(node: EdgeKey) -> List[EdgeKey]:
        path = []
        while True:
            nxt = None
            for idx in by_node.get(node, ()):
                if not used[idx]:
                    nxt = idx
                    break
            if nxt is None:
                return path
            used[nxt] = True
            a, b = segments[nxt]
            node = b if a == node else a
            path.append(node)

    closed, unclosed = [], []
    for idx, (a, b) in enumerate(segments):
        if used[idx]:
            continue
        used[idx] = True
        chain = [a, b] + walk(b)
        if chain[-1] == chain[0]:
            closed.append(chain)
            continue
        backward = walk(a)
        chain = list(reversed(backward)) + chain
        if chain[-1] == chain[0]:
            closed.append(chain)
        else:
            unclosed.append(chain)
    return closed, unclosed


def _clean_ring(coords: List[Tuple[float, float]]) -> Optional[Ring]:
    """Drop consecutive duplicates, close the ring, reject degenerate rings"""
    ring: Ring = []
    for lon, lat in coords:
        if not (math.isfinite(lon) and math.isfinite(lat)):
            return None
        if ring and ring[-1][0] == lon and ring[-1][1] == lat:
            continue
        ring.append([lon, lat])

    if len(ring) > 1 and ring[0] == ring[-1]:
        ring.pop()
    if len({(x, y) for x, y in ring}) < 3:
        return None
    ring.append(list(ring[0]))
    return ring


def orient_ring(ring: Ring, counterclockwise: bool = True) -> Ring:
    """Return the ring in the requested winding order"""
    if LinearRing(ring).is_ccw != counterclockwise:
        return list(reversed(ring))
    return ring


def _nest_rings(rings: List[Ring]) -> Tuple[List[Ring], List[List[Ring]]]:
    """
    Classify rings by containment depth
    Even depth -> CCW exterior, odd depth -> CW hole of its smallest container
    """
    polys = [Polygon(r) for r in rings]
    areas = [p.area for p in polys]
    probes = []
    for poly, ring in zip(polys, rings):
        probe = poly.representative_point() if poly.is_valid else Point(ring[0])
        probes.append(probe)

    containers: List[List[int]] = []
    for i in range(len(rings)):
        holders = [j for j in range(len(rings))
                   if j != i and areas[j] > areas[i] and polys[j].covers(probes[i])]
        containers.append(holders)

    exteriors: Dict[int, int] = {}
    polygons: List[Ring] = []
    holes: List[List[Ring]] = []

    # Outermost first so parents exist before their holes
    for i in sorted(range(len(rings)), key=lambda k: len(containers[k])):
        if len(containers[i]) % 2 == 0:
            exteriors[i] = len(polygons)
            polygons.append(orient_ring(rings[i], counterclockwise=True))
            holes.append([])

    for i in range(len(rings)):
        if len(containers[i]) % 2 == 1:
            parent = min(containers[i], key=lambda j: areas[j])
            if parent in exteriors:
                holes[exteriors[parent]].append(orient_ring(rings[i], counterclockwise=False))
            else:
                logger.warning(f"Hole ring {i} has no exterior parent, skipping")

    return polygons, holes


def extract_level(grid: HailGrid, threshold: float,
                  epsilon: float = 1e-6) -> Tuple[List[Ring], List[List[Ring]]]:
    """Closed exterior rings and their holes for one threshold"""
    if not (threshold > 0 and math.isfinite(threshold)):
        raise ValueError(f"Contour threshold must be positive, got {threshold}")

    padded = np.pad(np.nan_to_num(grid.values, nan=0.0), 1, mode='constant', constant_values=0.0)
    segments = _march(padded, threshold)
    if not segments:
        return [], []

    interp = _EdgeInterpolator(padded, grid, threshold)
    closed, unclosed = _chain_segments(segments)

    for chain in unclosed:
        start, end = interp.point(chain[0]), interp.point(chain[-1])
        if math.hypot(start[0] - end[0], start[1] - end[1]) <= epsilon:
            closed.append(chain + [chain[0]])
        else:
            logger.warning(f"Skipping unclosed contour chain at {threshold}\" "
                           f"({len(chain)} vertices)")

    rings = []
    for chain in closed:
        ring = _clean_ring([interp.point(key) for key in chain])
        if ring is None:
            logger.debug(f"Dropped degenerate ring at {threshold}\"")
            continue
        rings.append(ring)

    if not rings:
        return [], []
    return _nest_rings(rings)


def extract_contours(grid: HailGrid, thresholds: Optional[Sequence[float]] = None,
                     styles: Optional[Sequence[ContourStyle]] = None,
                     epsilon: float = 1e-6) -> List[ContourLevel]:
    """
    Marching-squares contours for every threshold
    Empty levels are omitted; output sorted by level descending
    """
    styles = tuple(styles) if styles else DEFAULT_CONTOUR_STYLES
    if thresholds is None:
        thresholds = [s.level for s in styles]

    for threshold in thresholds:
        if not (threshold > 0 and math.isfinite(threshold)):
            raise ValueError(f"Contour threshold must be positive, got {threshold}")

    if grid.is_empty():
        logger.info("Grid has no hail, no contours extracted")
        return []

    levels = []
    peak = grid.max_value
    for threshold in sorted(set(thresholds), reverse=True):
        if threshold > peak:
            continue
        polygons, holes = extract_level(grid, threshold, epsilon)
        if not polygons:
            continue
        levels.append(ContourLevel.from_style(style_for_level(threshold, styles), polygons, holes))
        logger.debug(f"Level {threshold}\": {len(polygons)} polygons, "
                     f"{sum(len(h) for h in holes)} holes")

    logger.info(f"✓ Extracted {len(levels)} contour levels "
                f"({sum(len(l.polygons) for l in levels)} polygons)")
    return levels
