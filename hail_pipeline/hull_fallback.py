#!/usr/bin/env python3
"""
Sparse Report Contours
Convex hull per size bin, buffered outward, with circle fallback for bins of 1-2 reports
"""

import logging
import math
from typing import List, Optional, Sequence, Tuple

from .config import ContourStyle, DEFAULT_CONTOUR_STYLES, EngineConfig, style_for_level
from .contours import ContourLevel, Ring, orient_ring
from .report_ingest import HailReport

logger = logging.getLogger(__name__)

Coord = Tuple[float, float]


def cross(o: Coord, a: Coord, b: Coord) -> float:
    """Z component of (a - o) x (b - o); > 0 for a counterclockwise turn"""
    return (a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0])


def convex_hull(points: Sequence[Coord]) -> List[Coord]:
    """
    Andrew's monotone chain
    Returns counterclockwise hull vertices without the closing vertex
    Colinear points are excluded, so < 3 vertices means a degenerate set
    """
    pts = sorted(set((float(x), float(y)) for x, y in points))
    if len(pts) <= 2:
        return pts

    lower: List[Coord] = []
    for p in pts:
        while len(lower) >= 2 and cross(lower[-2], lower[-1], p) <= 0:
            lower.pop()
        lower.append(p)

    upper: List[Coord] = []
    for p in reversed(pts):
        while len(upper) >= 2 and cross(upper[-2], upper[-1], p) <= 0:
            upper.pop()
        upper.append(p)

    return lower[:-1] + upper[:-1]


def polygon_centroid(points: Sequence[Coord]) -> Coord:
    """Vertex centroid (mean of the vertices)"""
    if not points:
        raise ValueError("Cannot take the centroid of an empty point set")
    n = len(points)
    return (sum(p[0] for p in points) / n, sum(p[1] for p in points) / n)


def expand_polygon(points: Sequence[Coord], distance: float) -> List[Coord]:
    """
    Push every vertex `distance` further from the vertex centroid
    Vertices sitting on the centroid are left in place
    """
    cx, cy = polygon_centroid(points)
    expanded = []
    for x, y in points:
        dx, dy = x - cx, y - cy
        length = math.hypot(dx, dy)
        if length == 0:
            expanded.append((x, y))
            continue
        scale = (length + distance) / length
        expanded.append((cx + dx * scale, cy + dy * scale))
    return expanded


def make_circle(lon: float, lat: float, radius: float, segments: int = 32) -> Ring:
    """Closed counterclockwise circle ring with `segments` + 1 vertices"""
    if segments < 3:
        raise ValueError(f"Circle needs at least 3 segments, got {segments}")
    ring = []
    for k in range(segments):
        angle = 2 * math.pi * k / segments
        ring.append([lon + radius * math.cos(angle), lat + radius * math.sin(angle)])
    ring.append(list(ring[0]))
    return ring


def _close(points: Sequence[Coord]) -> Ring:
    ring = [[x, y] for x, y in points]
    ring.append(list(ring[0]))
    return orient_ring(ring, counterclockwise=True)


def bin_reports(reports: Sequence[HailReport],
                styles: Sequence[ContourStyle]) -> List[Tuple[ContourStyle, List[HailReport]]]:
    """
    Group reports into [level_k, level_k+1) bins, top bin open-ended
    Reports below the lowest level are ignored
    """
    ordered = sorted(styles, key=lambda s: s.level)
    bins: List[Tuple[ContourStyle, List[HailReport]]] = [(s, []) for s in ordered]

    for report in reports:
        for k, style in enumerate(ordered):
            upper = ordered[k + 1].level if k + 1 < len(ordered) else math.inf
            if style.level <= report.size < upper:
                bins[k][1].append(report)
                break
    return bins


def hull_contours(reports: Sequence[HailReport], styles: Optional[Sequence[ContourStyle]] = None,
                  config: Optional[EngineConfig] = None,
                  thresholds: Optional[Sequence[float]] = None) -> List[ContourLevel]:
    """
    Contours straight from report points (no grid)
    Bins follow the thresholds (config.contour_thresholds by default), styled like the grid contours
    >= 3 distinct points -> buffered convex hull, otherwise one circle per report
    """
    config = config or EngineConfig()
    styles = tuple(styles) if styles else (config.contour_styles or DEFAULT_CONTOUR_STYLES)
    if thresholds is None:
        thresholds = config.contour_thresholds or [s.level for s in styles]

    for threshold in thresholds:
        if not (threshold > 0 and math.isfinite(threshold)):
            raise ValueError(f"Contour threshold must be positive, got {threshold}")
    bin_styles = [style_for_level(t, styles) for t in sorted(set(thresholds))]

    levels = []
    for style, members in bin_reports(reports, bin_styles):
        if not members:
            continue

        points = [(r.longitude, r.latitude) for r in members]
        polygons: List[Ring] = []
        hull = convex_hull(points) if len(set(points)) >= 3 else []

        if len(hull) >= 3:
            polygons.append(_close(expand_polygon(hull, config.hull_buffer_deg)))
        else:
            if len(set(points)) >= 3:
                logger.debug(f"Degenerate hull at {style.level}\" (colinear points), using circles")
            for lon, lat in points:
                polygons.append(make_circle(lon, lat, config.circle_radius_deg, config.circle_segments))

        levels.append(ContourLevel.from_style(style, polygons, report_count=len(members)))

    levels.sort(key=lambda l: l.level, reverse=True)
    logger.info(f"✓ Built {len(levels)} sparse contour levels from {len(reports)} reports")
    return levels
