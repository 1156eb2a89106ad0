#!/usr/bin/env python3
"""
Hail Field Engine
Orchestrates: normalize -> score -> IDW grid -> smooth -> contour -> GeoJSON
Stateless apart from its config: every call takes explicit inputs and returns fresh objects
"""

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, Any, List, Optional, Sequence, Union

from .config import ContourStrategy, EngineConfig
from .confidence import ConfidenceScorer
from .contours import ContourLevel, extract_contours
from .geojson_export import contours_to_feature_collection, validate_feature_collection
from .grid_align import GridBounds, GridProcessor, HailGrid
from .hull_fallback import hull_contours
from .providers import ProviderChain, When, filter_to_bounds
from .report_ingest import HailReport, SourceProfile, normalize_reports_with_stats
from .smoothing import smooth_grid

logger = logging.getLogger(__name__)


@dataclass
class HailFieldResult:
    """Results from a complete engine run"""
    reports: List[HailReport]
    grid: Optional[HailGrid]            # None when the hull strategy ran
    levels: List[ContourLevel]
    feature_collection: Dict[str, Any]
    strategy: ContourStrategy
    stats: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def polygon_count(self) -> int:
        return sum(len(level.polygons) for level in self.levels)


def _elapsed(start: datetime) -> float:
    return (datetime.now() - start).total_seconds()


class HailFieldEngine:
    """
    Turns hail reports into contour polygons
    Strategy AUTO uses the convex-hull fallback for sparse batches and marching squares otherwise
    """

    def __init__(self, config: EngineConfig = None):
        self.config = (config or EngineConfig()).validate()
        self.scorer = ConfidenceScorer(self.config.confidence)
        self.processor = GridProcessor(self.config)

    def resolve_strategy(self, report_count: int,
                         strategy: Optional[ContourStrategy] = None) -> ContourStrategy:
        """AUTO -> CONVEX_HULL below auto_min_grid_reports, else MARCHING_SQUARES"""
        strategy = strategy or self.config.strategy
        if strategy != ContourStrategy.AUTO:
            return strategy
        if report_count < self.config.auto_min_grid_reports:
            return ContourStrategy.CONVEX_HULL
        return ContourStrategy.MARCHING_SQUARES

    def bounds_for_reports(self, reports: Sequence[HailReport]) -> GridBounds:
        """
        Bounding box around the reports, padded by the influence radius
        plus the smoothing kernel so swaths are not cut at the edge
        """
        if not reports:
            raise ValueError("Cannot derive bounds from an empty report list")
        res = self.config.grid_resolution
        cells = self.config.influence_radius_cells + int(math.ceil(3 * self.config.smoothing_sigma)) + 1
        margin = cells * res

        lats = [r.latitude for r in reports]
        lons = [r.longitude for r in reports]
        return GridBounds(
            north=min(max(lats) + margin, 90.0),
            south=max(min(lats) - margin, -90.0),
            east=min(max(lons) + margin, 180.0),
            west=max(min(lons) - margin, -180.0),
        )

    def build_grid(self, reports: Sequence[HailReport], bounds: GridBounds,
                   sigma: Optional[float] = None,
                   resolution: Optional[float] = None) -> HailGrid:
        """Interpolate then smooth"""
        sigma = self.config.smoothing_sigma if sigma is None else sigma
        raw = self.processor.interpolate(reports, bounds, resolution)
        return smooth_grid(raw, sigma)

    def _count_reports(self, levels: List[ContourLevel],
                       reports: Sequence[HailReport]) -> List[ContourLevel]:
        return [replace(level, report_count=sum(1 for r in reports if r.size >= level.level))
                for level in levels]

    def contour(self, grid_or_reports: Union[HailGrid, Sequence[HailReport]],
                bounds: Optional[GridBounds] = None,
                strategy: Optional[ContourStrategy] = None,
                sigma: Optional[float] = None) -> List[ContourLevel]:
        """
        Contour a prepared grid (marching squares) or raw reports (per strategy)
        """
        cfg = self.config
        if isinstance(grid_or_reports, HailGrid):
            if strategy == ContourStrategy.CONVEX_HULL:
                raise ValueError("Convex hull contours need reports, not a grid")
            return extract_contours(grid_or_reports, cfg.contour_thresholds,
                                    cfg.contour_styles, cfg.ring_closure_epsilon)

        reports = list(grid_or_reports)
        resolved = self.resolve_strategy(len(reports), strategy)
        if resolved == ContourStrategy.CONVEX_HULL:
            return hull_contours(filter_to_bounds(reports, bounds), cfg.contour_styles, cfg,
                                 cfg.contour_thresholds)

        if not reports:
            return []
        grid = self.build_grid(reports, bounds or self.bounds_for_reports(reports), sigma)
        levels = extract_contours(grid, cfg.contour_thresholds, cfg.contour_styles,
                                  cfg.ring_closure_epsilon)
        return self._count_reports(levels, reports)

    def validate_result(self, result: HailFieldResult) -> List[str]:
        """Sanity checks on a finished run, returned as warnings"""
        warnings = []
        valid, errors = validate_feature_collection(result.feature_collection)
        if not valid:
            warnings.append(f"Invalid GeoJSON output: {len(errors)} errors (first: {errors[0]})")

        if result.reports and not result.levels:
            largest = max(r.size for r in result.reports)
            lowest = min(result.stats.get('thresholds') or self.config.contour_thresholds)
            if largest >= lowest:
                warnings.append(f"{len(result.reports)} reports up to {largest:.2f}\" produced no contours")

        if result.grid is not None and result.grid.height * result.grid.width > 5_000_000:
            warnings.append(f"Large grid ({result.grid.width}x{result.grid.height}) - consider a coarser resolution")
        return warnings

    def run(self, records_or_reports: Any, bounds: Optional[GridBounds] = None,
            profile: Optional[SourceProfile] = None, now: Optional[datetime] = None,
            strategy: Optional[ContourStrategy] = None,
            sigma: Optional[float] = None) -> HailFieldResult:
        """
        Full pipeline for one batch

        Args:
            records_or_reports: raw feed records (any accepted shape) or HailReports
            bounds: grid bounds; derived from the reports when omitted
            profile: source profile for raw records (default REALTIME)
            now: reference time for recency scoring
            strategy: overrides the configured contour strategy

        Returns:
            HailFieldResult
        """
        cfg = self.config
        start_time = datetime.now()
        stats: Dict[str, Any] = {'thresholds': list(cfg.contour_thresholds)}

        # 1. Normalize
        step = datetime.now()
        if (isinstance(records_or_reports, (list, tuple)) and records_or_reports and
                all(isinstance(r, HailReport) for r in records_or_reports)):
            reports = list(records_or_reports)
            stats.update({'received': len(reports), 'accepted': len(reports)})
        else:
            reports, norm_stats = normalize_reports_with_stats(
                records_or_reports, profile, cfg.normalization, now)
            stats.update({
                'received': norm_stats.received,
                'accepted': norm_stats.accepted,
                'dropped_invalid': norm_stats.dropped_invalid,
                'dropped_duplicate': norm_stats.dropped_duplicate,
                'dropped_filtered': norm_stats.dropped_filtered,
            })
        stats['normalize_seconds'] = _elapsed(step)

        # 2. Score
        step = datetime.now()
        reports = self.scorer.score_reports(reports, now)
        stats['score_seconds'] = _elapsed(step)

        # 3-5. Grid + contours
        resolved = self.resolve_strategy(len(reports), strategy)
        grid = None
        step = datetime.now()
        if resolved == ContourStrategy.CONVEX_HULL:
            levels = hull_contours(filter_to_bounds(reports, bounds), cfg.contour_styles, cfg,
                                   cfg.contour_thresholds)
        elif not reports:
            levels = []
        else:
            grid_bounds = bounds or self.bounds_for_reports(reports)
            grid = self.build_grid(reports, grid_bounds, sigma)
            stats['grid_seconds'] = _elapsed(step)
            stats['grid_shape'] = [grid.height, grid.width]
            stats['grid_max'] = grid.max_value
            step = datetime.now()
            levels = extract_contours(grid, cfg.contour_thresholds, cfg.contour_styles,
                                      cfg.ring_closure_epsilon)
            levels = self._count_reports(levels, reports)
        stats['contour_seconds'] = _elapsed(step)

        feature_collection = contours_to_feature_collection(levels)
        stats['levels'] = len(levels)
        stats['polygons'] = sum(len(level.polygons) for level in levels)
        stats['total_seconds'] = _elapsed(start_time)

        result = HailFieldResult(
            reports=reports,
            grid=grid,
            levels=levels,
            feature_collection=feature_collection,
            strategy=resolved,
            stats=stats,
        )
        result.warnings = self.validate_result(result)
        for warning in result.warnings:
            logger.warning(warning)

        logger.info(f"=== Hail field complete in {stats['total_seconds']:.2f}s ===")
        logger.info(f"  Strategy: {resolved.value}, reports: {len(reports)}, "
                    f"levels: {stats['levels']}, polygons: {stats['polygons']}")
        return result

    def fetch_and_run(self, chain: ProviderChain, bounds: GridBounds, when: When = None,
                      now: Optional[datetime] = None,
                      strategy: Optional[ContourStrategy] = None) -> HailFieldResult:
        """Pull reports through the provider chain and run the pipeline on them"""
        reports = chain.fetch_reports(bounds, when)
        result = self.run(reports, bounds, now=now, strategy=strategy)
        result.stats['source'] = chain.last_source
        result.stats['provider_errors'] = list(chain.errors)
        return result
