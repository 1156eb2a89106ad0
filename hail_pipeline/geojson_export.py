#!/usr/bin/env python3
"""
GeoJSON Export
Contour levels -> GeoJSON FeatureCollection (the map renderer contract) and GeoDataFrame
"""

import logging
import math
from typing import Dict, Any, List, Sequence, Tuple

import geopandas as gpd

from .contours import ContourLevel
from .report_ingest import HailReport

logger = logging.getLogger(__name__)

GEOMETRY_TYPES = ('MultiPolygon', 'Polygon')


def _level_properties(level: ContourLevel) -> Dict[str, Any]:
    properties = {
        'level': level.level,
        'color': level.color,
        'description': level.description,
    }
    if level.report_count is not None:
        properties['reportCount'] = level.report_count
    return properties


def _polygon_rings(level: ContourLevel, index: int) -> List[List[List[float]]]:
    """Exterior ring followed by its holes"""
    holes = level.holes[index] if index < len(level.holes) else []
    return [level.polygons[index]] + list(holes)


def contours_to_feature_collection(levels: Sequence[ContourLevel],
                                   geometry: str = 'MultiPolygon') -> Dict[str, Any]:
    """
    Build the FeatureCollection consumed by the map renderer
    - MultiPolygon: one feature per level
    - Polygon: one feature per polygon
    """
    if geometry not in GEOMETRY_TYPES:
        raise ValueError(f"geometry must be one of {GEOMETRY_TYPES}, got {geometry}")

    features = []
    for level in levels:
        if not level.polygons:
            continue
        properties = _level_properties(level)

        if geometry == 'MultiPolygon':
            features.append({
                'type': 'Feature',
                'geometry': {
                    'type': 'MultiPolygon',
                    'coordinates': [_polygon_rings(level, k) for k in range(len(level.polygons))],
                },
                'properties': dict(properties),
            })
        else:
            for k in range(len(level.polygons)):
                features.append({
                    'type': 'Feature',
                    'geometry': {'type': 'Polygon', 'coordinates': _polygon_rings(level, k)},
                    'properties': dict(properties),
                })

    return {'type': 'FeatureCollection', 'features': features}


def reports_to_feature_collection(reports: Sequence[HailReport]) -> Dict[str, Any]:
    """Point features for the normalized (and scored) reports"""
    features = []
    for report in reports:
        properties = report.to_dict()
        properties.pop('latitude', None)
        properties.pop('longitude', None)
        features.append({
            'type': 'Feature',
            'geometry': {'type': 'Point', 'coordinates': [report.longitude, report.latitude]},
            'properties': properties,
        })
    return {'type': 'FeatureCollection', 'features': features}


def _check_ring(ring: Any, where: str, errors: List[str]) -> None:
    if not isinstance(ring, list) or len(ring) < 4:
        errors.append(f"{where}: ring needs at least 4 positions")
        return
    for position in ring:
        if (not isinstance(position, (list, tuple)) or len(position) < 2 or
                not all(isinstance(v, (int, float)) and math.isfinite(v) for v in position[:2])):
            errors.append(f"{where}: invalid position {position}")
            return
    if list(ring[0][:2]) != list(ring[-1][:2]):
        errors.append(f"{where}: ring is not closed")


def validate_feature_collection(fc: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """
    Structural validation of a contour FeatureCollection
    Returns (valid, errors)
    """
    errors: List[str] = []
    if not isinstance(fc, dict) or fc.get('type') != 'FeatureCollection':
        return False, ["Top-level object must be a FeatureCollection"]

    features = fc.get('features')
    if not isinstance(features, list):
        return False, ["FeatureCollection.features must be a list"]

    for i, feature in enumerate(features):
        where = f"feature[{i}]"
        if not isinstance(feature, dict) or feature.get('type') != 'Feature':
            errors.append(f"{where}: not a Feature")
            continue

        properties = feature.get('properties') or {}
        for key in ('level', 'color', 'description'):
            if key not in properties:
                errors.append(f"{where}: missing property '{key}'")

        geom = feature.get('geometry') or {}
        geom_type = geom.get('type')
        coords = geom.get('coordinates')
        if geom_type == 'Polygon':
            polygons = [coords]
        elif geom_type == 'MultiPolygon':
            polygons = coords
        else:
            errors.append(f"{where}: unsupported geometry type {geom_type}")
            continue

        if not isinstance(polygons, list) or not polygons:
            errors.append(f"{where}: empty geometry")
            continue
        for p, rings in enumerate(polygons):
            if not isinstance(rings, list) or not rings:
                errors.append(f"{where}.polygon[{p}]: no rings")
                continue
            for r, ring in enumerate(rings):
                _check_ring(ring, f"{where}.polygon[{p}].ring[{r}]", errors)

    return len(errors) == 0, errors


def features_to_geodataframe(fc: Dict[str, Any]) -> gpd.GeoDataFrame:
    """
    FeatureCollection -> GeoDataFrame (EPSG:4326) with equal-area `area_km2`
    Empty input gives an empty frame
    """
    features = fc.get('features', [])
    if not features:
        logger.info("No contour features to convert")
        return gpd.GeoDataFrame(columns=['level', 'color', 'description', 'area_km2', 'geometry'],
                                geometry='geometry', crs='EPSG:4326')

    gdf = gpd.GeoDataFrame.from_features(features, crs='EPSG:4326')

    # Reproject to equal-area for area calculation (CONUS Albers)
    gdf_albers = gdf.to_crs('EPSG:5070')
    gdf['area_km2'] = gdf_albers.geometry.area / 1e6

    logger.info(f"✓ Converted {len(gdf)} contour features to GeoDataFrame "
                f"({gdf['area_km2'].sum():.0f} km² total)")
    return gdf
