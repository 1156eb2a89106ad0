#!/usr/bin/env python3
"""
Hail Report Ingest
Normalizes heterogeneous hail feed records into canonical HailReport objects
Handles field aliases, MESH mm -> inch conversion, deduplication and baseline confidence
"""

import json
import logging
import math
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple, Iterable, TYPE_CHECKING

import pandas as pd

from .config import NormalizationConfig

if TYPE_CHECKING:
    from .confidence import ConfidenceFactors

logger = logging.getLogger(__name__)


LAT_KEYS = ('lat', 'latitude')
LON_KEYS = ('lon', 'lng', 'longitude')
INCH_KEYS = ('size', 'size_in', 'size_inches', 'hail_size')
MM_KEYS = ('mesh_mm', 'meshValue', 'mesh', 'mesh_value')
TIME_KEYS = ('timestamp', 'valid', 'time', 'valid_time')


class SourceProfile(Enum):
    """Feed families with their own baseline confidence rules"""
    REALTIME = "realtime"
    HISTORICAL = "historical"
    PROXY = "proxy"
    MANUAL = "manual"


SOURCE_LABELS = {
    SourceProfile.REALTIME: "NCEP MRMS Real-Time",
    SourceProfile.HISTORICAL: "IEM Archive",
    SourceProfile.PROXY: "MRMS Proxy",
    SourceProfile.MANUAL: "Manual Entry",
}


@dataclass(frozen=True)
class HailReport:
    """Canonical hail report (immutable once scored)"""
    id: str
    latitude: float
    longitude: float
    size: float                     # inches
    timestamp: datetime             # UTC
    confidence: float               # 0-100
    confidence_factors: Optional['ConfidenceFactors'] = None
    city: Optional[str] = None
    is_metro_okc: bool = False
    source: Optional[str] = None
    mesh_mm: Optional[float] = None
    polygon: Optional[Tuple[Tuple[float, float], ...]] = None

    def __post_init__(self):
        if not (self.size > 0 and math.isfinite(self.size)):
            raise ValueError(f"Hail size must be positive, got {self.size}")
        if not (math.isfinite(self.latitude) and math.isfinite(self.longitude)):
            raise ValueError(f"Invalid coordinates: ({self.latitude}, {self.longitude})")
        object.__setattr__(self, 'confidence', clamp_confidence(self.confidence))

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe dictionary"""
        data = {
            'id': self.id,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'size': self.size,
            'timestamp': self.timestamp.isoformat(),
            'confidence': self.confidence,
            'city': self.city,
            'isMetroOKC': self.is_metro_okc,
            'source': self.source,
        }
        if self.mesh_mm is not None:
            data['meshValue'] = self.mesh_mm
        if self.confidence_factors is not None:
            data['confidenceFactors'] = asdict(self.confidence_factors)
        return data


@dataclass
class NormalizationStats:
    """Bookkeeping for one normalization pass"""
    received: int = 0
    accepted: int = 0
    dropped_invalid: int = 0
    dropped_duplicate: int = 0
    dropped_filtered: int = 0


def clamp_confidence(value: Any) -> float:
    """Clamp a confidence value to [0, 100], treating junk as 0"""
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(100.0, value))


def baseline_confidence(profile: SourceProfile, size_inches: float,
                        has_polygon: bool = False,
                        provided: Optional[float] = None) -> float:
    """
    Source-specific starting confidence before the scorer runs
    - realtime: 60, +10 for 2"+ hail, +5 for 1"+
    - historical: 70, +10/+7/+5 for 2"/1.5"/1"+, +5 with a footprint polygon, capped at 85
    - proxy/manual: feed-provided value, else 85/50
    """
    if profile == SourceProfile.REALTIME:
        confidence = 60.0
        if size_inches >= 2.0:
            confidence += 10
        elif size_inches >= 1.0:
            confidence += 5
        return confidence

    if profile == SourceProfile.HISTORICAL:
        confidence = 70.0
        if size_inches >= 2.0:
            confidence += 10
        elif size_inches >= 1.5:
            confidence += 7
        elif size_inches >= 1.0:
            confidence += 5
        if has_polygon:
            confidence += 5
        return min(confidence, 85.0)

    if provided is not None:
        return clamp_confidence(provided)
    return 85.0 if profile == SourceProfile.PROXY else 50.0


def _first_number(source: Dict[str, Any], keys: Iterable[str]) -> Optional[float]:
    for key in keys:
        if key in source and source[key] is not None:
            try:
                value = float(source[key])
            except (TypeError, ValueError):
                continue
            if math.isfinite(value):
                return value
    return None


def parse_timestamp(raw: Any, default: datetime) -> datetime:
    """Parse ISO strings, epoch seconds/milliseconds or datetimes into UTC"""
    if raw is None:
        return default
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        if not math.isfinite(raw):
            return default
        seconds = raw / 1000.0 if raw > 1e11 else float(raw)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return default
    if isinstance(raw, str):
        text = raw.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return default
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return default


def ring_centroid(coords: List[Any]) -> Optional[Tuple[float, float]]:
    """Vertex-average centroid of a [lon, lat] ring, returns (lat, lon)"""
    points = []
    for coord in coords or []:
        try:
            lon, lat = float(coord[0]), float(coord[1])
        except (TypeError, ValueError, IndexError):
            continue
        if math.isfinite(lon) and math.isfinite(lat):
            points.append((lon, lat))
    if not points:
        return None
    # closed rings repeat the first vertex
    if len(points) > 1 and points[0] == points[-1]:
        points = points[:-1]
    lon = sum(p[0] for p in points) / len(points)
    lat = sum(p[1] for p in points) / len(points)
    return lat, lon


def _flatten_record(record: Any) -> Optional[Dict[str, Any]]:
    """
    Reduce a flat dict or GeoJSON Feature to one flat dict
    Polygon features get their centroid as the location and keep the ring
    """
    if not isinstance(record, dict):
        return None

    if record.get('type') != 'Feature':
        return record

    flat = dict(record.get('properties') or {})
    if 'id' in record and 'id' not in flat:
        flat['id'] = record['id']

    geometry = record.get('geometry') or {}
    geom_type = geometry.get('type')
    coords = geometry.get('coordinates')

    if geom_type == 'Point' and coords and len(coords) >= 2:
        flat['lon'], flat['lat'] = coords[0], coords[1]
    elif geom_type == 'Polygon' and coords:
        centroid = ring_centroid(coords[0])
        if centroid is not None:
            flat['lat'], flat['lon'] = centroid
            flat['_polygon'] = coords[0]
    return flat


def unwrap_records(payload: Any) -> List[Any]:
    """Accept a list, a FeatureCollection or a {'reports': [...]} wrapper"""
    if payload is None:
        return []
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        if payload.get('type') == 'FeatureCollection':
            return list(payload.get('features') or [])
        if isinstance(payload.get('reports'), list):
            return payload['reports']
        if payload.get('type') == 'Feature':
            return [payload]
    logger.warning(f"Unrecognized report payload of type {type(payload).__name__}")
    return []


def is_in_metro(lat: float, lon: float, config: NormalizationConfig) -> bool:
    """Planar degree distance check against the configured metro centre"""
    center_lat, center_lon = config.metro_center
    radius_deg = config.metro_radius_miles / config.miles_per_degree
    return math.hypot(lat - center_lat, lon - center_lon) <= radius_deg


def normalize_reports_with_stats(records: Any,
                                 profile: Optional[SourceProfile] = None,
                                 config: Optional[NormalizationConfig] = None,
                                 now: Optional[datetime] = None,
                                 source: Optional[str] = None) -> Tuple[List[HailReport], NormalizationStats]:
    """
    Normalize feed records into HailReports

    Bad records are dropped and counted, never raised. Duplicate locations
    (rounded to `dedup_decimals`) keep the first occurrence.

    Returns:
        (reports, stats)
    """
    profile = profile or SourceProfile.REALTIME
    config = config or NormalizationConfig()
    now = now or datetime.now(timezone.utc)
    source = source or SOURCE_LABELS[profile]
    source_slug = profile.value

    stats = NormalizationStats()
    reports: List[HailReport] = []
    seen_locations = set()

    for index, record in enumerate(unwrap_records(records)):
        stats.received += 1
        flat = _flatten_record(record)
        if flat is None:
            stats.dropped_invalid += 1
            logger.debug(f"Record {index}: not a mapping, dropped")
            continue

        lat = _first_number(flat, LAT_KEYS)
        lon = _first_number(flat, LON_KEYS)
        if lat is None or lon is None or not (-90 <= lat <= 90) or not (-180 <= lon <= 180):
            stats.dropped_invalid += 1
            logger.debug(f"Record {index}: missing or invalid coordinates, dropped")
            continue

        mesh_mm = _first_number(flat, MM_KEYS)
        size = _first_number(flat, INCH_KEYS)
        if size is None and mesh_mm is not None:
            size = mesh_mm / config.mm_per_inch
        if size is None or size <= 0:
            stats.dropped_invalid += 1
            logger.debug(f"Record {index}: missing or zero hail size, dropped")
            continue

        if config.min_size_inches > 0 and size < config.min_size_inches:
            stats.dropped_filtered += 1
            continue

        location_key = (round(lat, config.dedup_decimals), round(lon, config.dedup_decimals))
        if location_key in seen_locations:
            stats.dropped_duplicate += 1
            continue
        seen_locations.add(location_key)

        polygon = flat.get('_polygon') or flat.get('polygon')
        polygon_ring = None
        if polygon:
            try:
                polygon_ring = tuple((float(p[0]), float(p[1])) for p in polygon)
            except (TypeError, ValueError, IndexError):
                polygon_ring = None

        provided = _first_number(flat, ('confidence',))
        confidence = baseline_confidence(profile, size, polygon_ring is not None, provided)

        raw_time = next((flat[k] for k in TIME_KEYS if flat.get(k) is not None), None)
        timestamp = parse_timestamp(raw_time, now)

        in_metro = is_in_metro(lat, lon, config)
        city = flat.get('city')
        if (not city or city == 'Unknown') and in_metro:
            city = config.metro_label

        report_id = flat.get('id')
        reports.append(HailReport(
            id=str(report_id) if report_id is not None else f"{source_slug}_{index}",
            latitude=lat,
            longitude=lon,
            size=size,
            timestamp=timestamp,
            confidence=confidence,
            city=city,
            is_metro_okc=in_metro,
            source=flat.get('source') or source,
            mesh_mm=mesh_mm,
            polygon=polygon_ring,
        ))
        stats.accepted += 1

    dropped = stats.dropped_invalid + stats.dropped_duplicate + stats.dropped_filtered
    if dropped:
        logger.info(f"Normalized {stats.accepted}/{stats.received} {source} records "
                    f"(invalid={stats.dropped_invalid}, duplicate={stats.dropped_duplicate}, "
                    f"filtered={stats.dropped_filtered})")
    else:
        logger.debug(f"Normalized {stats.accepted} {source} records")

    return reports, stats


def normalize_reports(records: Any,
                      profile: Optional[SourceProfile] = None,
                      config: Optional[NormalizationConfig] = None,
                      now: Optional[datetime] = None) -> List[HailReport]:
    """Normalize feed records into HailReports (see normalize_reports_with_stats)"""
    reports, _ = normalize_reports_with_stats(records, profile, config, now)
    return reports


def load_raw_records(path: str) -> List[Dict[str, Any]]:
    """
    Read raw report records from disk
    Supports .json/.geojson (list, FeatureCollection or wrapper) and .csv/.parquet tables
    """
    file_path = Path(path)
    suffix = file_path.suffix.lower()

    if suffix in ('.json', '.geojson'):
        with open(file_path, 'r') as f:
            return unwrap_records(json.load(f))

    if suffix == '.csv':
        df = pd.read_csv(file_path)
    elif suffix == '.parquet':
        df = pd.read_parquet(file_path)
    else:
        raise ValueError(f"Unsupported report file type: {file_path.suffix}")

    # NaN cells become missing fields so aliases resolve correctly
    records = []
    for row in df.to_dict(orient='records'):
        records.append({k: v for k, v in row.items() if not (isinstance(v, float) and math.isnan(v))})

    logger.info(f"Loaded {len(records)} raw records from {file_path}")
    return records
