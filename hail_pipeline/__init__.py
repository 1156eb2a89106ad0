"""
Hail field pipeline: sparse hail reports -> smoothed grid -> swath contours -> GeoJSON
"""

from .config import (ConfigError, ContourStrategy, ContourStyle, DEFAULT_CONTOUR_STYLES,
                     EngineConfig, load_engine_config)
from .report_ingest import HailReport, SourceProfile, normalize_reports, load_raw_records
from .confidence import ConfidenceFactors, ConfidenceScorer, confidence_level
from .grid_align import GridBounds, GridPoint, GridProcessor, HailGrid
from .smoothing import smooth_grid
from .contours import ContourLevel, extract_contours
from .hull_fallback import hull_contours
from .geojson_export import contours_to_feature_collection, validate_feature_collection
from .providers import (DataIngestionError, ProviderChain, ProxyFeedProvider,
                        IEMArchiveProvider, StaticReportProvider)
from .hail_engine import HailFieldEngine, HailFieldResult

__version__ = "1.0.0"
