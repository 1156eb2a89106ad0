#!/usr/bin/env python3
"""
Hail Field Command Line
Render report files or fetched provider data into hail swath GeoJSON
"""

import argparse
import json
import logging
import os
import sys
from datetime import date
from typing import List, Optional

from .config import ConfigError, ContourStrategy, EngineConfig, OKLAHOMA_BOUNDS, load_engine_config
from .geojson_export import contours_to_feature_collection
from .grid_align import GridBounds
from .hail_engine import HailFieldEngine, HailFieldResult
from .providers import DataIngestionError, build_default_chain
from .report_ingest import SourceProfile, load_raw_records

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def setup_logging():
    log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format='%(asctime)s %(name)s %(levelname)s %(message)s',
        datefmt='%Y-%m-%dT%H:%M:%SZ'
    )
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def create_cli_parser() -> argparse.ArgumentParser:
    """Create command line interface parser"""
    parser = argparse.ArgumentParser(
        prog='hail-field',
        description="Hail swath contours from sparse hail reports",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
 # Render a report file over Oklahoma
 hail-field render storm_2024-09-24.json --bounds 37 33.6 -94.4 -103

 # Render a CSV replay with the sparse-point fallback
 hail-field render reports.csv --strategy convex_hull --output swaths.geojson

 # Fetch from the configured providers for a past storm
 hail-field fetch --bounds 37 33.6 -94.4 -103 --date 2024-09-24

 # Show the effective configuration
 hail-field config

Environment Variables:
 HAIL_GRID_RESOLUTION     Grid cell size in degrees (default: 0.01)
 HAIL_SMOOTHING_SIGMA     Gaussian sigma in cells (default: 1.0)
 HAIL_CONTOUR_THRESHOLDS  Comma separated thresholds in inches
 HAIL_CONTOUR_STRATEGY    marching_squares, convex_hull or auto
 HAIL_PROXY_URL           MRMS proxy server base URL
 HAIL_IEM_URL             IEM archive proxy base URL
 HAIL_CONFIG_FILE         JSON configuration file
 LOG_LEVEL                Logging level (DEBUG, INFO, WARNING, ERROR)
       """)

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    def add_common(sub: argparse.ArgumentParser):
        sub.add_argument(
            '--bounds',
            nargs=4,
            type=float,
            metavar=('NORTH', 'SOUTH', 'EAST', 'WEST'),
            help='Grid bounds in degrees')
        sub.add_argument(
            '--strategy',
            choices=[s.value for s in ContourStrategy],
            help='Contour strategy (default from config)')
        sub.add_argument(
            '--sigma',
            type=float,
            help='Smoothing sigma in cells (0 disables smoothing)')
        sub.add_argument(
            '--resolution',
            type=float,
            help='Grid resolution in degrees')
        sub.add_argument(
            '--geometry',
            choices=['MultiPolygon', 'Polygon'],
            default='MultiPolygon',
            help='One feature per level (MultiPolygon) or per polygon')
        sub.add_argument(
            '--output', '-o',
            help='Write GeoJSON to this path instead of stdout')
        sub.add_argument(
            '--config',
            help='JSON configuration file')

    render_parser = subparsers.add_parser('render', help='Render a report file to GeoJSON')
    render_parser.add_argument(
        'input',
        help='Report file (.json, .geojson, .csv, .parquet)')
    render_parser.add_argument(
        '--profile',
        choices=[p.value for p in SourceProfile],
        default=SourceProfile.MANUAL.value,
        help='Source profile for baseline confidence')
    add_common(render_parser)

    fetch_parser = subparsers.add_parser('fetch', help='Fetch reports from providers and render')
    fetch_parser.add_argument(
        '--date',
        type=date.fromisoformat,
        help='Storm date YYYY-MM-DD (default: today)')
    add_common(fetch_parser)

    config_parser = subparsers.add_parser('config', help='Print effective configuration')
    config_parser.add_argument(
        '--config',
        help='JSON configuration file')

    return parser


def build_config(args: argparse.Namespace) -> EngineConfig:
    """Load config then apply command line overrides"""
    config = load_engine_config(getattr(args, 'config', None))
    if getattr(args, 'strategy', None):
        config.strategy = ContourStrategy(args.strategy)
    if getattr(args, 'sigma', None) is not None:
        config.smoothing_sigma = args.sigma
    if getattr(args, 'resolution', None) is not None:
        config.grid_resolution = args.resolution
    return config.validate()


def parse_bounds(values: Optional[List[float]]) -> Optional[GridBounds]:
    if values is None:
        return None
    north, south, east, west = values
    return GridBounds(north=north, south=south, east=east, west=west)


def write_output(result: HailFieldResult, geometry: str, output: Optional[str]):
    fc = result.feature_collection
    if geometry != 'MultiPolygon':
        fc = contours_to_feature_collection(result.levels, geometry)

    text = json.dumps(fc, indent=2)
    if output:
        with open(output, 'w') as f:
            f.write(text)
        logger.info(f"✓ Wrote {len(fc['features'])} features to {output}")
    else:
        print(text)


def run_render(args: argparse.Namespace, config: EngineConfig) -> int:
    records = load_raw_records(args.input)
    engine = HailFieldEngine(config)
    result = engine.run(records, parse_bounds(args.bounds), profile=SourceProfile(args.profile))
    write_output(result, args.geometry, args.output)
    return EXIT_OK


def run_fetch(args: argparse.Namespace, config: EngineConfig) -> int:
    chain = build_default_chain(config.proxy_url, config.iem_url, config.normalization,
                                config.request_timeout, config.max_retries, args.date)
    if not chain.providers:
        logger.error("No report providers configured (set HAIL_PROXY_URL or HAIL_IEM_URL)")
        return EXIT_USAGE

    bounds = parse_bounds(args.bounds) or GridBounds.from_dict(OKLAHOMA_BOUNDS)
    engine = HailFieldEngine(config)
    result = engine.fetch_and_run(chain, bounds, when=args.date)
    if result.stats.get('source') is None:
        logger.warning("No provider returned reports")
    write_output(result, args.geometry, args.output)
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point, returns the process exit code"""
    parser = create_cli_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_USAGE

    setup_logging()

    try:
        config = build_config(args)
        if args.command == 'config':
            print(json.dumps(config.to_dict(), indent=2))
            return EXIT_OK
        if args.command == 'render':
            return run_render(args, config)
        return run_fetch(args, config)

    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_USAGE
    except (OSError, ValueError) as e:
        logger.error(f"Invalid input: {e}")
        return EXIT_USAGE
    except DataIngestionError as e:
        logger.error(f"Data ingestion failed: {e}")
        return EXIT_FAILURE
    except KeyboardInterrupt:
        logger.info("Cancelled by user")
        return EXIT_FAILURE
    except Exception as e:
        logger.exception(f"Hail field run failed: {e}")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
