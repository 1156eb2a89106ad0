#!/usr/bin/env python3
"""
G1 - Report normalization
Feed record shapes, unit conversion, drops, deduplication and baseline confidence
"""

import json
from datetime import datetime, timezone

import pytest

from conftest import FIXED_NOW, BASELINE_CASES

from hail_pipeline.config import NormalizationConfig
from hail_pipeline.report_ingest import (
    SourceProfile, baseline_confidence, is_in_metro, load_raw_records, normalize_reports,
    normalize_reports_with_stats, parse_timestamp, ring_centroid, unwrap_records,
)


class TestRecordShapes:
    """Accepted record shapes and field aliases"""

    def test_mixed_storm_records(self, okc_storm_records):
        """Test 1: Mixed aliases normalize, bad records dropped"""
        reports, stats = normalize_reports_with_stats(okc_storm_records, SourceProfile.PROXY,
                                                      now=FIXED_NOW)

        assert stats.received == 7
        assert stats.accepted == 5
        assert stats.dropped_invalid == 2
        assert [r.id for r in reports] == ['okc_1', 'okc_2', 'okc_3', 'okc_4', 'okc_5']

        by_id = {r.id: r for r in reports}
        assert by_id['okc_2'].size == pytest.approx(1.5)     # 38.1 mm
        assert by_id['okc_2'].mesh_mm == pytest.approx(38.1)
        assert by_id['okc_3'].longitude == pytest.approx(-97.55)
        assert by_id['okc_5'].latitude == pytest.approx(35.52)
        assert by_id['okc_5'].longitude == pytest.approx(-97.60)

        print(f"✓ Normalized {stats.accepted}/{stats.received} mixed records")

    @pytest.mark.parametrize("mm,expected_inches", [
        (25.4, 1.0),
        (50.8, 2.0),
        (19.05, 0.75),
        (12.7, 0.5),
    ])
    def test_millimetre_conversion(self, mm, expected_inches):
        """Test 2: MESH millimetres converted with mm / 25.4"""
        reports = normalize_reports([{'lat': 35.0, 'lon': -97.0, 'mesh_mm': mm}], now=FIXED_NOW)
        assert len(reports) == 1
        assert reports[0].size == pytest.approx(expected_inches)

    def test_inches_preferred_over_millimetres(self):
        """Test 3: explicit inch size wins when both are present"""
        reports = normalize_reports([{'lat': 35.0, 'lon': -97.0, 'size': 1.25, 'mesh': 50.8}],
                                    now=FIXED_NOW)
        assert reports[0].size == pytest.approx(1.25)
        assert reports[0].mesh_mm == pytest.approx(50.8)

    @pytest.mark.parametrize("record,expected_size", [
        ({'lat': 35.0, 'lon': -97.0, 'size': '', 'mesh_mm': 50.8}, 2.0),
        ({'lat': 35.0, 'lon': -97.0, 'size': 'n/a', 'hail_size': 1.5}, 1.5),
        ({'lat': 35.0, 'lon': -97.0, 'size': float('nan'), 'size_inches': 1.0}, 1.0),
    ])
    def test_unusable_alias_falls_through(self, record, expected_size):
        """A blank or junk alias does not hide a later valid one"""
        reports = normalize_reports([record], now=FIXED_NOW)
        assert len(reports) == 1
        assert reports[0].size == pytest.approx(expected_size)

    def test_unusable_coordinate_alias_falls_through(self):
        reports = normalize_reports([{'lat': '', 'latitude': 35.2, 'lon': -97.0, 'size': 1.0}],
                                    now=FIXED_NOW)
        assert reports[0].latitude == pytest.approx(35.2)

    def test_polygon_feature_uses_centroid(self):
        """Test 4: IEM swath polygons are located at their vertex centroid"""
        feature = {
            'type': 'Feature',
            'geometry': {'type': 'Polygon', 'coordinates': [[
                [-98.0, 35.0], [-97.0, 35.0], [-97.0, 36.0], [-98.0, 36.0], [-98.0, 35.0],
            ]]},
            'properties': {'mesh_mm': 50.8, 'valid': '2024-09-24T22:00:00Z'},
        }
        reports = normalize_reports({'type': 'FeatureCollection', 'features': [feature]},
                                    SourceProfile.HISTORICAL, now=FIXED_NOW)

        assert len(reports) == 1
        report = reports[0]
        assert report.latitude == pytest.approx(35.5)
        assert report.longitude == pytest.approx(-97.5)
        assert report.polygon is not None and len(report.polygon) == 5
        # 70 base + 10 for 2" + 5 for the footprint polygon
        assert report.confidence == 85

    def test_reports_wrapper_unwrapped(self):
        """Test 5: {'reports': [...]} proxy wrapper"""
        payload = {'reports': [{'lat': 35.0, 'lon': -97.0, 'size': 1.0}], 'count': 1}
        assert len(unwrap_records(payload)) == 1
        assert len(normalize_reports(payload, now=FIXED_NOW)) == 1

    def test_unrecognized_payload_is_empty(self):
        assert unwrap_records("not a payload") == []
        assert unwrap_records(None) == []
        assert normalize_reports({'unexpected': True}, now=FIXED_NOW) == []

    def test_default_ids_use_profile(self):
        reports = normalize_reports([{'lat': 35.0, 'lon': -97.0, 'size': 1.0},
                                     {'lat': 36.0, 'lon': -97.0, 'size': 1.0}],
                                    SourceProfile.REALTIME, now=FIXED_NOW)
        assert [r.id for r in reports] == ['realtime_0', 'realtime_1']


class TestDropsAndDedup:
    """Silent drops and first-occurrence deduplication"""

    @pytest.mark.parametrize("record,description", [
        ({'lon': -97.0, 'size': 1.0}, "missing_lat"),
        ({'lat': 35.0, 'size': 1.0}, "missing_lon"),
        ({'lat': 'north', 'lon': -97.0, 'size': 1.0}, "non_numeric_lat"),
        ({'lat': 95.0, 'lon': -97.0, 'size': 1.0}, "lat_out_of_range"),
        ({'lat': 35.0, 'lon': -197.0, 'size': 1.0}, "lon_out_of_range"),
        ({'lat': 35.0, 'lon': -97.0}, "missing_size"),
        ({'lat': 35.0, 'lon': -97.0, 'size': 0}, "zero_size"),
        ({'lat': 35.0, 'lon': -97.0, 'size': -1.5}, "negative_size"),
        ({'lat': 35.0, 'lon': -97.0, 'size': float('nan')}, "nan_size"),
        ({'lat': 35.0, 'lon': -97.0, 'mesh_mm': 0.0}, "zero_mesh"),
        ("35.0,-97.0,1.0", "not_a_mapping"),
    ])
    def test_invalid_records_dropped(self, record, description):
        """Test 6: invalid records are dropped and counted, never raised"""
        reports, stats = normalize_reports_with_stats([record], now=FIXED_NOW)
        assert reports == [], description
        assert stats.dropped_invalid == 1

    def test_duplicate_locations_keep_first(self):
        """Test 7: locations equal to 3 decimals deduplicate, first wins"""
        records = [
            {'id': 'first', 'lat': 35.0001, 'lon': -97.0001, 'size': 1.0},
            {'id': 'second', 'lat': 35.0002, 'lon': -97.0002, 'size': 2.0},
            {'id': 'distinct', 'lat': 35.01, 'lon': -97.0, 'size': 1.0},
        ]
        reports, stats = normalize_reports_with_stats(records, now=FIXED_NOW)
        assert [r.id for r in reports] == ['first', 'distinct']
        assert stats.dropped_duplicate == 1

    def test_min_size_filter(self):
        config = NormalizationConfig(min_size_inches=1.0)
        records = [{'lat': 35.0, 'lon': -97.0, 'size': 0.75},
                   {'lat': 35.1, 'lon': -97.0, 'size': 1.0}]
        reports, stats = normalize_reports_with_stats(records, config=config, now=FIXED_NOW)
        assert len(reports) == 1
        assert stats.dropped_filtered == 1


class TestBaselineConfidence:
    """Source-specific starting confidence"""

    @pytest.mark.parametrize("profile,size,has_polygon,provided,expected", BASELINE_CASES)
    def test_baseline_table(self, profile, size, has_polygon, provided, expected):
        """Test 8: baseline confidence per source profile"""
        result = baseline_confidence(SourceProfile(profile), size, has_polygon, provided)
        assert result == pytest.approx(expected)
        assert 0 <= result <= 100

    def test_provided_confidence_clamped_on_report(self):
        reports = normalize_reports([{'lat': 35.0, 'lon': -97.0, 'size': 1.0, 'confidence': 250}],
                                    SourceProfile.MANUAL, now=FIXED_NOW)
        assert reports[0].confidence == 100


class TestMetroAndTime:
    """Metro tagging and timestamp parsing"""

    def test_metro_tagging(self):
        """Test 9: OKC metro reports are tagged and labelled"""
        records = [
            {'id': 'downtown', 'lat': 35.4676, 'lon': -97.5164, 'size': 1.0},
            {'id': 'tulsa', 'lat': 36.15, 'lon': -95.99, 'size': 1.0, 'city': 'Tulsa'},
        ]
        reports = {r.id: r for r in normalize_reports(records, now=FIXED_NOW)}

        assert reports['downtown'].is_metro_okc is True
        assert reports['downtown'].city == 'Metro OKC'
        assert reports['tulsa'].is_metro_okc is False
        assert reports['tulsa'].city == 'Tulsa'

    def test_metro_radius_boundary(self):
        config = NormalizationConfig()
        radius_deg = config.metro_radius_miles / config.miles_per_degree
        lat, lon = config.metro_center
        assert is_in_metro(lat + radius_deg * 0.99, lon, config)
        assert not is_in_metro(lat + radius_deg * 1.01, lon, config)

    @pytest.mark.parametrize("raw,expected", [
        ('2024-09-24T22:00:00Z', datetime(2024, 9, 24, 22, 0, tzinfo=timezone.utc)),
        ('2024-09-24T17:00:00-05:00', datetime(2024, 9, 24, 22, 0, tzinfo=timezone.utc)),
        (1727215200, datetime(2024, 9, 24, 22, 0, tzinfo=timezone.utc)),
        (1727215200000, datetime(2024, 9, 24, 22, 0, tzinfo=timezone.utc)),
        (datetime(2024, 9, 24, 22, 0), datetime(2024, 9, 24, 22, 0, tzinfo=timezone.utc)),
    ])
    def test_timestamp_formats(self, raw, expected):
        """Test 10: ISO strings, epoch seconds/ms and naive datetimes parse to UTC"""
        assert parse_timestamp(raw, FIXED_NOW) == expected

    @pytest.mark.parametrize("raw", [None, 'yesterday-ish', float('nan'), {'when': 'now'}])
    def test_unparseable_timestamp_falls_back(self, raw):
        assert parse_timestamp(raw, FIXED_NOW) == FIXED_NOW

    def test_missing_timestamp_uses_normalization_time(self):
        reports = normalize_reports([{'lat': 35.0, 'lon': -97.0, 'size': 1.0}], now=FIXED_NOW)
        assert reports[0].timestamp == FIXED_NOW

    def test_ring_centroid_ignores_closing_vertex(self):
        ring = [[0.0, 0.0], [2.0, 0.0], [2.0, 2.0], [0.0, 2.0], [0.0, 0.0]]
        assert ring_centroid(ring) == pytest.approx((1.0, 1.0))
        assert ring_centroid([]) is None


class TestFileLoading:
    """Raw record files"""

    def test_load_json_feature_collection(self, tmp_path):
        path = tmp_path / "storm.geojson"
        path.write_text(json.dumps({
            'type': 'FeatureCollection',
            'features': [{'type': 'Feature',
                          'geometry': {'type': 'Point', 'coordinates': [-97.5, 35.5]},
                          'properties': {'size': 1.5}}],
        }))
        records = load_raw_records(str(path))
        assert len(records) == 1
        assert len(normalize_reports(records, now=FIXED_NOW)) == 1

    def test_load_csv_with_missing_cells(self, tmp_path):
        """Test 11: CSV tables, NaN cells become missing fields"""
        path = tmp_path / "reports.csv"
        path.write_text("id,lat,lon,size,meshValue\n"
                        "a,35.0,-97.0,1.0,\n"
                        "b,35.2,-97.2,,50.8\n")
        records = load_raw_records(str(path))
        assert 'meshValue' not in records[0]
        assert 'size' not in records[1]

        reports = {r.id: r for r in normalize_reports(records, now=FIXED_NOW)}
        assert reports['a'].size == pytest.approx(1.0)
        assert reports['b'].size == pytest.approx(2.0)

    def test_unsupported_extension(self, tmp_path):
        path = tmp_path / "reports.xml"
        path.write_text("<reports/>")
        with pytest.raises(ValueError):
            load_raw_records(str(path))
