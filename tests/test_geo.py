"""Tests for neighborhood resolution and geometry loading."""
import json

import pytest
import requests

from nyc_taxi_stream.errors import StartupConfigurationError
from nyc_taxi_stream.geo import UNRESOLVED, GeoResolver, fetch_geojson

from conftest import MIDTOWN, NEIGHBORHOODS, OUTSIDE, UPPER_EAST_SIDE


class TestResolve:
    @pytest.mark.happy_path
    def test_point_inside_region(self, geo_resolver):
        assert geo_resolver.resolve(*UPPER_EAST_SIDE) == "Upper East Side"

    @pytest.mark.happy_path
    def test_first_matching_region_wins(self, geo_resolver):
        # MIDTOWN also lies inside "Theater District", which is listed later
        assert geo_resolver.resolve(*MIDTOWN) == "Midtown"

    @pytest.mark.edge_case
    def test_point_outside_every_region_is_unresolved(self, geo_resolver):
        assert geo_resolver.resolve(*OUTSIDE) == UNRESOLVED == "Unresolved"

    @pytest.mark.edge_case
    def test_boundary_point_counts_as_inside(self, geo_resolver):
        assert geo_resolver.resolve(-74.00, 40.75) == "Midtown"


class TestLoad:
    @pytest.mark.happy_path
    def test_load_from_path(self, geojson_path):
        resolver = GeoResolver.load(geojson_path)
        assert len(resolver) == 3
        assert resolver.resolve(*UPPER_EAST_SIDE) == "Upper East Side"

    @pytest.mark.happy_path
    def test_custom_label_property(self):
        doc = json.loads(json.dumps(NEIGHBORHOODS))
        for f in doc["features"]:
            f["properties"] = {"NTAName": f["properties"]["name"].upper()}
        resolver = GeoResolver.from_geojson(doc, name_property="NTAName")
        assert resolver.resolve(*MIDTOWN) == "MIDTOWN"

    @pytest.mark.happy_path
    def test_load_from_url(self, monkeypatch):
        class Response:
            def raise_for_status(self):
                pass

            def json(self):
                return NEIGHBORHOODS

        calls = []
        monkeypatch.setattr(requests, "get", lambda url, timeout: calls.append(url) or Response())
        resolver = GeoResolver.load("https://example.org/neighborhoods.geojson")
        assert calls == ["https://example.org/neighborhoods.geojson"]
        assert resolver.resolve(*MIDTOWN) == "Midtown"

    @pytest.mark.edge_case
    def test_missing_file_is_startup_error(self, tmp_path):
        with pytest.raises(StartupConfigurationError):
            fetch_geojson(tmp_path / "missing.geojson")

    @pytest.mark.edge_case
    def test_http_error_is_startup_error(self, monkeypatch):
        def _get(url, timeout):
            raise requests.ConnectionError("unreachable")

        monkeypatch.setattr(requests, "get", _get)
        with pytest.raises(StartupConfigurationError):
            GeoResolver.load("http://geometry.invalid/x.geojson")

    @pytest.mark.edge_case
    def test_invalid_json_is_startup_error(self, tmp_path):
        path = tmp_path / "bad.geojson"
        path.write_text("{not json")
        with pytest.raises(StartupConfigurationError):
            GeoResolver.load(path)

    @pytest.mark.edge_case
    def test_missing_label_property(self):
        doc = {"type": "FeatureCollection", "features": [
            {"type": "Feature", "properties": {}, "geometry": NEIGHBORHOODS["features"][0]["geometry"]},
        ]}
        with pytest.raises(StartupConfigurationError):
            GeoResolver.from_geojson(doc)

    @pytest.mark.edge_case
    def test_no_polygons(self):
        doc = {"type": "FeatureCollection", "features": [
            {"type": "Feature", "properties": {"name": "pin"},
             "geometry": {"type": "Point", "coordinates": [0, 0]}},
        ]}
        with pytest.raises(StartupConfigurationError):
            GeoResolver.from_geojson(doc)

    @pytest.mark.edge_case
    def test_not_a_feature_collection(self):
        with pytest.raises(StartupConfigurationError):
            GeoResolver.from_geojson({"type": "Polygon"})
