"""Neighborhood lookup for pickup/dropoff coordinates.

The neighborhood polygons are loaded once at startup from a GeoJSON
``FeatureCollection`` (local path or HTTP(S) URL) and indexed in a
:class:`shapely.strtree.STRtree`. After loading, a :class:`GeoResolver` is
never mutated, so one instance is shared by every decoding thread.
"""
import json
import logging
from pathlib import Path
from typing import List, Sequence

import requests
from shapely.errors import GEOSException
from shapely.geometry import Point, shape
from shapely.strtree import STRtree

from .errors import StartupConfigurationError

logger = logging.getLogger(__name__)

UNRESOLVED = "Unresolved"


def fetch_geojson(source: str | Path, timeout: float = 30.0) -> dict:
    """Read a GeoJSON document from a local path or an HTTP(S) URL.

    Parameters
    ----------
    source
        Filesystem path or ``http://`` / ``https://`` URL.
    timeout
        Request timeout in seconds for remote sources.

    Returns
    -------
    dict
        The decoded GeoJSON document.

    Raises
    ------
    StartupConfigurationError
        If the source cannot be read or is not valid JSON.
    """
    source = str(source)
    try:
        if source.startswith(("http://", "https://")):
            response = requests.get(source, timeout=timeout)
            response.raise_for_status()
            return response.json()
        with open(source, "r") as f:
            return json.load(f)
    except (requests.RequestException, OSError, ValueError) as e:
        raise StartupConfigurationError(f"Cannot load neighborhood geometry from {source}: {e}") from e


class GeoResolver:
    """Point-in-polygon resolver over a static set of named regions.

    Parameters
    ----------
    names
        Region label for each geometry.
    geometries
        Shapely polygons, in priority order: when regions overlap, the one
        listed first wins.
    """

    def __init__(self, names: Sequence[str], geometries: Sequence):
        if len(names) != len(geometries):
            raise ValueError("names and geometries must have the same length")
        if not geometries:
            raise StartupConfigurationError("Neighborhood geometry contains no polygons")
        self._names: List[str] = list(names)
        self._tree = STRtree(list(geometries))

    def __len__(self) -> int:
        return len(self._names)

    def resolve(self, lon: float, lat: float) -> str:
        """Return the label of the first region covering ``(lon, lat)``.

        Points outside every region resolve to :data:`UNRESOLVED`.
        """
        hits = self._tree.query(Point(lon, lat), predicate="covered_by")
        if len(hits) == 0:
            return UNRESOLVED
        return self._names[int(min(hits))]

    @classmethod
    def from_geojson(cls, document: dict, name_property: str = "name") -> "GeoResolver":
        """Build a resolver from a GeoJSON ``FeatureCollection``.

        Features without geometry are skipped; features missing the label
        property make the document invalid.
        """
        features = document.get("features") if isinstance(document, dict) else None
        if not isinstance(features, list):
            raise StartupConfigurationError("Neighborhood geometry is not a GeoJSON FeatureCollection")

        names: List[str] = []
        geometries = []
        for i, feature in enumerate(features):
            geometry = feature.get("geometry")
            if not geometry:
                continue
            properties = feature.get("properties") or {}
            if name_property not in properties:
                raise StartupConfigurationError(
                    f"Feature {i} has no '{name_property}' property"
                )
            try:
                geom = shape(geometry)
            except (GEOSException, ValueError, KeyError, TypeError) as e:
                raise StartupConfigurationError(f"Feature {i} has invalid geometry: {e}") from e
            if geom.geom_type not in ("Polygon", "MultiPolygon"):
                continue
            names.append(str(properties[name_property]))
            geometries.append(geom)

        return cls(names, geometries)

    @classmethod
    def load(cls, source: str | Path, name_property: str = "name") -> "GeoResolver":
        """Fetch and index the neighborhood file at ``source``."""
        resolver = cls.from_geojson(fetch_geojson(source), name_property=name_property)
        logger.info("Loaded %d neighborhood polygons from %s", len(resolver), source)
        return resolver
