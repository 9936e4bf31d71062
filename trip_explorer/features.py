# trip_explorer/features.py

import asyncio
import copy
import io
import json
import logging
import zipfile
from typing import Any, Dict, List

import geojson_rewind
import simplekml
from markdownify import markdownify

logger = logging.getLogger(__name__)

FEATURES_FILENAME = "trip_explorer_features.zip"

# App-only properties that have no meaning outside Trip Explorer
KML_DROPPED_PROPERTIES = ("id", "style", "images", "tripNotes")
NOTES_SEPARATOR = "\n\n--------------------\n\n"

def entry_name(category: str, extension: str) -> str:
    """Archive entry name for a category, flattened so it cannot leave the archive root."""
    safe = category.replace("/", "_").replace("\\", "_").strip() or "features"
    return f"{safe}.{extension}"

def _write_archive(entries) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, text in entries:
            zf.writestr(name, text)
    return buf.getvalue()

def to_feature_collection(features: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Wrap a category's features in a FeatureCollection with RFC 7946 winding."""
    features = copy.deepcopy(features)
    for feature in features:
        # Null geometry is valid GeoJSON but geojson_rewind cannot walk it
        if feature.get("geometry") is not None:
            # rfc7946=True ensures right-hand rule (exterior rings counterclockwise)
            feature["geometry"] = geojson_rewind.rewind(feature["geometry"], rfc7946=True)
    return {
        "type": "FeatureCollection",
        "features": features,
    }

def build_features_archive(state: Dict[str, List[Dict[str, Any]]]) -> bytes:
    """Write one <category>.geojson entry per saved-features category."""
    return _write_archive(
        (entry_name(category, "geojson"), json.dumps(to_feature_collection(features), ensure_ascii=False))
        for category, features in state.items()
    )

async def export_features(state: Dict[str, List[Dict[str, Any]]]) -> bytes:
    archive = await asyncio.to_thread(build_features_archive, state)
    logger.info(f"Built GeoJSON archive with {len(state)} categories ({len(archive)} bytes)")
    return archive

def format_for_kml(feature: Dict[str, Any]) -> Dict[str, Any]:
    """Fold trip notes into the description and drop app-only properties."""
    feature = copy.deepcopy(feature)
    properties = feature.get("properties") or {}

    notes = properties.get("tripNotes")
    if notes:
        markdown = markdownify(notes).strip()
        if markdown:
            properties["description"] = f"{markdown}{NOTES_SEPARATOR}{properties.get('description', '')}"

    for key in KML_DROPPED_PROPERTIES:
        properties.pop(key, None)
    feature["properties"] = properties
    return feature

def outline_polygons(feature: Dict[str, Any]) -> Dict[str, Any]:
    """Replace Polygon/MultiPolygon geometry with a MultiLineString of outer rings."""
    geometry = feature.get("geometry")
    if not geometry:
        return feature
    if geometry["type"] == "Polygon":
        outer_rings = [geometry["coordinates"][0]]
    elif geometry["type"] == "MultiPolygon":
        outer_rings = [polygon[0] for polygon in geometry["coordinates"]]
    else:
        return feature
    return {**feature, "geometry": {"type": "MultiLineString", "coordinates": outer_rings}}

def _coords(positions):
    return [tuple(position) for position in positions]

def _simple_parts(geometry: Dict[str, Any]):
    """Flatten multi geometries and collections into Point, LineString and Polygon parts."""
    kind = geometry["type"]
    if kind in ("Point", "LineString", "Polygon"):
        yield geometry
    elif kind in ("MultiPoint", "MultiLineString", "MultiPolygon"):
        for coordinates in geometry["coordinates"]:
            yield {"type": kind[len("Multi"):], "coordinates": coordinates}
    elif kind == "GeometryCollection":
        for member in geometry.get("geometries", []):
            yield from _simple_parts(member)
    else:
        raise ValueError(f"Unsupported geometry type: {kind}")

def _add_simple(container, geometry: Dict[str, Any], **kwargs):
    kind = geometry["type"]
    coordinates = geometry["coordinates"]
    if kind == "Point":
        return container.newpoint(coords=[tuple(coordinates)], **kwargs)
    if kind == "LineString":
        return container.newlinestring(coords=_coords(coordinates), **kwargs)
    return container.newpolygon(
        outerboundaryis=_coords(coordinates[0]),
        innerboundaryis=[_coords(ring) for ring in coordinates[1:]],
        **kwargs,
    )

def _add_geometry(kml, geometry: Dict[str, Any], **kwargs):
    if geometry["type"] in ("Point", "LineString", "Polygon"):
        return _add_simple(kml, geometry, **kwargs)
    multi = kml.newmultigeometry(**kwargs)
    for part in _simple_parts(geometry):
        _add_simple(multi, part)
    return multi

def to_kml(features: List[Dict[str, Any]]) -> str:
    """Render a category's features as a KML document."""
    kml = simplekml.Kml()
    for feature in features:
        feature = outline_polygons(format_for_kml(feature))
        geometry = feature.get("geometry")
        if not geometry:
            continue
        properties = feature["properties"]
        kwargs = {}
        if properties.get("name") is not None:
            kwargs["name"] = str(properties["name"])
        if properties.get("description"):
            kwargs["description"] = str(properties["description"])

        placemark = _add_geometry(kml, geometry, **kwargs)
        for key, value in properties.items():
            text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
            placemark.extendeddata.newdata(name=key, value=text)
    return kml.kml()

def build_kml_archive(state: Dict[str, List[Dict[str, Any]]]) -> bytes:
    """Write one <category>.kml entry per saved-features category."""
    return _write_archive(
        (entry_name(category, "kml"), to_kml(features))
        for category, features in state.items()
    )

async def export_kml(state: Dict[str, List[Dict[str, Any]]]) -> bytes:
    archive = await asyncio.to_thread(build_kml_archive, state)
    logger.info(f"Built KML archive with {len(state)} categories ({len(archive)} bytes)")
    return archive
