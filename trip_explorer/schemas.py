# trip_explorer/schemas.py

from enum import Enum
from pydantic import BaseModel, ConfigDict
from typing import List, Dict, Any, Optional, Union

class GeoJSONFeature(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "Feature"
    id: Optional[Union[str, int]] = None
    geometry: Optional[Dict[str, Any]]
    properties: Optional[Dict[str, Any]] = {}

class GeoJsonCollection(BaseModel):
    """A GeoJSON FeatureCollection that may carry its own properties."""
    type: str = "FeatureCollection"
    features: List[GeoJSONFeature]
    properties: Optional[Dict[str, Any]] = None

# Collection keyed by source name, None marks a collection that is absent
GeoJsonDataMap = Dict[str, Optional[GeoJsonCollection]]

# Saved features grouped by category. The backup exporter treats it as any JSON value.
SavedFeaturesState = Dict[str, List[Any]]

class HealthStatus(BaseModel):
    status: str
    message: str

class ImportMode(str, Enum):
    OVERRIDE = "override"
    APPEND = "append"
    MERGE = "merge"

class ImportResult(BaseModel):
    mode: ImportMode
    categories: List[str]
    saved_features: Dict[str, Any]
