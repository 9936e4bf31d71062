# trip_explorer/main.py

import json
import logging
import os
from typing import Any, Dict, List

import uvicorn
from dotenv import load_dotenv
from fastapi import Body, FastAPI, File, Form, HTTPException, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from .backup import BACKUP_FILENAME, BackupError, apply_import, export_backup, read_backup_archive
from .features import FEATURES_FILENAME, export_features, export_kml
from .schemas import GeoJSONFeature, HealthStatus, ImportMode, ImportResult

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3001
SERVICE_MESSAGE = "Trip Explorer API v2"

app = FastAPI(title="Trip Explorer API", version="2.0.0")

# Open CORS policy, any frontend origin may call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

def get_port() -> int:
    """Port to listen on, from the PORT environment variable."""
    return int(os.getenv("PORT", DEFAULT_PORT))

def zip_download(content: bytes, filename: str) -> Response:
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return Response(content=content, media_type="application/zip", headers=headers)

@app.get("/health", response_model=HealthStatus)
async def health():
    return HealthStatus(status="ok", message=SERVICE_MESSAGE)

@app.post("/api/backup/export")
async def backup_export(state: Any = Body(...)):
    """Download the saved features state as trip_explorer_backup.zip."""
    try:
        archive = await export_backup(state)
    except BackupError as e:
        logger.error(f"Backup export failed: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    return zip_download(archive, BACKUP_FILENAME)

@app.post("/api/backup/import", response_model=ImportResult)
async def backup_import(
    file: UploadFile = File(...),
    mode: ImportMode = Form(ImportMode.OVERRIDE),
    current: str = Form("{}"),
):
    """Restore a backup archive into the current saved features state."""
    try:
        try:
            current_state = json.loads(current)
        except json.JSONDecodeError as e:
            raise HTTPException(status_code=400, detail=f"Current state is not valid JSON: {e}")
        if not isinstance(current_state, dict):
            raise HTTPException(status_code=400, detail="Current state must be a JSON object.")

        imported = read_backup_archive(await file.read())
        saved_features = apply_import(current_state, imported, mode)
        return ImportResult(mode=mode, categories=list(saved_features), saved_features=saved_features)
    except HTTPException as e:
        raise e  # Re-raise known HTTPExceptions
    except BackupError as e:
        logger.error(f"Backup import of {file.filename} failed: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Unexpected error importing backup")
        raise HTTPException(
            status_code=500,
            detail=f"An unexpected error occurred: {str(e)}."
        )

def plain_features(state: Dict[str, List[GeoJSONFeature]]) -> Dict[str, List[Dict[str, Any]]]:
    """Saved features as sent by the client, geometry kept even when null."""
    plain = {}
    for category, features in state.items():
        plain[category] = []
        for feature in features:
            data = feature.model_dump(exclude_unset=True)
            data.setdefault("type", feature.type)
            data.setdefault("properties", feature.properties)
            plain[category].append(data)
    return plain

@app.post("/api/features/export/geojson")
async def features_export_geojson(state: Dict[str, List[GeoJSONFeature]] = Body(...)):
    """Download each saved category as a .geojson FeatureCollection in one zip."""
    try:
        archive = await export_features(plain_features(state))
    except Exception as e:
        logger.exception("GeoJSON export failed")
        raise HTTPException(
            status_code=400,
            detail=f"Error exporting GeoJSON: {str(e)}. Ensure the features are valid GeoJSON."
        )
    return zip_download(archive, FEATURES_FILENAME)

@app.post("/api/features/export/kml")
async def features_export_kml(state: Dict[str, List[GeoJSONFeature]] = Body(...)):
    """Download each saved category as a .kml document in one zip."""
    try:
        archive = await export_kml(plain_features(state))
    except Exception as e:
        logger.exception("KML export failed")
        raise HTTPException(
            status_code=400,
            detail=f"Error exporting KML: {str(e)}. Ensure the features are valid GeoJSON."
        )
    return zip_download(archive, FEATURES_FILENAME)

class TripExplorerServer(uvicorn.Server):
    """uvicorn server that announces the port once the socket is bound."""

    async def startup(self, sockets=None):
        await super().startup(sockets=sockets)
        if self.started:
            print(f"Server running on port {self.config.port}", flush=True)

def run():
    logging.basicConfig(level=logging.INFO)
    # Access log goes to stdout, keep stdout to the startup line
    config = uvicorn.Config(app, host="0.0.0.0", port=get_port(), log_level="info", access_log=False)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    TripExplorerServer(config).run()

if __name__ == "__main__":
    run()
