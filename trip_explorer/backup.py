# trip_explorer/backup.py

import asyncio
import io
import json
import logging
import zipfile
import zlib
from typing import Any, Dict

from .schemas import ImportMode

logger = logging.getLogger(__name__)

BACKUP_ENTRY_NAME = "trip_explorer_backup.json"
BACKUP_FILENAME = "trip_explorer_backup.zip"

class BackupError(ValueError):
    """Base error for backup export and import."""

class BackupSerializationError(BackupError):
    """The state could not be represented as JSON."""

class BackupFormatError(BackupError):
    """The uploaded file is not a readable backup archive."""

def serialize_state(state: Any) -> str:
    """Serialize the saved state as pretty-printed JSON (two-space indent)."""
    try:
        return json.dumps(state, indent=2, ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError, RecursionError) as e:
        raise BackupSerializationError(f"State is not JSON serializable: {e}") from e

def build_backup_archive(state: Any) -> bytes:
    """Package the state into a zip archive holding a single JSON entry."""
    # Serialize before touching the archive so a bad state leaves nothing behind
    payload = serialize_state(state)
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(BACKUP_ENTRY_NAME, payload.encode("utf-8"))
    return buf.getvalue()

async def export_backup(state: Any) -> bytes:
    """Build the backup archive without blocking the event loop."""
    archive = await asyncio.to_thread(build_backup_archive, state)
    logger.info(f"Built backup archive ({len(archive)} bytes)")
    return archive

def read_backup_archive(data: bytes) -> Dict[str, Any]:
    """Load the saved state from the first JSON entry of a backup archive."""
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            entry = next((name for name in zf.namelist() if name.endswith(".json")), None)
            if entry is None:
                raise BackupFormatError("Archive does not contain a JSON file.")
            raw = zf.read(entry)
    except zipfile.BadZipFile as e:
        raise BackupFormatError(f"File is not a zip archive: {e}") from e
    except (zlib.error, EOFError) as e:
        raise BackupFormatError(f"Archive data is corrupt: {e}") from e
    except (RuntimeError, NotImplementedError) as e:
        # Encrypted entries and unsupported compression methods
        raise BackupFormatError(f"Archive entry cannot be read: {e}") from e

    try:
        imported = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise BackupFormatError(f"Backup entry {entry} is not valid JSON: {e}") from e

    if not isinstance(imported, dict):
        raise BackupFormatError("Backup content must be a JSON object.")
    return imported

def _merge_features(existing, incoming):
    merged = list(existing)
    for feature in incoming:
        if feature not in merged:
            merged.append(feature)
    return merged

def apply_import(current: Dict[str, Any], imported: Dict[str, Any], mode: ImportMode) -> Dict[str, Any]:
    """Combine an imported state with the current one according to the import mode."""
    mode = ImportMode(mode)
    if mode is ImportMode.OVERRIDE:
        return dict(imported)
    if mode is ImportMode.APPEND:
        return {**current, **imported}

    merged = dict(current)
    for category, features in imported.items():
        if isinstance(merged.get(category), list) and isinstance(features, list):
            merged[category] = _merge_features(merged[category], features)
        else:
            merged[category] = features
    return merged
