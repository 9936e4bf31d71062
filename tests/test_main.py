"""Tests for the HTTP surface and server bootstrap."""

import asyncio
import io
import json
import zipfile

import pytest
import uvicorn
from fastapi.testclient import TestClient

from trip_explorer import main
from trip_explorer.backup import BACKUP_ENTRY_NAME, build_backup_archive
from trip_explorer.main import TripExplorerServer, app, get_port

EXPECTED_HEALTH = {"status": "ok", "message": "Trip Explorer API v2"}


@pytest.fixture
def client():
    return TestClient(app)


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == EXPECTED_HEALTH

    def test_health_ignores_query_and_body(self, client):
        response = client.request("GET", "/health?verbose=1&x=y", content=b"{not json")

        assert response.status_code == 200
        assert response.json() == EXPECTED_HEALTH

    def test_cors_open(self, client):
        response = client.get("/health", headers={"Origin": "https://example.org"})

        assert response.headers["access-control-allow-origin"] in ("*", "https://example.org")

    def test_unknown_route_uses_default(self, client):
        assert client.get("/nope").status_code == 404


class TestBackupEndpoints:

    def test_export_download(self, client):
        state = {"all": [{"type": "Feature", "geometry": None, "properties": {}}]}

        response = client.post("/api/backup/export", json=state)

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/zip"
        assert response.headers["content-disposition"] == 'attachment; filename="trip_explorer_backup.zip"'
        with zipfile.ZipFile(io.BytesIO(response.content)) as zf:
            assert zf.namelist() == [BACKUP_ENTRY_NAME]
            assert json.loads(zf.read(BACKUP_ENTRY_NAME)) == state

    def test_import_merge(self, client):
        archive = build_backup_archive({"all": [{"id": 1}, {"id": 2}], "Day 2": []})

        response = client.post(
            "/api/backup/import",
            files={"file": ("trip_explorer_backup.zip", archive, "application/zip")},
            data={"mode": "merge", "current": json.dumps({"all": [{"id": 1}]})},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["mode"] == "merge"
        assert body["categories"] == ["all", "Day 2"]
        assert body["saved_features"] == {"all": [{"id": 1}, {"id": 2}], "Day 2": []}

    def test_import_defaults_to_override(self, client):
        archive = build_backup_archive({"all": [{"id": 9}]})

        response = client.post(
            "/api/backup/import",
            files={"file": ("backup.zip", archive, "application/zip")},
        )

        assert response.status_code == 200
        assert response.json()["saved_features"] == {"all": [{"id": 9}]}

    def test_import_bad_archive(self, client):
        response = client.post(
            "/api/backup/import",
            files={"file": ("backup.zip", b"garbage", "application/zip")},
        )

        assert response.status_code == 400
        assert "zip" in response.json()["detail"]

    def test_import_corrupt_archive(self, client):
        state = {"all": [{"id": i, "name": f"Stop {i}"} for i in range(200)]}
        data = bytearray(build_backup_archive(state))
        start = 30 + len(BACKUP_ENTRY_NAME) + 5
        for i in range(start, start + 20):
            data[i] ^= 0xFF

        response = client.post(
            "/api/backup/import",
            files={"file": ("backup.zip", bytes(data), "application/zip")},
        )

        assert response.status_code == 400

    def test_import_bad_current_state(self, client):
        archive = build_backup_archive({})

        response = client.post(
            "/api/backup/import",
            files={"file": ("backup.zip", archive, "application/zip")},
            data={"current": "[1, 2]"},
        )

        assert response.status_code == 400

    def test_import_unknown_mode(self, client):
        archive = build_backup_archive({})

        response = client.post(
            "/api/backup/import",
            files={"file": ("backup.zip", archive, "application/zip")},
            data={"mode": "replace"},
        )

        assert response.status_code == 422


class TestFeaturesEndpoint:

    def test_geojson_download(self, client):
        state = {
            "all": [
                {
                    "type": "Feature",
                    "geometry": {"type": "Point", "coordinates": [172.63, -43.53]},
                    "properties": {"name": "Christchurch"},
                }
            ]
        }

        response = client.post("/api/features/export/geojson", json=state)

        assert response.status_code == 200
        assert response.headers["content-disposition"] == 'attachment; filename="trip_explorer_features.zip"'
        with zipfile.ZipFile(io.BytesIO(response.content)) as zf:
            collection = json.loads(zf.read("all.geojson"))
        assert collection["type"] == "FeatureCollection"
        assert collection["features"] == state["all"]

    def test_geojson_null_geometry(self, client):
        state = {"all": [{"type": "Feature", "geometry": None, "properties": {"name": "A"}}]}

        response = client.post("/api/features/export/geojson", json=state)

        assert response.status_code == 200
        with zipfile.ZipFile(io.BytesIO(response.content)) as zf:
            collection = json.loads(zf.read("all.geojson"))
        assert collection["features"] == state["all"]

    def test_kml_download(self, client):
        state = {
            "Day 1": [
                {
                    "type": "Feature",
                    "geometry": {"type": "Polygon", "coordinates": [[[0, 0], [1, 0], [1, 1], [0, 0]]]},
                    "properties": {"name": "Campground", "style": {"color": "green"}},
                },
                {"type": "Feature", "geometry": None, "properties": {"name": "Unplaced"}},
            ]
        }

        response = client.post("/api/features/export/kml", json=state)

        assert response.status_code == 200
        assert response.headers["content-disposition"] == 'attachment; filename="trip_explorer_features.zip"'
        with zipfile.ZipFile(io.BytesIO(response.content)) as zf:
            assert zf.namelist() == ["Day 1.kml"]
            text = zf.read("Day 1.kml").decode("utf-8")
        assert "Campground" in text
        assert "MultiGeometry" in text
        assert "Unplaced" not in text

    def test_rejects_features_without_geometry(self, client):
        response = client.post("/api/features/export/geojson", json={"all": [{"type": "Feature"}]})

        assert response.status_code == 422


class TestServerBootstrap:

    def test_port_from_environment(self, monkeypatch):
        monkeypatch.setenv("PORT", "5000")
        assert get_port() == 5000

    def test_default_port(self, monkeypatch):
        monkeypatch.delenv("PORT", raising=False)
        assert get_port() == 3001

    def test_run_uses_configured_port(self, monkeypatch):
        ports = []
        monkeypatch.setenv("PORT", "5000")
        monkeypatch.setattr(TripExplorerServer, "run", lambda self, sockets=None: ports.append(self.config.port))

        main.run()

        assert ports == [5000]

    def test_run_keeps_access_log_off_stdout(self, monkeypatch):
        configs = []
        monkeypatch.setattr(TripExplorerServer, "run", lambda self, sockets=None: configs.append(self.config))

        main.run()

        assert configs[0].access_log is False

    def test_announces_port_after_bind(self, monkeypatch, capsys):
        async def bound(self, sockets=None):
            self.started = True

        monkeypatch.setattr(uvicorn.Server, "startup", bound)
        server = TripExplorerServer(uvicorn.Config(app, port=5000))

        asyncio.run(server.startup())

        assert capsys.readouterr().out == "Server running on port 5000\n"

    def test_no_announcement_without_bind(self, monkeypatch, capsys):
        async def failed(self, sockets=None):
            self.started = False

        monkeypatch.setattr(uvicorn.Server, "startup", failed)
        server = TripExplorerServer(uvicorn.Config(app, port=5000))

        asyncio.run(server.startup())

        assert capsys.readouterr().out == ""
