"""Tests for the Flask JSON API."""

import pytest

from flowlog.config import ConfigManager
from flowlog.models import format_timestamp
from web.app import create_app


@pytest.fixture
def client(controller):
    app = create_app(controller)
    app.config["TESTING"] = True
    return app.test_client()


class TestRecordingRoutes:

    def test_start_status_stop(self, client, controller):
        response = client.post("/api/recording/start")
        assert response.status_code == 200
        session_id = response.get_json()["session_id"]

        controller.state.capture.capture_frame()
        status = client.get("/api/recording/status").get_json()
        assert status == {"active": True, "session_id": session_id, "frame_count": 1}

        stopped = client.post("/api/recording/stop").get_json()
        assert stopped["success"]
        assert stopped["frame_count"] == 1

    def test_duplicate_start_conflicts(self, client):
        client.post("/api/recording/start")

        response = client.post("/api/recording/start")

        assert response.status_code == 409
        assert response.get_json()["message"] == "Recording already active"

    def test_stop_while_idle_conflicts(self, client):
        assert client.post("/api/recording/stop").status_code == 409


class TestSessionRoutes:

    def test_list_and_analyses(self, client, controller):
        client.post("/api/recording/start")
        controller.state.capture.capture_frame()
        session_id = client.post("/api/recording/stop").get_json()["session_id"]

        sessions = client.get("/api/sessions").get_json()
        analyses = client.get(f"/api/sessions/{session_id}/analyses").get_json()

        assert sessions["count"] == 1
        assert sessions["sessions"][0]["session_id"] == session_id
        assert analyses["count"] == 1
        assert analyses["analyses"][0]["analysis_type"] == "final_analysis"

    def test_list_rejects_bad_paging(self, client):
        assert client.get("/api/sessions?limit=abc").status_code == 400

    def test_delete_unknown_session(self, client):
        assert client.delete("/api/sessions/missing").status_code == 404

    def test_delete_session(self, client, store, clock):
        store.create_session("old", format_timestamp(clock()))
        store.finalize_session("old", format_timestamp(clock()), 0)

        response = client.delete("/api/sessions/old")

        assert response.status_code == 200
        assert not store.session_exists("old")


class TestAnalysisAndSettingsRoutes:

    def test_trigger_with_nothing_to_analyze(self, client):
        result = client.post("/api/analysis/trigger").get_json()
        assert result == {"success": False, "message": "No sessions to analyze"}

    def test_trigger_unknown_session(self, client):
        result = client.post("/api/analysis/trigger", json={"session_id": "missing"}).get_json()
        assert result["success"] is False

    def test_settings_round_trip(self, client, controller):
        response = client.post("/api/settings", json={"ai_provider": "ollama"})

        assert response.status_code == 200
        assert controller.registry.current_name == "ollama"
        assert client.get("/api/settings").get_json() == {"ai_provider": "ollama"}

    def test_settings_requires_object(self, client):
        assert client.post("/api/settings", json=["ollama"]).status_code == 400

    def test_settings_unknown_provider(self, client):
        assert client.post("/api/settings", json={"ai_provider": "nope"}).status_code == 400


class TestStorageRoutes:

    def test_stats(self, client):
        stats = client.get("/api/stats").get_json()
        assert stats["sessions"] == 0
        assert stats["unanalyzed_session_ids"] == []

    def test_cleanup(self, client):
        response = client.post("/api/storage/cleanup", json={"retention_days": 3})
        assert response.get_json() == {"success": True, "deleted_sessions": 0}

    def test_cleanup_rejects_bad_retention(self, client):
        assert client.post("/api/storage/cleanup", json={"retention_days": "soon"}).status_code == 400

    def test_keep_processed(self, client):
        result = client.post("/api/storage/keep-processed").get_json()
        assert result == {"success": True, "cleaned_sessions": 0, "deleted_frames": 0}


class TestTimelineRoute:

    def test_timeline(self, client, controller):
        client.post("/api/recording/start")
        controller.state.capture.capture_frame()
        session_id = client.post("/api/recording/stop").get_json()["session_id"]

        data = client.get("/api/timeline").get_json()

        assert data["count"] == 1
        assert data["timeline"][0]["session_id"] == session_id
        assert data["timeline"][0]["analysis_status"] == "Analyzed"

    def test_timeline_rejects_bad_paging(self, client):
        assert client.get("/api/timeline?offset=x").status_code == 400


class TestConfigRoutes:

    @pytest.fixture
    def config_client(self, controller, tmp_path):
        app = create_app(controller, ConfigManager(tmp_path / "config.yaml"))
        app.config["TESTING"] = True
        return app.test_client()

    def test_get_config(self, config_client):
        data = config_client.get("/api/config").get_json()

        assert data["processing"]["background_minutes"] == 5
        assert "capture" in data

    def test_update_applies_to_next_session(self, config_client):
        response = config_client.patch("/api/config", json={
            "section": "processing", "key": "background_minutes", "value": 10,
        })
        data = response.get_json()

        assert data["success"] is True
        assert data["requires_restart"] is False
        assert data["config"]["processing"]["background_minutes"] == 10

    def test_update_server_setting_requires_restart(self, config_client):
        data = config_client.patch("/api/config", json={
            "section": "web", "key": "port", "value": 5050,
        }).get_json()

        assert data["success"] is True
        assert data["requires_restart"] is True

    def test_invalid_value_not_applied(self, config_client):
        data = config_client.patch("/api/config", json={
            "section": "processing", "key": "display_minutes", "value": 7,
        }).get_json()

        assert data["success"] is False
        assert data["config"]["processing"]["display_minutes"] == 30

    def test_missing_fields(self, config_client):
        response = config_client.patch("/api/config", json={"section": "web", "key": "port"})
        assert response.status_code == 400

    def test_routes_absent_without_config_manager(self, client):
        assert client.get("/api/config").status_code == 404
