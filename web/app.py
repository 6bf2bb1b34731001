#!/usr/bin/env python3

from typing import Optional

from flask import Flask, jsonify, request

from flowlog.config import ConfigManager
from flowlog.controller import RecordingController

# Settings read once when the daemon starts; the rest apply to the next session.
RESTART_KEYS = {
    'capture': ['format', 'quality', 'monitor'],
    'provider': ['name', 'api_key', 'gemini_model', 'ollama_model', 'ollama_host', 'timeout_seconds'],
    'storage': ['data_dir'],
    'web': ['host', 'port'],
    'logging': ['level', 'log_to_file'],
}


def create_app(controller: RecordingController,
               config_manager: Optional[ConfigManager] = None) -> Flask:
    """Build the Flask app exposing the recording controller as JSON endpoints.

    The configuration routes are only registered when a ConfigManager is given.
    """
    app = Flask(__name__)
    app.config["controller"] = controller

    @app.route('/api/recording/start', methods=['POST'])
    def start_recording():
        result = controller.start_session()
        return jsonify(result), 200 if result["success"] else 409

    @app.route('/api/recording/stop', methods=['POST'])
    def stop_recording():
        result = controller.stop_session()
        return jsonify(result), 200 if result["success"] else 409

    @app.route('/api/recording/status')
    def recording_status():
        return jsonify(controller.get_status())

    @app.route('/api/sessions')
    def list_sessions():
        """List sessions, newest first.

        Query params:
            limit: Maximum number of sessions (default 50)
            offset: Number of sessions to skip (default 0)
        """
        try:
            limit = int(request.args.get('limit', 50))
            offset = int(request.args.get('offset', 0))
        except ValueError:
            return jsonify({"error": "limit and offset must be integers"}), 400

        sessions = controller.list_sessions(limit, offset)
        return jsonify({"sessions": sessions, "count": len(sessions)})

    @app.route('/api/sessions/<session_id>', methods=['DELETE'])
    def delete_session(session_id):
        result = controller.delete_session(session_id)
        if result["success"]:
            return jsonify(result)
        status = 404 if "not found" in result["message"] else 409
        return jsonify(result), status

    @app.route('/api/sessions/<session_id>/analyses')
    def session_analyses(session_id):
        analyses = controller.get_session_analyses(session_id)
        return jsonify({"session_id": session_id, "analyses": analyses, "count": len(analyses)})

    @app.route('/api/analysis/trigger', methods=['POST'])
    def trigger_analysis():
        """Analyze a session on demand.

        Request body (optional):
            {"session_id": "2025-01-01_09-00-00"}

        Without a session id the oldest unanalyzed completed session is used.
        """
        data = request.get_json(silent=True) or {}
        result = controller.trigger_analysis(data.get('session_id'))
        return jsonify(result)

    @app.route('/api/settings', methods=['GET'])
    def get_settings():
        return jsonify(controller.get_settings())

    @app.route('/api/settings', methods=['POST'])
    def save_settings():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "Request body must be a JSON object"}), 400
        result = controller.save_settings(data)
        return jsonify(result), 200 if result["success"] else 400

    @app.route('/api/stats')
    def stats():
        try:
            return jsonify(controller.get_stats())
        except RuntimeError as e:
            return jsonify({"error": f"Failed to get stats: {str(e)}"}), 500

    @app.route('/api/storage/cleanup', methods=['POST'])
    def cleanup_storage():
        data = request.get_json(silent=True) or {}
        retention_days = data.get('retention_days')
        if retention_days is not None:
            if isinstance(retention_days, bool) or not isinstance(retention_days, int) or retention_days < 0:
                return jsonify({"error": "retention_days must be a non-negative integer"}), 400
        return jsonify(controller.cleanup_old_data(retention_days))

    @app.route('/api/storage/keep-processed', methods=['POST'])
    def keep_processed():
        return jsonify(controller.keep_only_processed())

    @app.route('/api/timeline')
    def timeline():
        """Sessions newest first with title, summary, segments and analysis status."""
        try:
            limit = int(request.args.get('limit', 50))
            offset = int(request.args.get('offset', 0))
        except ValueError:
            return jsonify({"error": "limit and offset must be integers"}), 400

        items = controller.get_timeline(limit, offset)
        return jsonify({"timeline": items, "count": len(items)})

    if config_manager is None:
        return app

    @app.route('/api/config', methods=['GET'])
    def get_config():
        """Return current configuration.

        Returns:
            JSON object with all configuration sections
        """
        return jsonify(config_manager.to_dict())

    @app.route('/api/config', methods=['PATCH'])
    def update_config():
        """Update one configuration value.

        Request body:
            {
                "section": "processing",
                "key": "background_minutes",
                "value": 10
            }

        Returns:
            {
                "success": true/false,
                "requires_restart": true/false,
                "config": {...}
            }
        """
        data = request.get_json(silent=True) or {}

        if not isinstance(data, dict) or not all(k in data for k in ['section', 'key', 'value']):
            return jsonify({"error": "Missing required fields: section, key, value"}), 400

        section = data['section']
        key = data['key']
        try:
            changed = config_manager.update(section, key, data['value'])
        except OSError as e:
            return jsonify({"error": f"Failed to update config: {str(e)}"}), 500

        return jsonify({
            "success": changed,
            "requires_restart": key in RESTART_KEYS.get(section, []),
            "config": config_manager.to_dict(),
        })

    return app
