import math
import os
import threading
import traceback
from datetime import datetime

from flask import Flask, request, jsonify
from flask_cors import CORS

from call_operations import get_call_operations
from config import Settings
from models import CALL_OUTCOMES, as_utc
from pipeline import build_coordinator

# =============================================================================
# CALL MONITOR ANALYSIS BACKEND
# =============================================================================
#
# Receives live audio chunks and uploaded recordings, runs them through
# transcription, emotion scoring, context analysis and suggestion rules, and
# serves the stored results to the dashboards.
#
# Main Endpoints:
# - POST /api/live: Analyze one chunk of a live call
# - POST /api/live/end: Close a live call
# - POST /api/upload: Analyze a complete recording
# - GET /api/analytics: Aggregate counters over recent calls
# - GET /api/calls, /api/calls/<id>: Call list and call details
# - POST /api/suggestions/<id>/feedback: Record whether a suggestion was followed
# =============================================================================

ANALYTICS_SCAN_LIMIT = 100
RECENT_CALLS = 10

app = Flask(__name__)
CORS(app)  # Enable CORS for all routes

_pipeline_lock = threading.Lock()


def get_pipeline():
    """Return the configured coordinator, building it from the environment on first use."""
    with _pipeline_lock:
        pipeline = app.config.get("PIPELINE")
        if pipeline is None:
            settings = Settings.from_env()
            for problem in settings.validate():
                print(f"[CONFIG ERROR] {problem}")
            pipeline = build_coordinator(settings, get_call_operations(settings))
            app.config["PIPELINE"] = pipeline
        return pipeline


def round_half_up(value):
    return int(math.floor(value + 0.5))


def parse_iso_datetime(value):
    """ISO-8601 query value to an aware UTC datetime; naive values are taken as UTC."""
    if not value:
        return None
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    return as_utc(datetime.fromisoformat(value))


@app.route('/test', methods=['GET'])
def test_endpoint():
    return jsonify({"message": "Call monitor backend is running!"}), 200


@app.route('/api/live', methods=['POST'])
def live_chunk():
    print("[ROUTE] POST /api/live")

    audio = request.files.get('audio')
    call_id = request.form.get('callId')

    if not audio or not call_id:
        return jsonify({"error": "Missing audio or callId"}), 400

    try:
        audio_bytes = audio.read()
        print(f"[ROUTE] Received audio: {len(audio_bytes)} bytes for call {call_id} ({audio.mimetype})")

        update = get_pipeline().process_chunk(call_id, audio_bytes, filename=audio.filename)
        return jsonify(update.to_dict()), 200

    except Exception as e:
        print(f"[ERROR] Live processing error: {e}")
        traceback.print_exc()
        return jsonify({"error": "Failed to process audio", "details": str(e)}), 500


@app.route('/api/live/end', methods=['POST'])
def end_live_call():
    print("[ROUTE] POST /api/live/end")

    data = request.get_json(silent=True) or request.form
    call_id = data.get('callId')
    outcome = data.get('outcome') or None

    if not call_id:
        return jsonify({"error": "callId is required"}), 400
    if outcome is not None and outcome not in CALL_OUTCOMES:
        return jsonify({"error": f"outcome must be one of: {', '.join(CALL_OUTCOMES)}"}), 400

    try:
        call = get_pipeline().end_session(call_id, outcome=outcome)
        if call is None:
            return jsonify({"error": "No record found for the given callId"}), 404
        return jsonify({"success": True, "call": call.to_dict()}), 200

    except Exception as e:
        print(f"[ERROR] Failed to end call {call_id}: {e}")
        traceback.print_exc()
        return jsonify({"error": "Failed to end call", "details": str(e)}), 500


@app.route('/api/upload', methods=['POST'])
def upload_recording():
    print("[ROUTE] POST /api/upload")

    audio = request.files.get('audio')
    if not audio:
        return jsonify({"error": "No audio file provided"}), 400

    try:
        result = get_pipeline().analyze_recording(audio.read(), filename=audio.filename)
        return jsonify(result), 200

    except Exception as e:
        print(f"[ERROR] Upload processing error: {e}")
        traceback.print_exc()
        return jsonify({"error": "Failed to process audio", "details": str(e)}), 500


@app.route('/api/analytics', methods=['GET'])
def analytics():
    print("[ROUTE] GET /api/analytics")
    try:
        store = get_pipeline().store
        calls = store.calls.list(limit=ANALYTICS_SCAN_LIMIT)

        total_calls = len(calls)
        successful_calls = len([c for c in calls if c.outcome == "successful"])
        success_rate = (successful_calls / total_calls) * 100 if total_calls > 0 else 0

        metrics = store.metrics.get_by_call_ids([c.id for c in calls]) if calls else []
        avg_satisfaction = sum(m.satisfaction for m in metrics) / len(metrics) if metrics else 0

        return jsonify({
            "totalCalls": total_calls,
            "successRate": round_half_up(success_rate),
            "avgSatisfaction": round_half_up(avg_satisfaction),
            "recentCalls": [c.to_dict() for c in calls[:RECENT_CALLS]],
        }), 200

    except Exception as e:
        print(f"[ERROR] Analytics error: {e}")
        traceback.print_exc()
        return jsonify({"error": "Failed to fetch analytics"}), 500


@app.route('/api/calls', methods=['GET'])
def list_calls():
    print("[ROUTE] GET /api/calls")
    try:
        limit = int(request.args.get('limit', ANALYTICS_SCAN_LIMIT))
    except ValueError:
        return jsonify({"error": "limit must be an integer"}), 400
    limit = max(1, min(limit, ANALYTICS_SCAN_LIMIT))

    outcome = request.args.get('outcome') or None
    if outcome is not None and outcome not in CALL_OUTCOMES:
        return jsonify({"error": f"outcome must be one of: {', '.join(CALL_OUTCOMES)}"}), 400

    try:
        start_time_from = parse_iso_datetime(request.args.get('startTimeFrom'))
        start_time_to = parse_iso_datetime(request.args.get('startTimeTo'))
    except ValueError:
        return jsonify({"error": "startTimeFrom and startTimeTo must be ISO-8601 timestamps"}), 400

    try:
        calls = get_pipeline().store.calls.list(
            limit=limit,
            agent_id=request.args.get('agentId') or None,
            customer_id=request.args.get('customerId') or None,
            outcome=outcome,
            start_time_from=start_time_from,
            start_time_to=start_time_to,
        )
        return jsonify({"calls": [c.to_dict() for c in calls]}), 200
    except Exception as e:
        print(f"[DB ERROR] {e}")
        return jsonify({"error": "Database error occurred"}), 500


@app.route('/api/calls/<call_id>', methods=['GET'])
def get_call(call_id):
    print(f"[ROUTE] GET /api/calls/{call_id}")
    try:
        details = get_pipeline().get_call_details(call_id)
        if not details:
            return jsonify({"error": "No record found for the given callId"}), 404
        return jsonify(details), 200
    except Exception as e:
        print(f"[DB ERROR] {e}")
        return jsonify({"error": "Database error occurred"}), 500


@app.route('/api/suggestions/<suggestion_id>/feedback', methods=['POST'])
def suggestion_feedback(suggestion_id):
    print(f"[ROUTE] POST /api/suggestions/{suggestion_id}/feedback")
    data = request.get_json(silent=True) or {}
    was_followed = data.get('wasFollowed')

    if not isinstance(was_followed, bool):
        return jsonify({"error": "wasFollowed must be true or false"}), 400

    try:
        suggestion = get_pipeline().store.suggestions.update_feedback(suggestion_id, was_followed)
        if suggestion is None:
            return jsonify({"error": "No suggestion found for the given id"}), 404
        return jsonify({"success": True, "suggestion": suggestion.to_dict()}), 200
    except Exception as e:
        print(f"[DB ERROR] {e}")
        return jsonify({"error": "Database error occurred"}), 500


if __name__ == '__main__':
    port = int(os.getenv('PORT', os.getenv('FLASK_PORT', 5000)))
    debug = os.getenv('FLASK_DEBUG', 'False').lower() == 'true'
    host = '0.0.0.0'

    print(f"[SERVER] Starting Flask server at http://{host}:{port}")

    try:
        app.run(
            host=host,
            port=port,
            debug=debug,
            threaded=True
        )
    except Exception as e:
        print(f"[SERVER ERROR] Failed to start server: {e}")
    finally:
        print("[SERVER] Server stopped")
