"""Remote log store server: Flask app over a PartitionStore."""

import logging

from flask import Flask, jsonify, request

from src.aggregation import analyze, flatten_corpus, report_to_dict, validate_window
from src.config import ServerConfig
from src.models import DAY_MS, now_ms
from src.partition_store import AccessDenied, PartitionStore
from src.remote_store import ACTOR_HEADER

logger = logging.getLogger(__name__)


def create_app(config: ServerConfig | None = None, store: PartitionStore | None = None) -> Flask:
    """Flask application factory."""
    app = Flask(__name__)

    if config is None:
        config = ServerConfig()
    if store is None:
        store = PartitionStore(
            admin_actors=config.admin_actors,
            state_file=config.state_file or None,
        )

    # Store components on app for access in tests
    app.config["components"] = {"config": config, "store": store}

    def _caller():
        return request.headers.get(ACTOR_HEADER) or None

    @app.errorhandler(AccessDenied)
    def handle_access_denied(exc):
        status = 401 if _caller() is None else 403
        logger.warning("Denied %s %s for %r: %s", request.method, request.path, _caller(), exc)
        return jsonify({"error": str(exc)}), status

    # --- Routes ---

    @app.route("/health")
    def health():
        return jsonify({"status": "healthy", "total_records": store.record_count()})

    @app.route("/logs/<actor_id>/<session_id>", methods=["POST"])
    def push_record(actor_id, session_id):
        record = request.get_json(silent=True)
        if not isinstance(record, dict):
            return jsonify({"error": "record must be a JSON object"}), 400
        record_id = store.push(_caller(), actor_id, session_id, record)
        return jsonify({"record_id": record_id}), 201

    @app.route("/logs/<actor_id>", methods=["GET"])
    def read_partition(actor_id):
        return jsonify(store.read_partition(_caller(), actor_id))

    @app.route("/logs/<actor_id>/<session_id>", methods=["DELETE"])
    def remove_session(actor_id, session_id):
        removed = store.remove_session(_caller(), actor_id, session_id)
        return jsonify({"removed": removed})

    @app.route("/logs", methods=["GET"])
    def read_all():
        return jsonify(store.read_all(_caller()))

    @app.route("/api/analytics", methods=["GET"])
    def analytics():
        try:
            days = validate_window(int(request.args.get("days", 7)))
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400

        tree = store.read_all(_caller())
        now = now_ms()
        records = flatten_corpus(tree, now - days * DAY_MS)
        report = analyze(
            records,
            days,
            generated_at=now,
            top_issues=config.top_issues,
            recent_errors=config.recent_errors,
        )
        return jsonify(report_to_dict(report))

    return app
