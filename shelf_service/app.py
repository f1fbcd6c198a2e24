import os
import logging
from datetime import datetime
from functools import wraps

from flask import Flask, jsonify, request, abort
from flask_cors import CORS

from .config import Config
from .engine import ReservationEngine
from .errors import LibraryError, ValidationError
from .models import READER
from .notifications import to_dict as notification_to_dict
from .sweeper import ExpirySweeper

logger = logging.getLogger(__name__)


# ----------------- serializers -----------------

def _iso(value):
    return value.isoformat() if value else None


def lease_to_dict(lease):
    return {
        "lease_id": lease.id,
        "book_id": lease.book_id,
        "holder_id": lease.holder_id,
        "status": lease.status,
        "created_at": _iso(lease.created_at),
        "deadline": _iso(lease.deadline),
        "closed_at": _iso(lease.closed_at),
    }


def alert_to_dict(alert):
    return {
        "alert_id": alert.id,
        "shelf_id": alert.shelf_id,
        "shelf_number": alert.shelf_number,
        "alert_type": alert.alert_type,
        "direction": alert.direction,
        "magnitude": alert.magnitude,
        "book_id": alert.book_id,
        "expected_shelf_number": alert.expected_shelf_number,
        "message": alert.message,
        "created_at": _iso(alert.created_at),
        "resolved_at": _iso(alert.resolved_at),
        "resolved_by": alert.resolved_by,
    }


def _parse_time(value, field):
    if value is None or value == "":
        return None
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        return datetime.fromisoformat(value)
    except (AttributeError, ValueError):
        raise ValidationError(f"{field} must be an ISO-8601 timestamp")


def _require(data, *fields):
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"{', '.join(missing)} required")


def _number(data, field, cast, **identifiers):
    value = data.get(field)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", **identifiers)
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", **identifiers)


def _int(data, field, **identifiers):
    return _number(data, field, int, **identifiers)


def _float(data, field, **identifiers):
    return _number(data, field, float, **identifiers)


def create_app(config=Config, engine=None):
    app = Flask(__name__)
    app.config.from_object(config)
    CORS(app)

    if engine is None:
        engine = ReservationEngine(config)
    app.extensions["reservation_engine"] = engine

    def require_api_key(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            sent_key = request.headers.get("X-API-Key")
            expected = app.config.get("SERVICE_API_KEY")
            if not expected or sent_key != expected:
                logger.warning("Invalid API key on %s", request.path)
                abort(401, description="Invalid or missing service API key")
            return func(*args, **kwargs)

        return wrapper

    @app.errorhandler(LibraryError)
    def handle_library_error(err):
        if err.http_status >= 500:
            logger.warning("%s: %s %s", request.path, err.code, err.identifiers)
        return jsonify(err.to_dict()), err.http_status

    # ----------------- health -----------------

    @app.get("/api/health")
    def health():
        return jsonify({"status": "ok", "service": "shelf_service"})

    # ----------------- identity & catalog maintenance -----------------

    @app.post("/api/users")
    @require_api_key
    def upsert_user():
        """
        Identity provider sync.

        Request JSON:
          {"id": "u-1", "name": "Alice", "email": "...", "role": "reader|staff|administrator"}
        """
        data = request.get_json(force=True)
        _require(data, "id", "name")
        user = engine.upsert_user(
            data["id"], data["name"], data.get("email"), data.get("role", READER)
        )
        return jsonify({"id": user.id, "role": user.role}), 200

    @app.post("/api/shelves")
    @require_api_key
    def upsert_shelf():
        data = request.get_json(force=True)
        _require(data, "shelf_number")
        shelf = engine.upsert_shelf(
            _int(data, "shelf_number"),
            capacity=_float(data, "capacity"),
            is_active=data.get("is_active"),
            current_mass=_float(data, "current_mass"),
        )
        return jsonify({"id": shelf.id, "shelf_number": shelf.shelf_number}), 200

    @app.post("/api/books")
    @require_api_key
    def upsert_book():
        data = request.get_json(force=True)
        _require(data, "title", "mass")
        book = engine.upsert_book(
            data["title"],
            _float(data, "mass", book_id=data.get("id")),
            shelf_id=_int(data, "shelf_id"),
            author=data.get("author"),
            isbn=data.get("isbn"),
            book_id=_int(data, "id"),
        )
        return jsonify({"id": book.id, "status": book.status}), 201

    @app.get("/api/books/<int:book_id>")
    def get_book_state(book_id):
        return jsonify(engine.book_state(book_id))

    # ----------------- reservations -----------------

    @app.post("/api/reservations")
    def create_reservation():
        data = request.get_json(force=True)
        _require(data, "book_id", "holder_id")
        book_id = _int(data, "book_id")
        lease = engine.create_reservation(
            book_id, data["holder_id"], _float(data, "ttl_seconds", book_id=book_id)
        )
        return jsonify(lease_to_dict(lease)), 201

    @app.post("/api/reservations/<int:lease_id>/cancel")
    def cancel_reservation(lease_id):
        data = request.get_json(force=True)
        _require(data, "actor_id")
        lease = engine.cancel_reservation(lease_id, data["actor_id"])
        return jsonify(lease_to_dict(lease)), 200

    @app.post("/api/unlock-events")
    @require_api_key
    def register_unlock():
        """
        From the door-unlock coordinator: user is expected at a shelf until
        ``valid_until``, to pick up or return a book.
        """
        data = request.get_json(force=True)
        _require(data, "user_id", "shelf_id", "action", "valid_until")
        event, lease = engine.register_unlock(
            data["user_id"],
            _int(data, "shelf_id"),
            data["action"],
            _parse_time(data["valid_until"], "valid_until"),
            book_id=_int(data, "book_id"),
        )
        return (
            jsonify(
                {
                    "unlock_event_id": event.id,
                    "lease": lease_to_dict(lease) if lease else None,
                }
            ),
            201,
        )

    @app.post("/api/sweep")
    @require_api_key
    def sweep():
        expired = engine.sweep_expired()
        return jsonify({"expired": [lease.id for lease in expired]}), 200

    # ----------------- sensors -----------------

    @app.post("/api/shelves/<int:shelf_id>/readings")
    @require_api_key
    def ingest_reading(shelf_id):
        data = request.get_json(force=True)
        if "mass" not in data:
            raise ValidationError("mass required", shelf_id=shelf_id)
        result = engine.ingest_weight_reading(
            shelf_id, data["mass"], _parse_time(data.get("observed_at"), "observed_at")
        )
        return jsonify(result.to_dict()), 200

    # ----------------- notifications -----------------

    @app.get("/api/users/<user_id>/notifications")
    def list_notifications(user_id):
        cursor = request.args.get("cursor", type=int)
        limit = request.args.get("limit", default=50, type=int)
        since = _parse_time(request.args.get("since"), "since")
        page = engine.list_notifications(user_id, since=since, cursor=cursor, limit=limit)
        return jsonify(
            {
                "items": [notification_to_dict(n) for n in page.items],
                "next_cursor": page.next_cursor,
            }
        )

    @app.get("/api/users/<user_id>/notifications/unread-count")
    def unread_count(user_id):
        return jsonify({"unread": engine.unread_count(user_id)})

    @app.post("/api/users/<user_id>/notifications/read-all")
    def mark_all_read(user_id):
        return jsonify({"updated": engine.mark_all_read(user_id)})

    @app.post("/api/notifications/<int:notification_id>/read")
    def mark_read(notification_id):
        data = request.get_json(force=True)
        _require(data, "user_id")
        n = engine.mark_read(notification_id, data["user_id"])
        return jsonify(notification_to_dict(n))

    # ----------------- alerts -----------------

    @app.get("/api/alerts")
    def list_alerts():
        unresolved = request.args.get("unresolved", "false").lower() == "true"
        shelf_id = request.args.get("shelf_id", type=int)
        alerts = engine.list_alerts(unresolved_only=unresolved, shelf_id=shelf_id)
        return jsonify([alert_to_dict(a) for a in alerts])

    @app.post("/api/alerts/<int:alert_id>/resolve")
    @require_api_key
    def resolve_alert(alert_id):
        data = request.get_json(force=True)
        _require(data, "actor_id")
        alert = engine.resolve_alert(alert_id, data["actor_id"])
        return jsonify(alert_to_dict(alert))

    return app


if __name__ == "__main__":
    logging.basicConfig(level=Config.LOG_LEVEL)
    app = create_app()
    sweeper = ExpirySweeper(
        app.extensions["reservation_engine"], interval=Config.SWEEP_INTERVAL_SECONDS
    )
    sweeper.start()
    port = int(os.getenv("PORT", "5000"))
    try:
        app.run(host="0.0.0.0", port=port, debug=False)
    finally:
        sweeper.stop(timeout=5)
