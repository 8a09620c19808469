from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Callable
import logging

from flask import Flask, g, jsonify, request

from .config import Settings
from .errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateTransition,
    NotFoundError,
    ReservationError,
    ValidationError,
)
from .lifecycle import ReservationLifecycle
from .models import ReservationRequest
from .settings_store import SettingsYamlStore
from .yaml_store import ReservationStorageError

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: 400,
    ForbiddenError: 403,
    NotFoundError: 404,
    ConflictError: 409,
    InvalidStateTransition: 409,
}


def create_app(
    data_dir: str | Path = "data",
    now_provider: Callable[[], datetime] | None = None,
    cors_origin: str = "*",
) -> Flask:
    app = Flask(__name__)
    lifecycle = ReservationLifecycle.from_data_dir(data_dir, now_provider=now_provider)
    settings_store = SettingsYamlStore(data_dir, lifecycle.repository.event_log)
    app.extensions["room_booking"] = lifecycle
    app.extensions["room_booking_settings"] = settings_store

    @app.after_request
    def add_cors_headers(response: Any) -> Any:
        response.headers["Access-Control-Allow-Origin"] = cors_origin
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,PATCH,OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type,X-User-Id"
        return response

    @app.errorhandler(ReservationError)
    def handle_reservation_error(error: ReservationError) -> Any:
        status = next((code for kind, code in ERROR_STATUS.items() if isinstance(error, kind)), 400)
        body: dict[str, Any] = {"ok": False, "error": type(error).__name__, "message": error.message}
        if error.detail:
            body["detail"] = error.detail
        return jsonify(body), status

    @app.errorhandler(ReservationStorageError)
    def handle_storage_error(error: ReservationStorageError) -> Any:
        logger.exception("Storage failure while handling %s %s", request.method, request.path)
        return jsonify({"ok": False, "message": "Internal server error"}), 500

    @app.before_request
    def resolve_actor() -> Any:
        g.actor = None
        if request.method == "OPTIONS" or request.path == "/api/health":
            return None
        user_id = request.headers.get("X-User-Id", "").strip()
        user = lifecycle.users.get_user(user_id) if user_id else None
        if user is None or not user.active:
            return jsonify({"ok": False, "message": "Authentication required."}), 401
        g.actor = user.as_actor()
        return None

    @app.get("/api/health")
    def health() -> Any:
        now = (now_provider or datetime.now)()
        return jsonify({"status": "ok", "ts": now.isoformat(timespec="seconds")})

    @app.get("/api/rooms")
    def list_rooms() -> Any:
        return jsonify({"ok": True, "rooms": [room.to_dict() for room in lifecycle.rooms.list_rooms()]})

    @app.get("/api/rooms/<room_id>/schedule")
    def room_schedule(room_id: str) -> Any:
        day = str(request.args.get("date", "")).strip()
        if not day:
            raise ValidationError("date is required.")
        records = lifecycle.room_schedule(room_id, day)
        return jsonify(
            {
                "ok": True,
                "room_id": room_id,
                "date": day,
                "reservations": [
                    {
                        "reservation_id": record.reservation_id,
                        "start_time": record.start_time,
                        "end_time": record.end_time,
                        "status": record.status.value,
                        "is_mine": record.user_id == g.actor.user_id,
                    }
                    for record in records
                ],
            }
        )

    @app.get("/api/bookings")
    def list_bookings() -> Any:
        records = lifecycle.list_reservations(
            g.actor,
            room_id=request.args.get("room_id") or None,
            status=request.args.get("status") or None,
            meeting_type=request.args.get("meeting_type") or None,
            date=request.args.get("date") or None,
            q=request.args.get("q") or None,
        )
        return jsonify({"ok": True, "reservations": [lifecycle.describe(record) for record in records]})

    @app.get("/api/bookings/pending-count")
    def pending_count() -> Any:
        return jsonify({"ok": True, "count": lifecycle.pending_count(g.actor)})

    @app.get("/api/bookings/<reservation_id>")
    def get_booking(reservation_id: str) -> Any:
        record = lifecycle.get_reservation(g.actor, reservation_id)
        return jsonify({"ok": True, "reservation": lifecycle.describe(record)})

    @app.post("/api/bookings")
    def create_booking() -> Any:
        payload = request.get_json(silent=True) or {}
        created = lifecycle.create(g.actor, ReservationRequest.from_payload(payload))
        return jsonify({"ok": True, "reservation": lifecycle.describe(created)}), 201

    @app.patch("/api/bookings/<reservation_id>/cancel")
    def cancel_booking(reservation_id: str) -> Any:
        cancelled = lifecycle.cancel(g.actor, reservation_id)
        return jsonify({"ok": True, "message": "Booking cancelled", "reservation": cancelled.to_dict()})

    @app.patch("/api/bookings/<reservation_id>/approve")
    def approve_booking(reservation_id: str) -> Any:
        result = lifecycle.approve(g.actor, reservation_id)
        return jsonify(
            {
                "ok": True,
                "message": "Approved",
                "reservation": result.reservation.to_dict(),
                "auto_rejected": result.auto_rejected_count,
                "auto_rejected_ids": [record.reservation_id for record in result.auto_rejected],
            }
        )

    @app.patch("/api/bookings/<reservation_id>/reject")
    def reject_booking(reservation_id: str) -> Any:
        payload = request.get_json(silent=True) or {}
        rejected = lifecycle.reject(g.actor, reservation_id, str(payload.get("reason") or ""))
        return jsonify({"ok": True, "message": "Rejected", "reservation": rejected.to_dict()})

    @app.get("/api/notifications")
    def list_notifications() -> Any:
        user_id = g.actor.user_id
        unread_only = str(request.args.get("unread", "")).lower() in {"1", "true", "yes"}
        items = lifecycle.notifications.list_for_user(user_id, unread_only=unread_only)
        return jsonify(
            {
                "ok": True,
                "unread": lifecycle.notifications.unread_count(user_id),
                "notifications": [item.to_dict() for item in items],
            }
        )

    @app.patch("/api/notifications/read-all")
    def mark_all_notifications_read() -> Any:
        changed = lifecycle.notifications.mark_all_read(g.actor.user_id)
        return jsonify({"ok": True, "updated": changed})

    @app.patch("/api/notifications/<notification_id>/read")
    def mark_notification_read(notification_id: str) -> Any:
        item = lifecycle.notifications.mark_read(g.actor.user_id, notification_id)
        return jsonify({"ok": True, "notification": item.to_dict()})

    @app.get("/api/settings")
    def get_settings() -> Any:
        _require_admin(g.actor)
        return jsonify({"ok": True, "settings": settings_store.get_all()})

    @app.put("/api/settings")
    def put_settings() -> Any:
        _require_admin(g.actor)
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            raise ValidationError("Settings must be a JSON object.")
        saved = settings_store.update(payload, (now_provider or datetime.now)())
        return jsonify({"ok": True, "message": "Settings saved", "settings": saved})

    return app


def _require_admin(actor: Any) -> None:
    if not actor.is_admin:
        raise ForbiddenError("Admin only.")


def main() -> None:
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    app = create_app(settings.data_dir, cors_origin=settings.cors_origin)
    lifecycle: ReservationLifecycle = app.extensions["room_booking"]
    if lifecycle.rooms.seed_default_rooms():
        logger.info("Default rooms seeded")
    if lifecycle.users.seed_default_admin(settings.admin_name, settings.admin_email):
        logger.info("Admin seeded: %s", settings.admin_email)

    app.run(host=settings.host, port=settings.port, debug=False, threaded=True)


if __name__ == "__main__":
    main()
