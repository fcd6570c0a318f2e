"""Flask application exposing the dog walking system as a JSON API."""

from __future__ import annotations

import datetime as dt
import io
import logging
from typing import Any

from flask import Flask, jsonify, request, send_file

from dogwalking import config as settings
from dogwalking.walks.errors import InvalidDate, StoreUnavailable, ValidationError
from dogwalking.walks.invoices import BusinessDetails
from dogwalking.walks.system import EDITABLE_WALK_FIELDS, WalkingSystem

logger = logging.getLogger(__name__)

WALKER_RATE_FIELDS = ("rate_20_min", "rate_30_min", "rate_60_min", "rate_overnight")


def _business_from_config(config: dict) -> BusinessDetails:
    return BusinessDetails(
        name=config["BUSINESS_NAME"],
        address=config["BUSINESS_ADDRESS"],
        city=config["BUSINESS_CITY"],
        state=config["BUSINESS_STATE"],
        zip_code=config["BUSINESS_ZIP"],
        phone=config["BUSINESS_PHONE"],
        email=config["BUSINESS_EMAIL"],
    )


def _payload() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Expected a JSON object body")
    return data


def _require(data: dict[str, Any], *keys: str) -> None:
    missing = [key for key in keys if data.get(key) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def _int_field(data: dict[str, Any], key: str, default: int | None = None) -> int | None:
    value = data.get(key)
    if value in (None, ""):
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{key} must be an integer") from exc


def _text_field(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value.strip() or None


def _walker_body(walker: Any) -> dict:
    return {"id": walker.id, "name": walker.name, "color": walker.color}


def create_app(database_path: str | None = None, config: dict[str, Any] | None = None) -> Flask:
    """Create and configure the Flask application."""

    app = Flask(__name__)
    app.config.from_mapping(settings.as_dict())
    if config:
        app.config.from_mapping(config)
    if database_path is not None:
        app.config["DATABASE_PATH"] = database_path

    system = WalkingSystem(
        app.config["DATABASE_PATH"],
        busy_timeout_ms=app.config["SQLITE_BUSY_TIMEOUT_MS"],
        business=_business_from_config(app.config),
        invoice_due_days=app.config["INVOICE_DUE_DAYS"],
    )
    app.extensions["walking_system"] = system

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc: ValidationError) -> Any:
        message = str(exc)
        status = 404 if message.endswith("not found") else 400
        return jsonify({"message": message}), status

    @app.errorhandler(StoreUnavailable)
    def handle_store_unavailable(exc: StoreUnavailable) -> Any:
        logger.error("Store unavailable: %s", exc)
        return jsonify({"message": "Data store unavailable, please retry"}), 503

    # ------------------------------------------------------------------
    # Directory
    # ------------------------------------------------------------------
    @app.route("/api/users", methods=["GET", "POST"])
    def users() -> Any:
        if request.method == "POST":
            data = _payload()
            _require(data, "email", "first_name", "role")
            user = system.register_user(
                email=_text_field(data, "email"),
                first_name=_text_field(data, "first_name"),
                last_name=_text_field(data, "last_name") or "",
                role=_text_field(data, "role"),
                phone=_text_field(data, "phone"),
            )
            return jsonify(user), 201
        return jsonify(system.list_users(role=request.args.get("role") or None))

    @app.get("/api/users/<int:user_id>/unread-messages")
    def unread_messages(user_id: int) -> Any:
        return jsonify({"count": system.unread_message_count(user_id)})

    @app.route("/api/clients", methods=["GET", "POST"])
    def clients() -> Any:
        if request.method == "POST":
            data = _payload()
            _require(data, "email", "first_name")
            client = system.register_client(
                email=_text_field(data, "email"),
                first_name=_text_field(data, "first_name"),
                last_name=_text_field(data, "last_name") or "",
                phone=_text_field(data, "phone"),
                address=_text_field(data, "address"),
                emergency_contact=_text_field(data, "emergency_contact"),
                notes=_text_field(data, "notes"),
                opening_balance=data.get("balance"),
            )
            return jsonify(client.to_dict()), 201
        return jsonify([client.to_dict() for client in system.list_clients()])

    @app.get("/api/clients/<int:client_id>")
    def client_detail(client_id: int) -> Any:
        client = system.get_client(client_id)
        body = client.to_dict()
        body["pets"] = system.list_pets(client_id=client_id)
        body["walks"] = [walk.to_dict() for walk in system.list_walks(client_id=client_id)]
        body["payments"] = system.list_payments(client_id=client_id)
        return jsonify(body)

    @app.route("/api/walkers", methods=["GET", "POST"])
    def walkers() -> Any:
        if request.method == "POST":
            data = _payload()
            _require(data, "email", "first_name")
            rates = {key: data[key] for key in WALKER_RATE_FIELDS if data.get(key) is not None}
            walker = system.register_walker(
                email=_text_field(data, "email"),
                first_name=_text_field(data, "first_name"),
                last_name=_text_field(data, "last_name") or "",
                phone=_text_field(data, "phone"),
                bio=_text_field(data, "bio"),
                color=_text_field(data, "color"),
                rates=rates,
            )
            return jsonify(_walker_body(walker)), 201
        return jsonify([_walker_body(walker) for walker in system.list_walkers()])

    @app.get("/api/walkers/<int:walker_id>/walks")
    def walker_walks(walker_id: int) -> Any:
        return jsonify([walk.to_dict() for walk in system.list_walks(walker_id=walker_id)])

    @app.get("/api/walkers/<int:walker_id>/earnings")
    def walker_earnings(walker_id: int) -> Any:
        unpaid_only = request.args.get("unpaid") == "true"
        return jsonify(system.list_walker_earnings(walker_id=walker_id, unpaid_only=unpaid_only))

    @app.route("/api/walkers/<int:walker_id>/payments", methods=["GET", "POST"])
    def walker_payments(walker_id: int) -> Any:
        if request.method == "POST":
            data = _payload()
            _require(data, "amount")
            payment = system.pay_walker(
                walker_id=walker_id,
                amount=data["amount"],
                payment_date=_text_field(data, "payment_date") or dt.date.today().isoformat(),
                method=_text_field(data, "payment_method") or "cash",
                notes=_text_field(data, "notes"),
            )
            return jsonify(payment), 201
        return jsonify(system.list_walker_payments(walker_id=walker_id))

    @app.route("/api/pets", methods=["GET", "POST"])
    def pets() -> Any:
        if request.method == "POST":
            data = _payload()
            _require(data, "client_id", "name")
            pet = system.add_pet(
                client_id=_int_field(data, "client_id"),
                name=_text_field(data, "name"),
                breed=_text_field(data, "breed"),
                age=_int_field(data, "age"),
                size=_text_field(data, "size"),
                notes=_text_field(data, "notes"),
            )
            return jsonify(pet), 201
        return jsonify(system.list_pets(client_id=request.args.get("client_id", type=int)))

    # ------------------------------------------------------------------
    # Walks
    # ------------------------------------------------------------------
    @app.route("/api/walks", methods=["GET", "POST"])
    def walks() -> Any:
        if request.method == "POST":
            data = _payload()
            _require(data, "client_id", "pet_id", "date", "time")
            created = system.schedule_walk(
                client_id=_int_field(data, "client_id"),
                pet_id=_int_field(data, "pet_id"),
                date=data["date"],
                time=_text_field(data, "time"),
                duration=data.get("duration", 30),
                walker_id=_int_field(data, "walker_id"),
                billing_amount=data.get("billing_amount"),
                notes=_text_field(data, "notes"),
                number_of_weeks=_int_field(data, "number_of_weeks", 1),
            )
            return jsonify([walk.to_dict() for walk in created]), 201
        walks = system.list_walks(
            client_id=request.args.get("client_id", type=int),
            status=request.args.get("status") or None,
        )
        return jsonify([walk.to_dict() for walk in walks])

    @app.get("/api/walks/upcoming")
    def upcoming_walks() -> Any:
        limit = request.args.get("limit", default=5, type=int)
        return jsonify([walk.to_dict() for walk in system.upcoming_walks(limit=limit)])

    @app.route("/api/walks/<int:walk_id>", methods=["GET", "PUT", "DELETE"])
    def walk_detail(walk_id: int) -> Any:
        if request.method == "PUT":
            data = _payload()
            if "status" in data:
                raise ValidationError("Use the status endpoint to change a walk's status")
            changes = {key: data[key] for key in EDITABLE_WALK_FIELDS if key in data}
            for key in ("pet_id", "walker_id"):
                if key in changes:
                    changes[key] = _int_field(data, key)
            if "notes" in changes:
                changes["notes"] = _text_field(data, "notes")
            return jsonify(system.update_walk(walk_id, **changes).to_dict())
        if request.method == "DELETE":
            system.delete_walk(walk_id)
            return jsonify({"success": True, "message": "Walk deleted successfully"})
        return jsonify(system.get_walk(walk_id).to_dict())

    @app.patch("/api/walks/<int:walk_id>/status")
    def walk_status(walk_id: int) -> Any:
        data = _payload()
        _require(data, "status")
        return jsonify(system.update_walk_status(walk_id, _text_field(data, "status")).to_dict())

    @app.post("/api/walks/apply-balances")
    def apply_balances() -> Any:
        result = system.apply_completed_walks()
        body = result.to_dict()
        body["message"] = f"Applied {result.applied_count} walks to client balances"
        return jsonify(body)

    @app.post("/api/walks/resume-credits")
    def resume_credits() -> Any:
        return jsonify({"credited_count": system.resume_pending_credits()})

    @app.post("/api/walks/update-completed")
    def update_completed() -> Any:
        return jsonify(system.complete_elapsed_walks())

    @app.post("/api/walks/mark-test-walks-completed")
    def mark_test_walks_completed() -> Any:
        marked = system.mark_test_walks_completed(limit=app.config["TEST_SAMPLE_SIZE"])
        return jsonify(
            {
                "marked_count": len(marked),
                "walk_ids": marked,
                "message": f"Marked {len(marked)} walks as completed",
            }
        )

    # ------------------------------------------------------------------
    # Schedule
    # ------------------------------------------------------------------
    @app.get("/api/schedule/week")
    def schedule_week() -> Any:
        start = request.args.get("start") or None
        week = system.week_at_a_glance(start=start)
        return jsonify({"start": week[0].date_string, "days": [day.to_dict() for day in week]})

    @app.get("/api/schedule/day")
    def schedule_day() -> Any:
        day = request.args.get("date")
        if not day:
            raise InvalidDate("A date query parameter is required")
        walks = system.day_schedule(day=day, walker_name=request.args.get("walker") or None)
        return jsonify([walk.to_dict() for walk in walks])

    # ------------------------------------------------------------------
    # Billing
    # ------------------------------------------------------------------
    @app.post("/api/clients/<int:client_id>/payments")
    def record_payment(client_id: int) -> Any:
        data = _payload()
        _require(data, "amount")
        client = system.record_payment(
            client_id=client_id,
            amount=data["amount"],
            payment_date=_text_field(data, "payment_date") or dt.date.today().isoformat(),
            method=_text_field(data, "payment_method") or "cash",
            reference=_text_field(data, "reference"),
        )
        return jsonify(
            {
                "client_id": client_id,
                "amount": str(data["amount"]),
                "payment_date": client.last_payment_date,
                "balance": str(client.balance),
            }
        )

    @app.get("/api/clients/<int:client_id>/invoice")
    def client_invoice(client_id: int) -> Any:
        document, pdf = system.invoice_pdf(client_id=client_id)
        if request.args.get("format") == "json":
            return jsonify(document.to_dict())
        return send_file(
            io.BytesIO(pdf),
            mimetype="application/pdf",
            as_attachment=True,
            download_name=document.filename,
        )

    @app.get("/api/balances/audit")
    def balance_audit() -> Any:
        return jsonify(system.audit_balances())

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    @app.route("/api/messages", methods=["GET", "POST"])
    def messages() -> Any:
        if request.method == "POST":
            data = _payload()
            _require(data, "sender_id", "receiver_id", "content")
            message = system.send_message(
                sender_id=_int_field(data, "sender_id"),
                receiver_id=_int_field(data, "receiver_id"),
                content=_text_field(data, "content") or "",
            )
            return jsonify(message), 201
        user_id = request.args.get("user_id", type=int)
        if user_id is None:
            raise ValidationError("A user_id query parameter is required")
        return jsonify(
            system.list_messages(user_id=user_id, other_user_id=request.args.get("with", type=int))
        )

    @app.post("/api/messages/<int:message_id>/read")
    def read_message(message_id: int) -> Any:
        return jsonify(system.mark_message_read(message_id))

    return app


__all__ = ["create_app"]
