import logging

from flask import Flask, jsonify, request

from scheduling_utils import AttemptDeadline
from status_errors import DataError, FatalConfigError, StatusCheckError, TransportError
from status_models import Application


def _result(data, message: str = "success", status: int = 200):
    return jsonify({"message": message, "data": data, "code": status}), status


def _error(message: str, status: int):
    return _result(None, message, status)


def _application_from_request() -> Application:
    body = request.get_json(silent=True)
    if body is None:
        raise DataError("Request body must be a JSON object")
    return Application.from_record(body)


def create_app(context) -> Flask:
    """Build the HTTP API around an already-constructed application context."""
    app = Flask(__name__)

    def _run_check(check):
        try:
            application = _application_from_request()
        except DataError as exc:
            return _error(str(exc), 400)

        try:
            snapshot = check(application)
        except FatalConfigError as exc:
            logging.error("On-demand check for %s not configured: %s", application.application_id, exc)
            return _error(str(exc), 503)
        except StatusCheckError as exc:
            logging.warning("On-demand check for %s failed: %s", application.application_id, exc)
            return _error(str(exc), 500)
        return _result(snapshot.to_dict())

    @app.route("/api/us-visa-status", methods=["POST"])
    def status_check():
        return _run_check(context.checker.scrape)

    @app.route("/api/us-visa-tracking", methods=["POST"])
    def email_tracking():
        return _run_check(
            lambda application: context.tracking.track(
                application, deadline=AttemptDeadline(context.cfg.attempt_deadline_seconds)
            )
        )

    @app.route("/api/applications", methods=["POST"])
    def create_application():
        try:
            application = _application_from_request()
        except DataError as exc:
            return _error(str(exc), 400)
        try:
            context.registry.create(application)
        except TransportError as exc:
            return _error(str(exc), 500)
        return _result(application.to_record())

    @app.route("/api/applications", methods=["GET"])
    def retrieve_application():
        application_id = request.args.get("application_id", "").strip()
        try:
            if not application_id:
                return _result([a.to_record() for a in context.registry.list_all()])
            raw = context.registry.fetch(application_id)
        except TransportError as exc:
            return _error(str(exc), 500)
        if raw is None:
            return _error("Application not found", 404)
        try:
            return _result(Application.from_record(raw).to_record())
        except DataError as exc:
            return _error(f"Stored record is malformed: {exc}", 500)

    @app.route("/api/applications/<application_id>", methods=["DELETE"])
    def delete_application(application_id: str):
        try:
            removed = context.registry.delete(application_id)
        except TransportError as exc:
            return _error(str(exc), 500)
        if not removed:
            return _error("Application not found", 404)
        context.tracker.forget(application_id)
        return _result({"application_id": application_id})

    return app
