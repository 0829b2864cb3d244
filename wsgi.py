"""
WSGI entry point for Ingreso Rápido.

Creates the application through the package factory and adds the
user-facing error pages.

For gunicorn: wsgi:app
"""

from flask import jsonify, render_template, request

from ingreso import app
from ingreso.extensions import db


def _wants_json():
    return request.path.startswith("/api/") or request.is_json


# -------------------- ERROR HANDLERS --------------------

@app.errorhandler(500)
def internal_error(error):
    """
    Handle 500 Internal Server Error.
    Rolls back the session and shows a friendly page (JSON for the API).
    """
    app.logger.exception("500 Internal Server Error occurred")
    db.session.rollback()

    if _wants_json():
        return jsonify({"error": "Internal server error"}), 500
    return render_template('error.html', code=500, message="Something went wrong. Please try again."), 500


@app.errorhandler(404)
def not_found_error(error):
    app.logger.warning(f"404 Not Found: {request.url}")
    if _wants_json():
        return jsonify({"error": "Not found"}), 404
    return render_template('error.html', code=404, message="This page does not exist."), 404


@app.errorhandler(400)
def bad_request_error(error):
    """Covers CSRF failures from Flask-WTF as well as malformed requests."""
    error_msg = str(error.description) if hasattr(error, 'description') else str(error)
    app.logger.warning(f"400 Bad Request: {request.url} - {error_msg}")
    if _wants_json():
        return jsonify({"error": error_msg}), 400
    return render_template('error.html', code=400, message=error_msg), 400
