"""
Management reports.

Reports are database views maintained outside this application. The API only
reads from views on the REPORT_VIEWS whitelist, behind the manager PIN.
"""

import re

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ingreso.auth import pin_required
from ingreso.extensions import db
from ingreso.utils.constants import REPORT_ROW_LIMIT

reports_bp = Blueprint('reports', __name__, url_prefix='/api/reports')

# schema.view or view; anything else never reaches the SQL string
VIEW_NAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_]*(\.[a-z_][a-z0-9_]*)?$")


def available_reports():
    """Whitelisted view names, in configuration order."""
    configured = current_app.config.get("REPORT_VIEWS") or []
    return [name for name in configured if VIEW_NAME_PATTERN.match(name)]


@reports_bp.route('', methods=['GET'])
@pin_required('manager')
def list_reports():
    return jsonify({"reports": available_reports()})


@reports_bp.route('/<view_name>', methods=['GET'])
@pin_required('manager')
def read_report(view_name):
    view_name = view_name.strip().lower()
    if view_name not in available_reports():
        return jsonify({"error": "Unknown report"}), 404

    try:
        limit = min(int(request.args.get('limit', REPORT_ROW_LIMIT)), REPORT_ROW_LIMIT)
    except ValueError:
        return jsonify({"error": "limit must be a number"}), 400

    try:
        result = db.session.execute(
            text(f"SELECT * FROM {view_name} LIMIT :limit"), {"limit": max(limit, 1)}
        )
        rows = [dict(row._mapping) for row in result]
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.error(f"Failed to read report {view_name}", exc_info=True)
        return jsonify({"error": "Could not load report"}), 500

    return jsonify({"report": view_name, "rows": rows, "count": len(rows)})
