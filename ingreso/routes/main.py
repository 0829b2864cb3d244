"""
Main routes for Ingreso Rápido.

Kiosk and administration pages plus the health check. The student kiosk is
open; the staff kiosk needs the staff PIN and administration the manager PIN.
"""

from flask import Blueprint, current_app, flash, jsonify, redirect, render_template, url_for
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from forms import PinUpdateForm
from ingreso.auth import mint_pin_session, pin_required
from ingreso.extensions import db
from ingreso.models import PinScope
from ingreso.routes.reports import available_reports
from ingreso.utils.pins import PinError, change_security_pin, get_pin_statuses

main_bp = Blueprint('main', __name__)


@main_bp.route('/')
def home():
    """Redirect to the student kiosk."""
    return redirect(url_for('main.student_kiosk'))


@main_bp.route('/health')
def health_check():
    """Simple health check endpoint for uptime monitoring."""
    try:
        db.session.execute(text('SELECT 1'))
        return 'ok', 200
    except SQLAlchemyError:
        current_app.logger.exception('Health check failed')
        return jsonify(error='Database error'), 500


# -------------------- KIOSKS --------------------

@main_bp.route('/registro')
def student_kiosk():
    return render_template('student_kiosk.html')


@main_bp.route('/registro-personal')
@pin_required('staff')
def staff_kiosk():
    return render_template('staff_kiosk.html')


# -------------------- ADMINISTRATION --------------------

@main_bp.route('/administracion')
@pin_required('manager')
def admin_dashboard():
    return render_template(
        'admin_dashboard.html',
        reports=available_reports(),
        pins=get_pin_statuses(),
    )


@main_bp.route('/administracion/seguridad', methods=['GET', 'POST'])
@pin_required('manager')
def admin_security():
    form = PinUpdateForm()
    if form.validate_on_submit():
        scope = PinScope(form.scope.data)
        try:
            change_security_pin(scope, form.new_pin.data, manager_pin=form.manager_pin.data)
        except PinError as e:
            flash(str(e))
            return render_template('admin_security.html', form=form, pins=get_pin_statuses()), 400

        flash(f"{scope.value.capitalize()} PIN updated.")
        response = redirect(url_for('main.admin_security'))
        mint_pin_session(response, scope)
        return response

    return render_template('admin_security.html', form=form, pins=get_pin_statuses())
