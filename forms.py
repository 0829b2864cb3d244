from flask_wtf import FlaskForm
from wtforms import PasswordField, HiddenField, SelectField, SubmitField
from wtforms.validators import DataRequired, Regexp, Optional


PIN_FORMAT = Regexp(r'^[0-9]{4,8}$', message='The PIN must be 4 to 8 digits.')


class PinForm(FlaskForm):
    scope = HiddenField('Scope', validators=[DataRequired()])
    next = HiddenField('Next')
    pin = PasswordField('PIN', validators=[DataRequired(), PIN_FORMAT])
    submit = SubmitField('Unlock')


class PinUpdateForm(FlaskForm):
    scope = SelectField('Scope', choices=[('staff', 'Staff'), ('manager', 'Manager')], validators=[DataRequired()])
    new_pin = PasswordField('New PIN', validators=[DataRequired(), PIN_FORMAT])
    # Required to change the staff PIN, and the manager PIN once one exists
    manager_pin = PasswordField('Current manager PIN', validators=[Optional(), PIN_FORMAT])
    submit = SubmitField('Save PIN')
