from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Mapping, Type, TypeVar

from flask_wtf import FlaskForm
from werkzeug.datastructures import MultiDict
from wtforms import BooleanField, DecimalField, IntegerField, PasswordField, SelectField, StringField, TextAreaField
from wtforms.fields import DateField
from wtforms.validators import Email, InputRequired, Length, NumberRange, Optional, Regexp
from wtforms.validators import ValidationError as FieldValidationError

from .errors import ValidationError
from .models import AssetStatus, BillingCycle, InvoiceStatus, PriceType, TicketCategory, TicketPriority, TicketStatus, UserStatus

F = TypeVar("F", bound=FlaskForm)

PASSWORD_SYMBOLS = "!@#$%^&*()_-+=[]{}|;:'\",.<>?/`~\\"


def _validate_strong_password(form, field) -> None:
    value = field.data or ""
    if len(value) < 8:
        raise FieldValidationError("Password must be at least 8 characters long.")
    if not any(ch.islower() for ch in value):
        raise FieldValidationError("Include at least one lowercase letter.")
    if not any(ch.isupper() for ch in value):
        raise FieldValidationError("Include at least one uppercase letter.")
    if not any(ch.isdigit() for ch in value):
        raise FieldValidationError("Include at least one number.")
    if not any(ch in PASSWORD_SYMBOLS for ch in value):
        raise FieldValidationError("Include at least one symbol.")


def _choices(enum_cls, *members) -> list[tuple[str, str]]:
    selected = members or tuple(enum_cls)
    return [(member.value, member.value.replace("_", " ").title()) for member in selected]


class RegisterForm(FlaskForm):
    first_name = StringField("First Name", validators=[InputRequired(message="First name is required"), Length(max=120)])
    last_name = StringField("Last Name", validators=[InputRequired(message="Last name is required"), Length(max=120)])
    email = StringField("Email", validators=[InputRequired(message="Email is required"), Email(), Length(max=255)])
    password = PasswordField("Password", validators=[InputRequired(), Length(max=128), _validate_strong_password])


class AdminUserForm(RegisterForm):
    status = SelectField(
        "Status",
        choices=_choices(UserStatus, UserStatus.APPROVED, UserStatus.PENDING),
        validators=[Optional()],
    )


class LoginForm(FlaskForm):
    email = StringField("Email", validators=[InputRequired(message="Email is required"), Email(), Length(max=255)])
    password = PasswordField("Password", validators=[InputRequired(message="Password is required"), Length(max=128)])


class UserStatusForm(FlaskForm):
    status = SelectField("Status", choices=_choices(UserStatus), validators=[InputRequired()])


class ProfileForm(FlaskForm):
    first_name = StringField("First Name", validators=[InputRequired(), Length(max=120)])
    last_name = StringField("Last Name", validators=[InputRequired(), Length(max=120)])
    email = StringField("Email", validators=[InputRequired(), Email(), Length(max=255)])


class PasswordChangeForm(FlaskForm):
    current_password = PasswordField("Current Password", validators=[InputRequired(), Length(max=128)])
    new_password = PasswordField("New Password", validators=[InputRequired(), Length(max=128), _validate_strong_password])


class CategoryForm(FlaskForm):
    name = StringField("Name", validators=[InputRequired(message="Name is required"), Length(max=120)])
    color = StringField("Color", validators=[Optional(), Length(max=32)])
    description = TextAreaField("Description", validators=[Optional(), Length(max=1000)])


class PackageForm(FlaskForm):
    name = StringField("Name", validators=[InputRequired(message="Name is required"), Length(max=255)])
    description = TextAreaField("Description", validators=[Optional(), Length(max=2000)])
    price = DecimalField("Price", places=2, validators=[InputRequired(), NumberRange(min=0, message="Price cannot be negative")])
    currency = StringField("Currency", validators=[Optional(), Length(min=3, max=8)])
    billing_cycle = SelectField("Billing Cycle", choices=_choices(BillingCycle), validators=[Optional()])
    category_id = IntegerField("Category", validators=[InputRequired(message="Category is required")])
    features = StringField("Feature", validators=[Optional(), Length(max=255)])
    is_active = BooleanField("Active")


class AssetForm(FlaskForm):
    name = StringField("Name", validators=[InputRequired(message="Name is required"), Length(max=255)])
    description = TextAreaField("Description", validators=[Optional(), Length(max=2000)])
    category_id = IntegerField("Category", validators=[InputRequired(message="Category is required")])
    package_id = IntegerField("Package", validators=[InputRequired(message="Package is required")])
    status = SelectField("Status", choices=_choices(AssetStatus), validators=[Optional()])
    business_name = StringField("Business Name", validators=[Optional(), Length(max=255)])
    vat_number = StringField("VAT Number", validators=[Optional(), Length(max=64)])
    billing_email = StringField("Billing Email", validators=[Optional(), Email(), Length(max=255)])
    billing_address = TextAreaField("Billing Address", validators=[Optional(), Length(max=1000)])
    billing_phone = StringField("Billing Phone", validators=[Optional(), Length(max=64)])


class AssetStatusForm(FlaskForm):
    status = SelectField("Status", choices=_choices(AssetStatus), validators=[InputRequired()])


class TicketForm(FlaskForm):
    title = StringField("Title", validators=[InputRequired(message="Title is required"), Length(min=5, max=255)])
    description = TextAreaField("Description", validators=[InputRequired(message="Description is required"), Length(min=10)])
    category = SelectField("Category", choices=_choices(TicketCategory), validators=[InputRequired()])
    priority = SelectField("Priority", choices=_choices(TicketPriority), validators=[InputRequired()])
    price_type = SelectField("Price Type", choices=_choices(PriceType), validators=[InputRequired()])
    asset_id = IntegerField("Asset", validators=[Optional()])


class TicketMessageForm(FlaskForm):
    content = TextAreaField("Message", validators=[InputRequired(message="Message is required"), Length(max=10000)])


class TicketStatusForm(FlaskForm):
    status = SelectField("Status", choices=_choices(TicketStatus), validators=[InputRequired()])


class InvoiceForm(FlaskForm):
    user_id = IntegerField("Client", validators=[InputRequired(message="Client is required")])
    asset_id = IntegerField("Asset", validators=[InputRequired(message="Asset is required")])
    amount = DecimalField("Amount", places=2, validators=[Optional(), NumberRange(min=0, message="Amount cannot be negative")])
    due_date = DateField("Due Date", format="%Y-%m-%d", validators=[InputRequired(message="Due date is required")])
    description = TextAreaField("Description", validators=[Optional(), Length(max=2000)])
    invoice_number = StringField(
        "Invoice Number",
        validators=[Optional(), Length(max=64), Regexp(r"^[A-Za-z0-9._/-]+$", message="Use letters, digits and - _ . / only")],
    )
    status = SelectField(
        "Status",
        choices=_choices(InvoiceStatus, InvoiceStatus.PENDING, InvoiceStatus.DRAFT),
        validators=[Optional()],
    )


class LineItemForm(FlaskForm):
    description = StringField("Description", validators=[InputRequired(), Length(max=255)])
    quantity = DecimalField("Quantity", validators=[Optional(), NumberRange(min=0)])
    unit_price = DecimalField("Unit Price", validators=[InputRequired(), NumberRange(min=0)])


class PaymentForm(FlaskForm):
    amount = DecimalField("Amount", places=2, validators=[InputRequired(message="Amount is required"), NumberRange(min=0)])
    payment_date = DateField("Payment Date", format="%Y-%m-%d", validators=[Optional()])
    payment_method = StringField("Method", validators=[Optional(), Length(max=64)])
    reference = StringField("Reference", validators=[Optional(), Length(max=255)])
    notes = TextAreaField("Notes", validators=[Optional(), Length(max=2000)])


class PaymentNoticeForm(FlaskForm):
    payment_method = StringField("Method", validators=[InputRequired(message="Payment method is required"), Length(max=64)])
    payment_reference = StringField("Reference", validators=[Optional(), Length(max=255)])
    payment_notes = TextAreaField("Notes", validators=[Optional(), Length(max=2000)])


class SettingsForm(FlaskForm):
    vat_rate = DecimalField("VAT Rate", validators=[Optional(), NumberRange(min=0, max=100)])
    payment_terms = IntegerField("Payment Terms (days)", validators=[Optional(), NumberRange(min=0, max=365)])
    currency = StringField("Currency", validators=[Optional(), Length(min=3, max=8)])
    company_name = StringField("Company Name", validators=[Optional(), Length(max=255)])
    bank_iban = StringField("IBAN", validators=[Optional(), Length(max=64)])
    bank_holder = StringField("Account Holder", validators=[Optional(), Length(max=255)])
    contact_email = StringField("Contact Email", validators=[Optional(), Email(), Length(max=255)])
    ticket_price_with_package = DecimalField("Ticket Price (with package)", validators=[Optional(), NumberRange(min=0)])
    ticket_price_without_package = DecimalField("Ticket Price (without package)", validators=[Optional(), NumberRange(min=0)])


class EmailTemplateForm(FlaskForm):
    name = StringField(
        "Template Key",
        validators=[InputRequired(), Length(max=64), Regexp(r"^[a-z0-9_]+$", message="Use lowercase letters, digits and underscores")],
    )
    subject = StringField("Subject", validators=[InputRequired(), Length(max=255)])
    body = TextAreaField("Body", validators=[InputRequired()])
    variables = StringField("Variable", validators=[Optional(), Length(max=64)])
    is_active = BooleanField("Active")


def _as_text(value) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, bool):
        return "y" if value else "false"
    if isinstance(value, (date, datetime)):
        return value.isoformat()[:10]
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def load_form(form_class: Type[F], payload: Mapping | None) -> F:
    """Validate a JSON-style payload against ``form_class`` or raise ``ValidationError``."""
    formdata = MultiDict()
    for key, value in (payload or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            for item in value:
                formdata.add(key, _as_text(item))
        else:
            formdata.add(key, _as_text(value))
    form = form_class(formdata=formdata, meta={"csrf": False})
    if not form.validate():
        raise ValidationError("Invalid input.", errors=form.errors)
    return form


def field_given(field) -> bool:
    return bool(field.raw_data)


def list_values(field) -> list[str]:
    return [value.strip() for value in (field.raw_data or []) if value and value.strip()]


__all__ = [
    "RegisterForm",
    "AdminUserForm",
    "LoginForm",
    "UserStatusForm",
    "ProfileForm",
    "PasswordChangeForm",
    "CategoryForm",
    "PackageForm",
    "AssetForm",
    "AssetStatusForm",
    "TicketForm",
    "TicketMessageForm",
    "TicketStatusForm",
    "InvoiceForm",
    "LineItemForm",
    "PaymentForm",
    "PaymentNoticeForm",
    "SettingsForm",
    "EmailTemplateForm",
    "load_form",
    "field_given",
    "list_values",
]
