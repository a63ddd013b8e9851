from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum

from flask_login import UserMixin
from sqlalchemy import event, inspect
from werkzeug.security import check_password_hash, generate_password_hash

from .extensions import db

MONEY = db.Numeric(12, 2)


class BaseModel(db.Model):
    __abstract__ = True

    id = db.Column(db.Integer, primary_key=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class UserStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUSPENDED = "suspended"


class AdminRole(str, Enum):
    SUPER_ADMIN = "super_admin"


class AssetStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class TicketStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"
    PENDING = "pending"


class TicketCategory(str, Enum):
    SUPPORT = "support"
    CHANGE_REQUEST = "change_request"
    BUG_REPORT = "bug_report"
    FEATURE_REQUEST = "feature_request"


class TicketPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class PriceType(str, Enum):
    WITH_PACKAGE = "with_package"
    WITHOUT_PACKAGE = "without_package"


class SenderType(str, Enum):
    CLIENT = "client"
    ADMIN = "admin"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


OPEN_TICKET_STATUSES = (TicketStatus.OPEN, TicketStatus.PENDING, TicketStatus.IN_PROGRESS)
UNPAID_INVOICE_STATUSES = (InvoiceStatus.DRAFT, InvoiceStatus.PENDING, InvoiceStatus.OVERDUE)


class User(UserMixin, BaseModel):
    __tablename__ = "users"

    first_name = db.Column(db.String(120), nullable=False)
    last_name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    status = db.Column(db.Enum(UserStatus, native_enum=False), nullable=False, default=UserStatus.PENDING)
    admin_role = db.Column(db.Enum(AdminRole, native_enum=False), nullable=True)
    last_login = db.Column(db.DateTime, nullable=True)
    failed_login_attempts = db.Column(db.Integer, nullable=False, default=0)
    login_locked_until = db.Column(db.DateTime, nullable=True)
    version_id = db.Column(db.Integer, nullable=False)

    assets = db.relationship("Asset", back_populates="owner", lazy="select")
    tickets = db.relationship("Ticket", back_populates="client", lazy="select")
    invoices = db.relationship("Invoice", back_populates="user", foreign_keys="Invoice.user_id", lazy="select")

    __mapper_args__ = {"version_id_col": version_id}

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_super_admin(self) -> bool:
        return self.admin_role == AdminRole.SUPER_ADMIN

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.APPROVED

    @property
    def is_locked(self) -> bool:
        return bool(self.login_locked_until and datetime.utcnow() < self.login_locked_until)

    def record_failed_login(self, max_failures: int, lock_minutes: int = 15) -> None:
        if self.is_locked:
            return
        self.failed_login_attempts = (self.failed_login_attempts or 0) + 1
        if self.failed_login_attempts >= max_failures:
            self.login_locked_until = datetime.utcnow() + timedelta(minutes=lock_minutes)

    def reset_login_failures(self) -> None:
        self.failed_login_attempts = 0
        self.login_locked_until = None

    def __repr__(self) -> str:  # pragma: no cover - repr utility
        return f"<User {self.email} ({self.status})>"


class Category(BaseModel):
    __tablename__ = "categories"

    name = db.Column(db.String(120), nullable=False, unique=True)
    color = db.Column(db.String(32), nullable=False, default="gray")
    description = db.Column(db.Text, nullable=True)

    packages = db.relationship("Package", back_populates="category", lazy="select")

    def __repr__(self) -> str:  # pragma: no cover - repr utility
        return f"<Category {self.name}>"


class Package(BaseModel):
    __tablename__ = "packages"

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    price = db.Column(MONEY, nullable=False, default=Decimal("0.00"))
    currency = db.Column(db.String(8), nullable=False, default="EUR")
    billing_cycle = db.Column(
        db.Enum(BillingCycle, native_enum=False), nullable=False, default=BillingCycle.MONTHLY
    )
    features = db.Column(db.JSON, nullable=False, default=list)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=False, index=True)

    category = db.relationship("Category", back_populates="packages", lazy="joined")
    assets = db.relationship("Asset", back_populates="package", lazy="select")

    def __repr__(self) -> str:  # pragma: no cover - repr utility
        return f"<Package {self.name} {self.price} {self.billing_cycle}>"


class Asset(BaseModel):
    __tablename__ = "assets"

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.Enum(AssetStatus, native_enum=False), nullable=False, default=AssetStatus.ACTIVE)
    business_name = db.Column(db.String(255), nullable=True)
    vat_number = db.Column(db.String(64), nullable=True)
    billing_email = db.Column(db.String(255), nullable=True)
    billing_address = db.Column(db.Text, nullable=True)
    billing_phone = db.Column(db.String(64), nullable=True)
    subscribed_price = db.Column(MONEY, nullable=True)
    registration_date = db.Column(db.Date, nullable=False, default=date.today)
    next_due_date = db.Column(db.Date, nullable=True)
    archived_at = db.Column(db.DateTime, nullable=True)
    version_id = db.Column(db.Integer, nullable=False)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=False, index=True)
    package_id = db.Column(db.Integer, db.ForeignKey("packages.id"), nullable=False, index=True)

    owner = db.relationship("User", back_populates="assets", lazy="joined")
    category = db.relationship("Category", lazy="joined")
    package = db.relationship("Package", back_populates="assets", lazy="joined")
    invoices = db.relationship("Invoice", back_populates="asset", lazy="select")
    tickets = db.relationship("Ticket", back_populates="asset", lazy="select")

    __mapper_args__ = {"version_id_col": version_id}
    __table_args__ = (
        db.Index("ix_assets_user_status", "user_id", "status"),
    )

    @property
    def billing_contact_email(self) -> str | None:
        if self.billing_email:
            return self.billing_email
        return self.owner.email if self.owner else None

    def __repr__(self) -> str:  # pragma: no cover - repr utility
        return f"<Asset {self.name} user={self.user_id} ({self.status})>"


class Ticket(BaseModel):
    __tablename__ = "tickets"

    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    category = db.Column(db.Enum(TicketCategory, native_enum=False), nullable=False)
    priority = db.Column(db.Enum(TicketPriority, native_enum=False), nullable=False, default=TicketPriority.MEDIUM)
    price_type = db.Column(db.Enum(PriceType, native_enum=False), nullable=False)
    price = db.Column(MONEY, nullable=True)
    status = db.Column(db.Enum(TicketStatus, native_enum=False), nullable=False, default=TicketStatus.OPEN)
    resolved_at = db.Column(db.DateTime, nullable=True)
    closed_at = db.Column(db.DateTime, nullable=True)
    version_id = db.Column(db.Integer, nullable=False)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    asset_id = db.Column(db.Integer, db.ForeignKey("assets.id"), nullable=True, index=True)

    client = db.relationship("User", back_populates="tickets", lazy="joined")
    asset = db.relationship("Asset", back_populates="tickets", lazy="joined")
    messages = db.relationship(
        "TicketMessage",
        back_populates="ticket",
        order_by="TicketMessage.id",
        lazy="select",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}
    __table_args__ = (
        db.Index("ix_tickets_user_status", "user_id", "status"),
    )

    @property
    def attachments(self) -> list["TicketAttachment"]:
        return [attachment for message in self.messages for attachment in message.attachments]

    def __repr__(self) -> str:  # pragma: no cover - repr utility
        return f"<Ticket {self.id} {self.title!r} ({self.status})>"


class TicketMessage(BaseModel):
    __tablename__ = "ticket_messages"

    content = db.Column(db.Text, nullable=False)
    sender_type = db.Column(db.Enum(SenderType, native_enum=False), nullable=False)

    ticket_id = db.Column(db.Integer, db.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    ticket = db.relationship("Ticket", back_populates="messages")
    sender = db.relationship("User", lazy="joined")
    attachments = db.relationship(
        "TicketAttachment",
        back_populates="message",
        order_by="TicketAttachment.id",
        lazy="select",
        cascade="all, delete-orphan",
    )


class TicketAttachment(BaseModel):
    __tablename__ = "ticket_attachments"

    filename = db.Column(db.String(255), nullable=False)
    storage_reference = db.Column(db.String(512), nullable=False)
    file_size = db.Column(db.Integer, nullable=False, default=0)
    mimetype = db.Column(db.String(128), nullable=True)

    message_id = db.Column(
        db.Integer, db.ForeignKey("ticket_messages.id", ondelete="CASCADE"), nullable=False, index=True
    )

    message = db.relationship("TicketMessage", back_populates="attachments")


class Invoice(BaseModel):
    __tablename__ = "invoices"

    invoice_number = db.Column(db.String(64), nullable=False, unique=True, index=True)
    billing_period = db.Column(db.String(16), nullable=True)
    description = db.Column(db.Text, nullable=True)
    amount = db.Column(MONEY, nullable=False)
    vat_rate = db.Column(db.Numeric(5, 2), nullable=False)
    vat_amount = db.Column(MONEY, nullable=False)
    total_amount = db.Column(MONEY, nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="EUR")
    status = db.Column(db.Enum(InvoiceStatus, native_enum=False), nullable=False, default=InvoiceStatus.PENDING)
    due_date = db.Column(db.Date, nullable=False)
    paid_date = db.Column(db.Date, nullable=True)
    payment_method = db.Column(db.String(64), nullable=True)
    payment_reference = db.Column(db.String(255), nullable=True)
    payment_notes = db.Column(db.Text, nullable=True)
    pdf_reference = db.Column(db.String(512), nullable=True)
    pdf_filename = db.Column(db.String(255), nullable=True)
    pdf_size = db.Column(db.Integer, nullable=True)
    version_id = db.Column(db.Integer, nullable=False)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    asset_id = db.Column(db.Integer, db.ForeignKey("assets.id"), nullable=False, index=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    user = db.relationship("User", foreign_keys=[user_id], back_populates="invoices", lazy="joined")
    asset = db.relationship("Asset", back_populates="invoices", lazy="joined")
    created_by = db.relationship("User", foreign_keys=[created_by_id])
    items = db.relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        order_by="InvoiceLineItem.position",
        lazy="select",
        cascade="all, delete-orphan",
    )
    payments = db.relationship(
        "InvoicePayment",
        back_populates="invoice",
        order_by="InvoicePayment.id",
        lazy="select",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}
    __table_args__ = (
        db.UniqueConstraint("asset_id", "billing_period", name="uq_invoice_asset_period"),
        db.Index("ix_invoices_status_due", "status", "due_date"),
    )

    @property
    def amount_paid(self) -> Decimal:
        return sum((payment.amount for payment in self.payments), Decimal("0.00"))

    @property
    def balance_due(self) -> Decimal:
        return Decimal(self.total_amount) - self.amount_paid

    @property
    def has_pdf(self) -> bool:
        return bool(self.pdf_reference)

    def __repr__(self) -> str:  # pragma: no cover - repr utility
        return f"<Invoice {self.invoice_number} {self.total_amount} ({self.status})>"


class InvoiceLineItem(BaseModel):
    __tablename__ = "invoice_line_items"

    description = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal("1"))
    unit_price = db.Column(MONEY, nullable=False)
    total = db.Column(MONEY, nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)

    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)

    invoice = db.relationship("Invoice", back_populates="items")


class InvoicePayment(BaseModel):
    __tablename__ = "invoice_payments"

    amount = db.Column(MONEY, nullable=False)
    payment_date = db.Column(db.Date, nullable=False)
    method = db.Column(db.String(64), nullable=True)
    reference = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    recorded_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    invoice = db.relationship("Invoice", back_populates="payments")
    recorded_by = db.relationship("User")


class InvoiceSequence(BaseModel):
    """Named counter row; locked while the next invoice number is allocated."""

    __tablename__ = "invoice_sequences"

    name = db.Column(db.String(64), nullable=False, unique=True)
    current_value = db.Column(db.Integer, nullable=False, default=0)


class SystemSetting(BaseModel):
    __tablename__ = "system_settings"

    key = db.Column(db.String(64), nullable=False, unique=True, index=True)
    value = db.Column(db.JSON, nullable=True)
    updated_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)


class EmailTemplate(BaseModel):
    __tablename__ = "email_templates"

    name = db.Column(db.String(64), nullable=False, unique=True, index=True)
    subject = db.Column(db.String(255), nullable=False)
    body = db.Column(db.Text, nullable=False)
    variables = db.Column(db.JSON, nullable=False, default=list)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def __repr__(self) -> str:  # pragma: no cover - repr utility
        return f"<EmailTemplate {self.name} active={self.is_active}>"


class ActivityLog(BaseModel):
    __tablename__ = "activity_logs"

    action = db.Column(db.String(64), nullable=False, index=True)
    entity_type = db.Column(db.String(64), nullable=True)
    entity_id = db.Column(db.Integer, nullable=True)
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    actor_email = db.Column(db.String(255), nullable=True)
    old_values = db.Column(db.JSON, nullable=True)
    new_values = db.Column(db.JSON, nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)

    __table_args__ = (
        db.Index("ix_activity_action_created", "action", "created_at"),
    )

    @classmethod
    def record(
        cls,
        *,
        action: str,
        entity_type: str | None = None,
        entity_id: int | None = None,
        actor_id: int | None = None,
        actor_email: str | None = None,
        old_values: dict | None = None,
        new_values: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "ActivityLog":
        entry = cls(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            actor_email=actor_email,
            old_values=old_values,
            new_values=new_values,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        db.session.add(entry)
        return entry


def _committed_value(target, attr: str):
    history = inspect(target).attrs[attr].history
    if history.deleted:
        return history.deleted[0]
    return getattr(target, attr)


@event.listens_for(User, "before_insert")
@event.listens_for(User, "before_update")
def _super_admin_guard(mapper, connection, target: User) -> None:  # noqa: D401
    if target.admin_role == AdminRole.SUPER_ADMIN and target.status != UserStatus.APPROVED:
        raise ValueError("Super admins must have an approved account")


@event.listens_for(Package, "before_insert")
@event.listens_for(Package, "before_update")
def _package_price_guard(mapper, connection, target: Package) -> None:  # noqa: D401
    if target.price is None or Decimal(target.price) < 0:
        raise ValueError("Package price must be zero or positive")


@event.listens_for(TicketMessage, "before_update")
def _message_append_only_guard(mapper, connection, target: TicketMessage) -> None:  # noqa: D401
    state = inspect(target)
    if any(state.attrs[column.key].history.has_changes() for column in mapper.column_attrs):
        raise ValueError("Ticket messages are append-only")


@event.listens_for(Invoice, "before_update")
def _paid_invoice_guard(mapper, connection, target: Invoice) -> None:  # noqa: D401
    if _committed_value(target, "status") != InvoiceStatus.PAID:
        return
    state = inspect(target)
    if target.status != InvoiceStatus.PAID:
        raise ValueError("Paid invoices cannot change status")
    for attr in ("amount", "vat_rate", "vat_amount", "total_amount"):
        if state.attrs[attr].history.has_changes():
            raise ValueError("Paid invoice amounts are final")


__all__ = [
    "BaseModel",
    "UserStatus",
    "AdminRole",
    "AssetStatus",
    "BillingCycle",
    "TicketStatus",
    "TicketCategory",
    "TicketPriority",
    "PriceType",
    "SenderType",
    "InvoiceStatus",
    "OPEN_TICKET_STATUSES",
    "UNPAID_INVOICE_STATUSES",
    "User",
    "Category",
    "Package",
    "Asset",
    "Ticket",
    "TicketMessage",
    "TicketAttachment",
    "Invoice",
    "InvoiceLineItem",
    "InvoicePayment",
    "InvoiceSequence",
    "SystemSetting",
    "EmailTemplate",
    "ActivityLog",
]
