import csv
import io
import os
import re
import secrets
import smtplib
import ssl
import time
from collections import Counter, defaultdict
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from email.message import EmailMessage
from email.utils import formataddr, format_datetime, make_msgid
from pathlib import Path

import requests

from dotenv import load_dotenv
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
    current_app,
)
from flask_sqlalchemy import SQLAlchemy
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

from sqlalchemy import event, or_
from sqlalchemy.orm import joinedload
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

load_dotenv()

db = SQLAlchemy()

DASHBOARD_OVERVIEW_CACHE_KEY = "_dashboard_overview_cache"
DASHBOARD_OVERVIEW_CACHE_SECONDS_DEFAULT = 10.0

SESSION_USER_KEY = "user_id"

ROLE_OPTIONS = ["ADMIN", "TECHNICIAN", "MARKETING", "HR"]
ROLE_DISPLAY_NAMES = {
    "ADMIN": "Administrator",
    "TECHNICIAN": "Technician",
    "MARKETING": "Marketing",
    "HR": "Human Resources",
}
HANDLING_STATUS_OPTIONS = ["AVAILABLE", "BUSY", "OFFLINE"]
PACKAGE_DURATION_OPTIONS = ["MONTHLY", "YEARLY"]
CUSTOMER_STATUS_OPTIONS = ["ACTIVE", "INACTIVE", "SUSPENDED"]
TICKET_STATUS_OPTIONS = ["OPEN", "IN_PROGRESS", "PENDING", "RESOLVED", "CLOSED"]
ACTIVE_TICKET_STATUSES = ("OPEN", "IN_PROGRESS", "PENDING")
COMPLETED_TICKET_STATUSES = ("RESOLVED", "CLOSED")
TICKET_PRIORITY_OPTIONS = ["LOW", "MEDIUM", "HIGH", "URGENT"]
TICKET_PRIORITY_RANK = {"URGENT": 0, "HIGH": 1, "MEDIUM": 2, "LOW": 3}
TICKET_CATEGORY_OPTIONS = [
    "NETWORK_ISSUES",
    "EQUIPMENT_DAMAGE",
    "INSTALLATION",
    "OTHERS",
]
PAYMENT_STATUS_OPTIONS = ["PAID", "PENDING", "OVERDUE"]
FEEDBACK_PERIOD_OPTIONS = ["all", "month", "week"]
NOTIFICATION_TYPE_OPTIONS = [
    "TICKET_UPDATE",
    "ASSIGNMENT",
    "ESCALATION",
    "SYSTEM_ALERT",
]

TICKET_STATUS_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "OPEN": ("IN_PROGRESS", "CLOSED"),
    "IN_PROGRESS": ("PENDING", "RESOLVED", "OPEN"),
    "PENDING": ("IN_PROGRESS", "RESOLVED"),
    "RESOLVED": ("CLOSED", "IN_PROGRESS"),
    "CLOSED": (),
}

# resource -> action -> conditions (None grants unconditionally)
ROLE_PERMISSIONS: dict[str, dict[str, dict[str, dict[str, str] | None]]] = {
    "ADMIN": {
        "*": {"create": None, "read": None, "update": None, "delete": None},
    },
    "TECHNICIAN": {
        "dashboard": {"read": None},
        "customers": {"read": None},
        "tickets": {
            "read": None,
            "create": None,
            "update": {"assigned_to": "self"},
        },
        "ticket-notes": {"create": {"assigned_to": "self"}, "read": None},
        "employees": {"read": None},
        "reports": {"read": {"scope": "own"}},
    },
    "MARKETING": {
        "dashboard": {"read": None},
        "customers": {"create": None, "read": None, "update": None, "delete": None},
        "packages": {"create": None, "read": None, "update": None, "delete": None},
        "tickets": {"read": None},
        "reports": {"read": {"scope": "marketing"}},
        "employees": {"read": None},
    },
    "HR": {
        "dashboard": {"read": None},
        "employees": {"create": None, "read": None, "update": None, "delete": None},
        "customers": {"read": None},
        "reports": {"read": {"scope": "hr"}},
        "settings": {"read": None, "update": {"scope": "hr"}},
    },
}

ROUTE_ACCESS = {
    "/packages": ("ADMIN", "MARKETING"),
    "/tickets": ("ADMIN", "TECHNICIAN", "MARKETING"),
    "/settings": ("ADMIN", "HR"),
}

NOTIFICATION_TEMPLATES = {
    "ticket_created": (
        "New Ticket Created",
        'A new ticket "{title}" has been created by {customer}.',
    ),
    "ticket_assigned": (
        "Ticket Assigned",
        'Ticket "{title}" has been assigned to {technician}.',
    ),
    "assignment_received": (
        "New Ticket Assignment",
        'You have been assigned a new ticket "{title}" from {customer}.',
    ),
    "status_changed": (
        "Ticket Status Updated",
        'Ticket "{title}" status changed from {old} to {new}.',
    ),
    "ticket_resolved": (
        "Ticket Resolved",
        'Your ticket "{title}" has been resolved. Please provide feedback on the service.',
    ),
    "feedback_received": (
        "Customer Feedback Received",
        'Customer provided {rating}/5 stars feedback for ticket "{title}".',
    ),
    "ticket_escalated": (
        "Ticket Escalated",
        'Ticket "{title}" has been escalated. Reason: {reason}',
    ),
}

SEARCH_TYPES = ["all", "customers", "tickets", "employees", "packages"]
EXPORT_ENTITIES = {
    "customers": "customers",
    "tickets": "tickets",
    "payments": "payments",
    "employees": "employees",
}

TRUTHY_VALUES = {"1", "true", "yes", "on", "y"}
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_PATTERN = re.compile(r"^\+?\d{10,15}$")


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def is_truthy(value: str | bool | None) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUTHY_VALUES


def wants_json_response() -> bool:
    """Determine whether the current request expects a JSON response."""

    if request.is_json:
        return True

    requested_with = request.headers.get("X-Requested-With", "").lower()
    if requested_with == "xmlhttprequest":
        return True

    accept_mimetypes = request.accept_mimetypes
    if accept_mimetypes:
        best = accept_mimetypes.best
        if best == "application/json":
            return True
        if (
            accept_mimetypes["application/json"]
            and accept_mimetypes["application/json"]
            >= accept_mimetypes["text/html"]
        ):
            return True

    return False


def humanize_enum(value: str | None) -> str:
    if not value:
        return ""
    return value.replace("_", " ").title()


def parse_amount_cents(raw: str) -> int:
    """Parse a decimal amount from a form field into integer minor units.

    Raises ``InvalidOperation`` for anything that is not a finite number.
    """

    amount = Decimal(raw).quantize(Decimal("0.01"))
    if not amount.is_finite():
        raise InvalidOperation(raw)
    return int(amount * 100)


def parse_iso_date(raw: str) -> date:
    return datetime.strptime(raw, "%Y-%m-%d").date()


def format_cents(value: int | None, prefix: str = "Rp ") -> str:
    cents = int(value or 0)
    amount = Decimal(cents) / Decimal(100)
    if amount == amount.to_integral_value():
        return f"{prefix}{amount:,.0f}"
    return f"{prefix}{amount:,.2f}"


def cents_to_amount(value: int | None) -> float:
    return float(Decimal(int(value or 0)) / Decimal(100))


def month_start(moment: datetime | date) -> date:
    return date(moment.year, moment.month, 1)


def shift_month(anchor: date, months: int) -> date:
    index = anchor.year * 12 + (anchor.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def last_twelve_month_keys(today: date | None = None) -> list[str]:
    anchor = month_start(today or date.today())
    return [shift_month(anchor, -offset).strftime("%Y-%m") for offset in range(11, -1, -1)]


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    password_hash = db.Column(db.String(255), nullable=False)
    last_login_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    employee = db.relationship("Employee", back_populates="user", uselist=False)

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<User {self.email}>"


class Employee(db.Model):
    __tablename__ = "employees"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True
    )
    name = db.Column(db.String(100), nullable=False)
    phone = db.Column(db.String(40))
    position = db.Column(db.String(120))
    division = db.Column(db.String(120))
    role = db.Column(db.String(20), nullable=False, default="TECHNICIAN")
    hire_date = db.Column(db.Date, nullable=False, default=date.today)
    photo_url = db.Column(db.String(500))
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    can_handle_tickets = db.Column(db.Boolean, nullable=False, default=False)
    handling_status = db.Column(db.String(20), nullable=False, default="AVAILABLE")
    max_concurrent_tickets = db.Column(db.Integer, nullable=False, default=5)
    current_ticket_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    user = db.relationship("User", back_populates="employee")
    assigned_tickets = db.relationship(
        "Ticket", back_populates="assigned_to", foreign_keys="Ticket.assigned_to_id"
    )
    performance_metrics = db.relationship(
        "EmployeePerformanceMetrics",
        back_populates="employee",
        uselist=False,
        cascade="all, delete-orphan",
    )

    @property
    def email(self) -> str | None:
        return self.user.email if self.user else None

    @property
    def role_label(self) -> str:
        return ROLE_DISPLAY_NAMES.get(self.role, self.role)

    @property
    def is_admin(self) -> bool:
        return self.role == "ADMIN"

    def active_ticket_total(self) -> int:
        return Ticket.query.filter(
            Ticket.assigned_to_id == self.id,
            Ticket.status.in_(ACTIVE_TICKET_STATUSES),
        ).count()

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Employee {self.name} ({self.role})>"


class Package(db.Model):
    __tablename__ = "packages"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, unique=True)
    speed = db.Column(db.String(50), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    duration = db.Column(db.String(20), nullable=False, default="MONTHLY")
    description = db.Column(db.Text)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    customers = db.relationship("Customer", back_populates="package")

    @property
    def monthly_price_cents(self) -> int:
        if self.duration == "YEARLY":
            return int(round(self.price_cents / 12))
        return self.price_cents

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Package {self.name}>"


class Customer(db.Model):
    __tablename__ = "customers"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255))
    phone = db.Column(db.String(40))
    address = db.Column(db.String(255))
    location = db.Column(db.String(255))
    status = db.Column(db.String(20), nullable=False, default="ACTIVE")
    payment_status = db.Column(db.String(20), nullable=False, default="PAID")
    package_id = db.Column(
        db.Integer, db.ForeignKey("packages.id", ondelete="SET NULL"), nullable=True
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    package = db.relationship("Package", back_populates="customers")
    tickets = db.relationship(
        "Ticket", back_populates="customer", cascade="all, delete-orphan"
    )
    payments = db.relationship(
        "Payment",
        back_populates="customer",
        cascade="all, delete-orphan",
        order_by="Payment.payment_date.desc()",
    )
    feedback = db.relationship(
        "TicketFeedback", back_populates="customer", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Customer {self.name}>"


class Ticket(db.Model):
    __tablename__ = "tickets"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="OPEN")
    priority = db.Column(db.String(20), nullable=False, default="MEDIUM")
    category = db.Column(db.String(30), nullable=False, default="OTHERS")
    customer_id = db.Column(
        db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True
    )
    assigned_to_id = db.Column(
        db.Integer, db.ForeignKey("employees.id", ondelete="SET NULL"), index=True
    )
    resolution_notes = db.Column(db.Text)
    resolution_time_hours = db.Column(db.Float)
    completed_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    customer = db.relationship("Customer", back_populates="tickets")
    assigned_to = db.relationship(
        "Employee", back_populates="assigned_tickets", foreign_keys=[assigned_to_id]
    )
    notes = db.relationship(
        "TicketNote",
        back_populates="ticket",
        cascade="all, delete-orphan",
        order_by="TicketNote.created_at.desc()",
    )
    status_history = db.relationship(
        "TicketStatusHistory",
        back_populates="ticket",
        cascade="all, delete-orphan",
        order_by="TicketStatusHistory.timestamp.desc()",
    )
    feedback = db.relationship(
        "TicketFeedback",
        back_populates="ticket",
        uselist=False,
        cascade="all, delete-orphan",
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_TICKET_STATUSES

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Ticket {self.id} {self.status}>"


class TicketNote(db.Model):
    __tablename__ = "ticket_notes"

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(
        db.Integer,
        db.ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_by_id = db.Column(
        db.Integer, db.ForeignKey("employees.id"), nullable=False
    )
    content = db.Column(db.Text, nullable=False)
    is_internal = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    ticket = db.relationship("Ticket", back_populates="notes")
    created_by = db.relationship("Employee")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<TicketNote {self.id} ticket={self.ticket_id}>"


class TicketStatusHistory(db.Model):
    __tablename__ = "ticket_status_history"

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(
        db.Integer,
        db.ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status = db.Column(db.String(20), nullable=False)
    changed_by_id = db.Column(db.Integer, db.ForeignKey("employees.id"))
    notes = db.Column(db.Text)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    ticket = db.relationship("Ticket", back_populates="status_history")
    changed_by = db.relationship("Employee")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<TicketStatusHistory {self.ticket_id} {self.status}>"


class TicketFeedback(db.Model):
    __tablename__ = "ticket_feedback"

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(
        db.Integer,
        db.ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False)
    rating = db.Column(db.Integer, nullable=False)
    comment = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    ticket = db.relationship("Ticket", back_populates="feedback")
    customer = db.relationship("Customer", back_populates="feedback")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<TicketFeedback ticket={self.ticket_id} rating={self.rating}>"


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(
        db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True
    )
    amount_cents = db.Column(db.Integer, nullable=False)
    payment_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="PENDING")
    notes = db.Column(db.String(255))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    customer = db.relationship("Customer", back_populates="payments")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Payment {self.id} for customer {self.customer_id}>"


class EmployeePerformanceMetrics(db.Model):
    __tablename__ = "employee_performance_metrics"

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(
        db.Integer,
        db.ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    total_tickets_resolved = db.Column(db.Integer, nullable=False, default=0)
    tickets_resolved_this_month = db.Column(db.Integer, nullable=False, default=0)
    average_resolution_time = db.Column(db.Float, nullable=False, default=0.0)
    customer_rating = db.Column(db.Float, nullable=False, default=0.0)
    last_updated = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    employee = db.relationship("Employee", back_populates="performance_metrics")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<EmployeePerformanceMetrics employee={self.employee_id}>"


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(30), nullable=False)
    recipient_type = db.Column(db.String(20), nullable=False, default="EMPLOYEE")
    recipient_id = db.Column(db.Integer, nullable=False, index=True)
    channel = db.Column(db.String(20), nullable=False, default="IN_APP")
    delivery_status = db.Column(db.String(20), nullable=False, default="PENDING")
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    read_at = db.Column(db.DateTime(timezone=True))
    related_type = db.Column(db.String(40))
    related_id = db.Column(db.Integer)
    sent_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Notification {self.type} -> {self.recipient_type}:{self.recipient_id}>"


class NotificationConfig(db.Model):
    __tablename__ = "notification_config"

    id = db.Column(db.Integer, primary_key=True)
    email_enabled = db.Column(db.Boolean, nullable=False, default=True)
    sms_enabled = db.Column(db.Boolean, nullable=False, default=False)
    notify_customers = db.Column(db.Boolean, nullable=False, default=True)
    escalate_low_ratings = db.Column(db.Boolean, nullable=False, default=True)
    smtp_host = db.Column(db.String(255))
    smtp_port = db.Column(db.Integer, nullable=False, default=587)
    use_tls = db.Column(db.Boolean, nullable=False, default=True)
    smtp_username = db.Column(db.String(255))
    smtp_password = db.Column(db.String(255))
    from_email = db.Column(db.String(255))
    from_name = db.Column(db.String(255))
    sms_gateway_url = db.Column(db.String(500))
    sms_gateway_token = db.Column(db.String(255))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def smtp_ready(self) -> bool:
        host = (self.smtp_host or "").strip()
        sender = (self.from_email or self.smtp_username or "").strip()
        return bool(host and sender)

    def sms_ready(self) -> bool:
        return bool((self.sms_gateway_url or "").strip())

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return "<NotificationConfig>"


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)

    instance_path = Path(app.instance_path)
    db_path = instance_path / "backoffice.db"
    os.makedirs(instance_path, exist_ok=True)

    secret_key = os.environ.get("SECRET_KEY") or secrets.token_hex(16)

    smtp_port_env = os.environ.get("SMTP_PORT")
    try:
        smtp_port = int(smtp_port_env) if smtp_port_env else 587
    except ValueError:
        smtp_port = 587

    default_config = {
        "SECRET_KEY": secret_key,
        "SQLALCHEMY_DATABASE_URI": os.environ.get(
            "DATABASE_URL", f"sqlite:///{db_path}"
        ),
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "ADMIN_EMAIL": os.environ.get("ADMIN_EMAIL"),
        "ADMIN_PASSWORD": os.environ.get("ADMIN_PASSWORD"),
        "ADMIN_NAME": os.environ.get("ADMIN_NAME", "System Administrator"),
        "COMPANY_NAME": os.environ.get("COMPANY_NAME", "ISP Back Office"),
        "CURRENCY_PREFIX": os.environ.get("CURRENCY_PREFIX", "Rp "),
        "DASHBOARD_OVERVIEW_CACHE_SECONDS": float(
            os.environ.get(
                "DASHBOARD_OVERVIEW_CACHE_SECONDS",
                DASHBOARD_OVERVIEW_CACHE_SECONDS_DEFAULT,
            )
        ),
        "EXPORT_ROW_LIMIT": int(os.environ.get("EXPORT_ROW_LIMIT", "10000")),
        "SMTP_HOST": os.environ.get("SMTP_HOST"),
        "SMTP_PORT": smtp_port,
        "SMTP_USERNAME": os.environ.get("SMTP_USERNAME"),
        "SMTP_PASSWORD": os.environ.get("SMTP_PASSWORD"),
        "SMTP_USE_TLS": is_truthy(os.environ.get("SMTP_USE_TLS", "true")),
        "NOTIFICATION_FROM_EMAIL": os.environ.get("NOTIFICATION_FROM_EMAIL"),
        "NOTIFICATION_FROM_NAME": os.environ.get("NOTIFICATION_FROM_NAME"),
        "SMS_GATEWAY_URL": os.environ.get("SMS_GATEWAY_URL"),
        "SMS_GATEWAY_TOKEN": os.environ.get("SMS_GATEWAY_TOKEN"),
        "SMS_GATEWAY_TIMEOUT": float(os.environ.get("SMS_GATEWAY_TIMEOUT", "10")),
        "NOTIFICATION_EMAIL_SENDER": None,
        "NOTIFICATION_SMS_SENDER": None,
    }

    app.config.update(default_config)

    if test_config:
        app.config.update(test_config)

    db.init_app(app)

    register_routes(app)

    with app.app_context():
        db.create_all()
        ensure_default_admin_user()
        ensure_notification_configuration()

    return app


def ensure_performance_metrics(employee: Employee) -> EmployeePerformanceMetrics:
    metrics = employee.performance_metrics
    if metrics is None:
        metrics = EmployeePerformanceMetrics(
            employee=employee,
            total_tickets_resolved=0,
            tickets_resolved_this_month=0,
            average_resolution_time=0.0,
            customer_rating=0.0,
            last_updated=utcnow(),
        )
        db.session.add(metrics)
    return metrics


def ensure_default_admin_user() -> None:
    if Employee.query.filter_by(role="ADMIN").count() > 0:
        return

    email = (current_app.config.get("ADMIN_EMAIL") or "").strip().lower()
    password = current_app.config.get("ADMIN_PASSWORD")

    if not email or not password:
        current_app.logger.warning(
            "No administrators exist and ADMIN_EMAIL/ADMIN_PASSWORD were not provided."
        )
        return

    user = User.query.filter_by(email=email).first()
    if user is None:
        user = User(email=email)
        db.session.add(user)
    user.set_password(password)

    admin = Employee(
        user=user,
        name=current_app.config.get("ADMIN_NAME") or "System Administrator",
        position="Administrator",
        division="Management",
        role="ADMIN",
        hire_date=date.today(),
        is_active=True,
        can_handle_tickets=False,
        handling_status="OFFLINE",
    )
    db.session.add(admin)
    ensure_performance_metrics(admin)
    db.session.commit()
    current_app.logger.info("Seeded default administrator %s", email)


def ensure_notification_configuration() -> NotificationConfig:
    config = NotificationConfig.query.first()
    if config:
        return config

    app_config = current_app.config
    config = NotificationConfig(
        smtp_host=app_config.get("SMTP_HOST"),
        smtp_port=app_config.get("SMTP_PORT") or 587,
        use_tls=bool(app_config.get("SMTP_USE_TLS", True)),
        smtp_username=app_config.get("SMTP_USERNAME"),
        smtp_password=app_config.get("SMTP_PASSWORD"),
        from_email=app_config.get("NOTIFICATION_FROM_EMAIL"),
        from_name=app_config.get("NOTIFICATION_FROM_NAME"),
        sms_gateway_url=app_config.get("SMS_GATEWAY_URL"),
        sms_gateway_token=app_config.get("SMS_GATEWAY_TOKEN"),
        sms_enabled=bool(app_config.get("SMS_GATEWAY_URL")),
    )
    db.session.add(config)
    db.session.commit()
    return config


class SmsGatewayError(RuntimeError):
    """Raised when the SMS gateway rejects a message."""


class SmsGatewayClient:
    def __init__(self, base_url: str, token: str | None = None, *, timeout: float = 10.0):
        self.base_url = (base_url or "").rstrip("/")
        self.token = (token or "").strip()
        self.timeout = timeout

        if not self.base_url:
            raise SmsGatewayError("SMS gateway URL is required.")

    def send(self, phone: str, message: str) -> dict:
        headers = {"accept": "application/json"}
        if self.token:
            headers["authorization"] = f"Bearer {self.token}"

        try:
            response = requests.post(
                self.base_url,
                json={"to": phone, "message": message},
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise SmsGatewayError(f"SMS gateway request failed: {exc}") from exc

        if response.status_code >= 400:
            raise SmsGatewayError(
                f"SMS gateway responded with HTTP {response.status_code}: {response.text}"
            )

        try:
            return response.json()
        except ValueError:
            return {}


def send_notification_email(
    app: Flask, recipient: str, subject: str, body: str
) -> bool:
    if not recipient:
        return False

    sender = app.config.get("NOTIFICATION_EMAIL_SENDER")
    if callable(sender):
        try:
            return bool(sender(recipient, subject, body))
        except Exception as exc:  # pragma: no cover - custom hook failure
            app.logger.warning("Custom email sender failed: %s", exc)
            return False

    config = NotificationConfig.query.first()
    if not config or not config.smtp_ready():
        return False

    host = config.smtp_host.strip()
    try:
        port = int(config.smtp_port or 587)
    except (TypeError, ValueError):
        port = 587

    username = (config.smtp_username or "").strip()
    password = config.smtp_password or ""
    from_email = (config.from_email or username).strip()
    from_name = (config.from_name or app.config.get("COMPANY_NAME") or "").strip()

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = formataddr((from_name, from_email)) if from_name else from_email
    message["To"] = recipient
    message["Date"] = format_datetime(datetime.now(UTC))
    message["Message-ID"] = make_msgid(domain=from_email.split("@")[-1])
    message.set_content(body)

    try:
        with smtplib.SMTP(host, port, timeout=10) as smtp:
            smtp.ehlo()
            if config.use_tls:
                context = ssl.create_default_context()
                smtp.starttls(context=context)
                smtp.ehlo()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(message)
        return True
    except (smtplib.SMTPException, OSError) as exc:  # pragma: no cover - external service
        app.logger.warning("Email delivery to %s failed: %s", recipient, exc)
        return False


def send_notification_sms(app: Flask, phone: str, body: str) -> bool:
    if not phone:
        return False

    sender = app.config.get("NOTIFICATION_SMS_SENDER")
    if callable(sender):
        try:
            return bool(sender(phone, body))
        except Exception as exc:  # pragma: no cover - custom hook failure
            app.logger.warning("Custom SMS sender failed: %s", exc)
            return False

    config = NotificationConfig.query.first()
    if not config or not config.sms_ready():
        return False

    timeout_value = app.config.get("SMS_GATEWAY_TIMEOUT", 10.0)
    try:
        timeout = float(timeout_value)
    except (TypeError, ValueError):
        timeout = 10.0

    try:
        client = SmsGatewayClient(
            config.sms_gateway_url, config.sms_gateway_token, timeout=timeout
        )
        client.send(phone, body)
    except SmsGatewayError as exc:
        app.logger.warning("SMS delivery to %s failed: %s", phone, exc)
        return False
    return True


def _deliver_to_customer(notification: Notification, customer: Customer) -> None:
    app = current_app._get_current_object()
    config = NotificationConfig.query.first()

    if config is None or not config.notify_customers:
        notification.delivery_status = "SKIPPED"
        return

    email_ready = config.smtp_ready() or callable(
        app.config.get("NOTIFICATION_EMAIL_SENDER")
    )
    sms_ready = config.sms_ready() or callable(app.config.get("NOTIFICATION_SMS_SENDER"))

    if config.email_enabled and email_ready and customer.email:
        notification.channel = "EMAIL"
        body = f"Hello {customer.name},\n\n{notification.message}\n"
        delivered = send_notification_email(app, customer.email, notification.title, body)
    elif config.sms_enabled and sms_ready and customer.phone:
        notification.channel = "SMS"
        delivered = send_notification_sms(
            app, customer.phone, f"{notification.title}: {notification.message}"
        )
    else:
        notification.delivery_status = "SKIPPED"
        return

    if delivered:
        notification.delivery_status = "SENT"
        notification.sent_at = utcnow()
    else:
        notification.delivery_status = "FAILED"


def create_notification(
    notification_type: str,
    recipient: Employee | Customer,
    title: str,
    message: str,
    *,
    related: Ticket | None = None,
) -> Notification:
    if notification_type not in NOTIFICATION_TYPE_OPTIONS:
        raise ValueError(f"Unknown notification type: {notification_type}")

    notification = Notification(
        type=notification_type,
        recipient_type="CUSTOMER" if isinstance(recipient, Customer) else "EMPLOYEE",
        recipient_id=recipient.id,
        title=title,
        message=message,
        related_type="ticket" if related is not None else None,
        related_id=related.id if related is not None else None,
    )
    if isinstance(recipient, Customer):
        _deliver_to_customer(notification, recipient)
    else:
        notification.channel = "IN_APP"
        notification.delivery_status = "SENT"
        notification.sent_at = utcnow()
    db.session.add(notification)
    return notification


def _render_template_text(key: str, **values) -> tuple[str, str]:
    title, template = NOTIFICATION_TEMPLATES[key]
    return title, template.format(**values)


def _commit_notifications(context: str) -> None:
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to store %s notifications", context)


def notify_ticket_created(ticket: Ticket) -> None:
    title, message = _render_template_text(
        "ticket_created", title=ticket.title, customer=ticket.customer.name
    )
    handlers = Employee.query.filter(
        Employee.can_handle_tickets.is_(True),
        Employee.is_active.is_(True),
        Employee.role.in_(["ADMIN", "TECHNICIAN"]),
    ).all()
    for handler in handlers:
        create_notification("TICKET_UPDATE", handler, title, message, related=ticket)
    _commit_notifications("ticket created")


def notify_ticket_assigned(ticket: Ticket) -> None:
    technician = ticket.assigned_to
    if technician is None:
        return

    title, message = _render_template_text(
        "assignment_received", title=ticket.title, customer=ticket.customer.name
    )
    create_notification("ASSIGNMENT", technician, title, message, related=ticket)

    title, message = _render_template_text(
        "ticket_assigned", title=ticket.title, technician=technician.name
    )
    create_notification("TICKET_UPDATE", ticket.customer, title, message, related=ticket)
    _commit_notifications("ticket assignment")


def notify_ticket_status_changed(
    ticket: Ticket, old_status: str, new_status: str, changed_by: Employee | None
) -> None:
    title, message = _render_template_text(
        "status_changed",
        title=ticket.title,
        old=humanize_enum(old_status),
        new=humanize_enum(new_status),
    )
    create_notification("TICKET_UPDATE", ticket.customer, title, message, related=ticket)

    technician = ticket.assigned_to
    if technician is not None and (changed_by is None or technician.id != changed_by.id):
        create_notification("TICKET_UPDATE", technician, title, message, related=ticket)

    if new_status == "RESOLVED":
        title, message = _render_template_text("ticket_resolved", title=ticket.title)
        create_notification(
            "TICKET_UPDATE", ticket.customer, title, message, related=ticket
        )
    _commit_notifications("ticket status")


def notify_feedback_received(ticket: Ticket, rating: int) -> None:
    technician = ticket.assigned_to
    if technician is None:
        return

    title, message = _render_template_text(
        "feedback_received", title=ticket.title, rating=rating
    )
    create_notification("TICKET_UPDATE", technician, title, message, related=ticket)

    config = NotificationConfig.query.first()
    if rating <= 2 and (config is None or config.escalate_low_ratings):
        title, message = _render_template_text(
            "ticket_escalated",
            title=ticket.title,
            reason=f"Low customer satisfaction rating: {rating}/5 stars",
        )
        managers = Employee.query.filter(
            Employee.role.in_(["ADMIN", "HR"]), Employee.is_active.is_(True)
        ).all()
        for manager in managers:
            create_notification("ESCALATION", manager, title, message, related=ticket)
    _commit_notifications("feedback")


def has_permission(
    employee: Employee | None,
    resource: str,
    action: str,
    context: dict | None = None,
) -> bool:
    if employee is None or not employee.is_active:
        return False

    grants = ROLE_PERMISSIONS.get(employee.role)
    if not grants:
        return False

    if action in grants.get("*", {}):
        return True

    resource_grants = grants.get(resource, {})
    if action not in resource_grants:
        return False

    conditions = resource_grants[action]
    if not conditions:
        return True

    context = context or {}
    for key, expected in conditions.items():
        if key == "assigned_to":
            if context.get("assigned_to_id") != employee.id:
                return False
        elif context.get(key) != expected:
            return False
    return True


def can_access_route(employee: Employee | None, path: str) -> bool:
    if employee is None:
        return False
    for prefix, roles in ROUTE_ACCESS.items():
        if path == prefix or path.startswith(prefix + "/"):
            return employee.role in roles
    return True


def current_employee() -> Employee | None:
    return getattr(g, "current_employee", None)


def require_permission(resource: str, action: str, context: dict | None = None) -> None:
    if not has_permission(current_employee(), resource, action, context):
        abort(403)


def login_required(func):
    from functools import wraps

    @wraps(func)
    def wrapper(*args, **kwargs):
        if current_employee() is None:
            if wants_json_response():
                return jsonify({"error": "Login required."}), 401
            flash("Please log in to access the back office.", "warning")
            return redirect(url_for("login", next=request.path))
        return func(*args, **kwargs)

    return wrapper


def permission_required(resource: str, action: str, scope: str | None = None):
    """Require a login and a role grant for ``resource``/``action``.

    ``scope`` is passed as permission context so scoped report and settings
    grants can match.
    """

    from functools import wraps

    def decorator(func):
        @wraps(func)
        @login_required
        def wrapper(*args, **kwargs):
            context = {"scope": scope} if scope else None
            require_permission(resource, action, context)
            return func(*args, **kwargs)

        return wrapper

    return decorator


def _text(data, name: str, default: str = "") -> str:
    value = data.get(name, default)
    if value is None:
        return ""
    return str(value).strip()


def _validate_name(value: str, label: str = "Name") -> str | None:
    if len(value) < 2:
        return f"{label} must be at least 2 characters"
    if len(value) > 100:
        return f"{label} must be less than 100 characters"
    return None


def normalize_phone(value: str) -> str:
    return re.sub(r"[\s\-()]", "", value)


def validate_customer_data(data, customer: Customer | None = None):
    """Validate customer form input.

    Returns ``(cleaned, errors)`` where ``errors`` maps field names to
    messages and is empty when the input is acceptable.
    """

    errors: dict[str, str] = {}
    name = _text(data, "name")
    email = _text(data, "email").lower()
    phone = _text(data, "phone")
    status = _text(data, "status", "ACTIVE").upper() or "ACTIVE"
    package_raw = _text(data, "package_id")

    name_error = _validate_name(name)
    if name_error:
        errors["name"] = name_error

    if not email and not phone:
        errors["contact"] = "Either email or phone is required"
    if email and not EMAIL_PATTERN.match(email):
        errors["email"] = "Invalid email format"
    if phone and not PHONE_PATTERN.match(normalize_phone(phone)):
        errors["phone"] = "Invalid phone number format"

    if status not in CUSTOMER_STATUS_OPTIONS:
        errors["status"] = "Invalid customer status"

    package_id = None
    if package_raw:
        try:
            package_id = int(package_raw)
        except ValueError:
            errors["package_id"] = "Invalid package"
        else:
            if db.session.get(Package, package_id) is None:
                errors["package_id"] = "Selected package does not exist"

    cleaned = {
        "name": name,
        "email": email or None,
        "phone": phone or None,
        "address": _text(data, "address") or None,
        "location": _text(data, "location") or None,
        "status": status,
        "package_id": package_id,
    }
    return cleaned, errors


def validate_package_data(data, package: Package | None = None):
    errors: dict[str, str] = {}
    name = _text(data, "name")
    speed = _text(data, "speed")
    price_raw = _text(data, "price")
    duration = _text(data, "duration", "MONTHLY").upper() or "MONTHLY"

    name_error = _validate_name(name, "Package name")
    if name_error:
        errors["name"] = name_error
    else:
        existing = Package.query.filter(db.func.lower(Package.name) == name.lower()).first()
        if existing and (package is None or existing.id != package.id):
            errors["name"] = "A package with this name already exists"

    if not speed:
        errors["speed"] = "Speed is required"

    price_cents = None
    if not price_raw:
        errors["price"] = "Price is required"
    else:
        try:
            price_cents = parse_amount_cents(price_raw)
        except (InvalidOperation, ValueError):
            errors["price"] = "Price must be a valid number"
        else:
            if price_cents <= 0:
                errors["price"] = "Price must be greater than 0"

    if duration not in PACKAGE_DURATION_OPTIONS:
        errors["duration"] = "Duration must be MONTHLY or YEARLY"

    cleaned = {
        "name": name,
        "speed": speed,
        "price_cents": price_cents,
        "duration": duration,
        "description": _text(data, "description") or None,
    }
    return cleaned, errors


def validate_employee_data(data, employee: Employee | None = None):
    errors: dict[str, str] = {}
    name = _text(data, "name")
    email = _text(data, "email").lower()
    phone = _text(data, "phone")
    role = _text(data, "role").upper()
    hire_date_raw = _text(data, "hire_date")
    default_max = str(employee.max_concurrent_tickets) if employee is not None else "5"
    max_raw = _text(data, "max_concurrent_tickets", default_max) or default_max
    password = str(data.get("password") or "")

    name_error = _validate_name(name)
    if name_error:
        errors["name"] = name_error

    if not email:
        errors["email"] = "Email is required"
    elif not EMAIL_PATTERN.match(email):
        errors["email"] = "Invalid email format"
    else:
        existing = User.query.filter_by(email=email).first()
        if existing and (employee is None or existing.id != employee.user_id):
            errors["email"] = "Email already exists"

    if phone and not PHONE_PATTERN.match(normalize_phone(phone)):
        errors["phone"] = "Invalid phone number format"

    if not role:
        errors["role"] = "Role is required"
    elif role not in ROLE_OPTIONS:
        errors["role"] = "Invalid role"

    hire_date = None
    if not hire_date_raw:
        errors["hire_date"] = "Hire date is required"
    else:
        try:
            hire_date = parse_iso_date(hire_date_raw)
        except ValueError:
            errors["hire_date"] = "Use the YYYY-MM-DD format"

    max_concurrent = None
    try:
        max_concurrent = int(max_raw)
    except ValueError:
        errors["max_concurrent_tickets"] = "Max concurrent tickets must be a number"
    else:
        if max_concurrent < 1 or max_concurrent > 20:
            errors["max_concurrent_tickets"] = (
                "Max concurrent tickets must be between 1 and 20"
            )

    if employee is None or password:
        if len(password) < 8:
            errors["password"] = "Password must be at least 8 characters"

    cleaned = {
        "name": name,
        "email": email,
        "phone": phone or None,
        "position": _text(data, "position") or None,
        "division": _text(data, "division") or None,
        "role": role,
        "hire_date": hire_date,
        "photo_url": _text(data, "photo_url") or None,
        "is_active": is_truthy(data.get("is_active", employee is None)),
        "can_handle_tickets": is_truthy(data.get("can_handle_tickets")),
        "max_concurrent_tickets": max_concurrent,
        "password": password,
    }
    return cleaned, errors


def validate_ticket_data(data, ticket: Ticket | None = None):
    errors: dict[str, str] = {}
    title = _text(data, "title")
    description = _text(data, "description")
    priority = _text(data, "priority", "MEDIUM").upper() or "MEDIUM"
    category = _text(data, "category", "OTHERS").upper() or "OTHERS"
    customer_raw = _text(data, "customer_id")
    assignee_raw = _text(data, "assigned_to_id")

    if len(title) < 5:
        errors["title"] = "Title must be at least 5 characters"
    elif len(title) > 200:
        errors["title"] = "Title must be less than 200 characters"

    if len(description) < 10:
        errors["description"] = "Description must be at least 10 characters"
    elif len(description) > 2000:
        errors["description"] = "Description must be less than 2000 characters"

    if priority not in TICKET_PRIORITY_OPTIONS:
        errors["priority"] = "Invalid priority"
    if category not in TICKET_CATEGORY_OPTIONS:
        errors["category"] = "Invalid category"

    customer = None
    if not customer_raw and ticket is not None:
        customer = ticket.customer
    elif not customer_raw:
        errors["customer_id"] = "Customer is required"
    else:
        try:
            customer = db.session.get(Customer, int(customer_raw))
        except ValueError:
            customer = None
        if customer is None:
            errors["customer_id"] = "Customer not found"

    assignee = None
    if assignee_raw and assignee_raw.lower() != "unassigned":
        try:
            assignee = db.session.get(Employee, int(assignee_raw))
        except ValueError:
            assignee = None
        if assignee is None:
            errors["assigned_to_id"] = "Technician not found"
        elif not assignee.can_handle_tickets:
            errors["assigned_to_id"] = "Selected employee cannot handle tickets"

    status = None
    if ticket is not None:
        status = _text(data, "status", ticket.status).upper() or ticket.status
        if status not in TICKET_STATUS_OPTIONS:
            errors["status"] = "Invalid status"

    cleaned = {
        "title": title,
        "description": description,
        "priority": priority,
        "category": category,
        "customer": customer,
        "assignee": assignee,
        "status": status,
        "resolution_notes": _text(data, "resolution_notes") or None,
    }
    return cleaned, errors


def validate_payment_data(data, payment: Payment | None = None):
    errors: dict[str, str] = {}
    customer_raw = _text(data, "customer_id")
    amount_raw = _text(data, "amount")
    date_raw = _text(data, "payment_date")
    status = _text(data, "status", "PENDING").upper() or "PENDING"

    customer = None
    if not customer_raw:
        errors["customer_id"] = "Customer is required"
    else:
        try:
            customer = db.session.get(Customer, int(customer_raw))
        except ValueError:
            customer = None
        if customer is None:
            errors["customer_id"] = "Customer not found"

    amount_cents = None
    if not amount_raw:
        errors["amount"] = "Amount is required"
    else:
        try:
            amount_cents = parse_amount_cents(amount_raw)
        except (InvalidOperation, ValueError):
            errors["amount"] = "Amount must be a valid number"
        else:
            if amount_cents <= 0:
                errors["amount"] = "Amount must be greater than 0"

    payment_date = None
    if not date_raw:
        errors["payment_date"] = "Payment date is required"
    else:
        try:
            payment_date = parse_iso_date(date_raw)
        except ValueError:
            errors["payment_date"] = "Use the YYYY-MM-DD format"
        else:
            if payment_date > date.today():
                errors["payment_date"] = "Payment date cannot be in the future"

    if status not in PAYMENT_STATUS_OPTIONS:
        errors["status"] = "Invalid payment status"

    cleaned = {
        "customer": customer,
        "amount_cents": amount_cents,
        "payment_date": payment_date,
        "status": status,
        "notes": _text(data, "notes") or None,
    }
    return cleaned, errors


def validate_note_content(content: str) -> str | None:
    if not content:
        return "Note content is required"
    if len(content) > 1000:
        return "Note must be less than 1000 characters"
    return None


def validate_feedback_data(data):
    errors: dict[str, str] = {}
    rating_raw = _text(data, "rating")
    comment = _text(data, "comment")

    rating = None
    try:
        rating = int(rating_raw)
    except ValueError:
        errors["rating"] = "Rating must be between 1 and 5"
    else:
        if rating < 1 or rating > 5:
            errors["rating"] = "Rating must be between 1 and 5"

    if len(comment) > 1000:
        errors["comment"] = "Comment must be less than 1000 characters"

    return {"rating": rating, "comment": comment or None}, errors


def validate_search_params(args):
    errors: dict[str, str] = {}
    query = _text(args, "q")
    search_type = _text(args, "type", "all").lower() or "all"
    limit_raw = _text(args, "limit", "10") or "10"

    if not query:
        errors["q"] = "Search query is required"
    elif len(query) > 200:
        errors["q"] = "Search query must be less than 200 characters"

    if search_type not in SEARCH_TYPES:
        errors["type"] = "Invalid search type"

    limit = 10
    try:
        limit = int(limit_raw)
    except ValueError:
        errors["limit"] = "Limit must be a number"
    else:
        if limit < 1 or limit > 100:
            errors["limit"] = "Limit must be between 1 and 100"

    return {"q": query, "type": search_type, "limit": limit}, errors


def recalculate_customer_payment_status(customer: Customer) -> None:
    statuses = {payment.status for payment in customer.payments}
    if "OVERDUE" in statuses:
        customer.payment_status = "OVERDUE"
    elif "PENDING" in statuses:
        customer.payment_status = "PENDING"
    else:
        customer.payment_status = "PAID"


class TicketWorkflowError(Exception):
    """Raised when a ticket operation breaks a workflow rule."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def sync_ticket_workload(
    ticket: Ticket, previous_assignee: Employee | None, previous_status: str | None
) -> None:
    """Move the active-ticket counters after an assignee or status change."""

    previous_id = previous_assignee.id if previous_assignee is not None else None
    current = ticket.assigned_to
    current_id = current.id if current is not None else None

    was_counted = previous_assignee is not None and previous_status in ACTIVE_TICKET_STATUSES
    is_counted = current is not None and ticket.status in ACTIVE_TICKET_STATUSES

    if was_counted and (not is_counted or previous_id != current_id):
        previous_assignee.current_ticket_count = max(
            0, (previous_assignee.current_ticket_count or 0) - 1
        )
    if is_counted and (not was_counted or previous_id != current_id):
        current.current_ticket_count = (current.current_ticket_count or 0) + 1


def check_assignment_capacity(technician: Employee, ticket: Ticket | None = None) -> None:
    if not technician.can_handle_tickets or not technician.is_active:
        raise TicketWorkflowError("Technician cannot handle tickets")
    if technician.handling_status == "OFFLINE":
        raise TicketWorkflowError("Technician is currently offline")

    already_holding = (
        ticket is not None
        and ticket.assigned_to_id == technician.id
        and ticket.status in ACTIVE_TICKET_STATUSES
    )
    if not already_holding and (
        technician.current_ticket_count >= technician.max_concurrent_tickets
    ):
        raise TicketWorkflowError(
            "Technician has reached maximum concurrent tickets "
            f"({technician.max_concurrent_tickets})"
        )


def record_status_history(
    ticket: Ticket, status: str, actor: Employee | None, notes: str | None = None
) -> TicketStatusHistory:
    entry = TicketStatusHistory(
        ticket=ticket, status=status, changed_by=actor, notes=notes, timestamp=utcnow()
    )
    db.session.add(entry)
    return entry


def add_ticket_note(
    ticket: Ticket, author: Employee, content: str, *, is_internal: bool = False
) -> TicketNote:
    note = TicketNote(
        ticket=ticket,
        created_by=author,
        content=content,
        is_internal=is_internal,
        created_at=utcnow(),
    )
    db.session.add(note)
    return note


def compute_resolution_hours(ticket: Ticket, completed_at: datetime) -> float:
    created_at = as_utc(ticket.created_at) or completed_at
    elapsed = completed_at - created_at
    return round(max(elapsed.total_seconds(), 0) / 3600, 2)


def record_ticket_resolution(employee: Employee, resolution_hours: float) -> None:
    metrics = ensure_performance_metrics(employee)
    now = utcnow()
    last_updated = as_utc(metrics.last_updated)
    if last_updated is None or (last_updated.year, last_updated.month) != (
        now.year,
        now.month,
    ):
        metrics.tickets_resolved_this_month = 0

    total = metrics.total_tickets_resolved or 0
    previous_average = metrics.average_resolution_time or 0.0
    metrics.average_resolution_time = round(
        (previous_average * total + resolution_hours) / (total + 1), 2
    )
    metrics.total_tickets_resolved = total + 1
    metrics.tickets_resolved_this_month = (metrics.tickets_resolved_this_month or 0) + 1
    metrics.last_updated = now


def apply_ticket_status(ticket: Ticket, new_status: str) -> None:
    """Set ``ticket.status`` and keep the completion fields consistent."""

    if new_status in COMPLETED_TICKET_STATUSES:
        if ticket.completed_at is None:
            completed_at = utcnow()
            ticket.completed_at = completed_at
            ticket.resolution_time_hours = compute_resolution_hours(ticket, completed_at)
    else:
        ticket.completed_at = None
        ticket.resolution_time_hours = None
    ticket.status = new_status


def assign_ticket(
    ticket: Ticket, technician: Employee, actor: Employee, reason: str | None = None
) -> None:
    check_assignment_capacity(technician, ticket)

    previous_assignee = ticket.assigned_to
    previous_status = ticket.status

    ticket.assigned_to = technician
    if ticket.status == "OPEN":
        ticket.status = "IN_PROGRESS"
    sync_ticket_workload(ticket, previous_assignee, previous_status)

    if previous_assignee is not None and previous_assignee.id != technician.id:
        content = f"Ticket reassigned from {previous_assignee.name} to {technician.name}"
    else:
        content = f"Ticket assigned to {technician.name}"
    if reason:
        content += f". Reason: {reason}"

    record_status_history(ticket, ticket.status, actor, content)
    add_ticket_note(ticket, actor, content)


def unassign_ticket(ticket: Ticket, actor: Employee, reason: str | None = None) -> None:
    previous_assignee = ticket.assigned_to
    if previous_assignee is None:
        raise TicketWorkflowError("Ticket is not assigned to anyone")

    previous_status = ticket.status
    ticket.assigned_to = None
    apply_ticket_status(ticket, "OPEN")
    sync_ticket_workload(ticket, previous_assignee, previous_status)

    content = f"Ticket unassigned from {previous_assignee.name}"
    if reason:
        content += f". Reason: {reason}"

    record_status_history(ticket, "OPEN", actor, content)
    add_ticket_note(ticket, actor, content)


def release_technician_if_idle(technician: Employee | None) -> None:
    if technician is None or technician.handling_status != "BUSY":
        return
    db.session.flush()
    if technician.active_ticket_total() == 0:
        technician.handling_status = "AVAILABLE"


def change_ticket_status(
    ticket: Ticket,
    new_status: str,
    actor: Employee,
    notes: str | None = None,
    resolution_notes: str | None = None,
) -> str:
    """Apply a validated status transition and return the previous status."""

    old_status = ticket.status
    if new_status not in TICKET_STATUS_OPTIONS:
        raise TicketWorkflowError("Invalid status")
    if new_status not in TICKET_STATUS_TRANSITIONS.get(old_status, ()):
        raise TicketWorkflowError(
            f"Cannot change status from {old_status} to {new_status}"
        )

    assignee = ticket.assigned_to
    apply_ticket_status(ticket, new_status)
    if resolution_notes:
        ticket.resolution_notes = resolution_notes
    sync_ticket_workload(ticket, assignee, old_status)

    history_note = notes or f"Status changed from {old_status} to {new_status}"
    record_status_history(ticket, new_status, actor, history_note)

    if resolution_notes:
        add_ticket_note(ticket, actor, f"Resolution: {resolution_notes}")
    add_ticket_note(
        ticket,
        actor,
        f"Status changed from {humanize_enum(old_status)} to {humanize_enum(new_status)}"
        + (f". {notes}" if notes else ""),
        is_internal=True,
    )

    if (
        new_status == "RESOLVED"
        and old_status in ACTIVE_TICKET_STATUSES
        and assignee is not None
    ):
        record_ticket_resolution(assignee, ticket.resolution_time_hours or 0.0)

    if new_status in COMPLETED_TICKET_STATUSES:
        release_technician_if_idle(assignee)

    return old_status


def complete_ticket(
    ticket: Ticket, actor: Employee, status: str, resolution_notes: str
) -> str:
    if status not in COMPLETED_TICKET_STATUSES:
        raise TicketWorkflowError("Status must be RESOLVED or CLOSED")
    if not resolution_notes:
        raise TicketWorkflowError("Resolution notes are required")
    if ticket.assigned_to_id != actor.id and not actor.is_admin:
        raise TicketWorkflowError(
            "Only the assigned technician or an administrator can complete this ticket",
            403,
        )
    if ticket.status == "CLOSED":
        raise TicketWorkflowError("Ticket is already closed")

    old_status = ticket.status
    assignee = ticket.assigned_to
    apply_ticket_status(ticket, status)
    ticket.resolution_notes = resolution_notes
    sync_ticket_workload(ticket, assignee, old_status)

    record_status_history(
        ticket, status, actor, f"Ticket completed with status {status}"
    )
    add_ticket_note(ticket, actor, f"**Resolution:** {resolution_notes}")

    if assignee is not None and old_status in ACTIVE_TICKET_STATUSES:
        record_ticket_resolution(assignee, ticket.resolution_time_hours or 0.0)

    release_technician_if_idle(assignee)
    return old_status


def submit_ticket_feedback(
    ticket: Ticket,
    rating: int,
    comment: str | None,
    author: Employee | None = None,
) -> TicketFeedback:
    """Store customer feedback and fold the rating into the assignee's average.

    The caller commits; every write here belongs to one transaction.
    """

    if ticket.status not in COMPLETED_TICKET_STATUSES:
        raise TicketWorkflowError(
            "Feedback can only be submitted for resolved or closed tickets"
        )
    if ticket.feedback is not None:
        raise TicketWorkflowError("Feedback has already been submitted for this ticket")

    feedback = TicketFeedback(
        ticket=ticket,
        customer=ticket.customer,
        rating=rating,
        comment=comment,
        created_at=utcnow(),
    )
    db.session.add(feedback)

    technician = ticket.assigned_to
    if technician is not None:
        db.session.flush()
        rated_total = (
            db.session.query(db.func.count(TicketFeedback.id))
            .join(Ticket, TicketFeedback.ticket_id == Ticket.id)
            .filter(Ticket.assigned_to_id == technician.id)
            .scalar()
        )
        metrics = technician.performance_metrics
        if metrics is None:
            metrics = ensure_performance_metrics(technician)
            metrics.customer_rating = float(rating)
        else:
            previous = metrics.customer_rating or 0.0
            count = max(rated_total, 1)
            metrics.customer_rating = round(
                (previous * (count - 1) + rating) / count, 2
            )
        metrics.last_updated = utcnow()

    if author is not None:
        content = f"Customer feedback received: {rating}/5 stars"
        if comment:
            content += f". Comment: {comment}"
        add_ticket_note(ticket, author, content, is_internal=True)

    return feedback


def invalidate_dashboard_overview_cache(app: Flask | None = None) -> None:
    target_app = app
    if target_app is None:
        try:
            target_app = current_app._get_current_object()
        except RuntimeError:
            target_app = None

    if target_app is None:
        return

    target_app.config.pop(DASHBOARD_OVERVIEW_CACHE_KEY, None)


def customer_to_dict(customer: Customer) -> dict:
    return {
        "id": customer.id,
        "name": customer.name,
        "email": customer.email,
        "phone": customer.phone,
        "address": customer.address,
        "location": customer.location,
        "status": customer.status,
        "payment_status": customer.payment_status,
        "package": package_to_dict(customer.package) if customer.package else None,
        "created_at": customer.created_at.isoformat() if customer.created_at else None,
    }


def package_to_dict(package: Package) -> dict:
    return {
        "id": package.id,
        "name": package.name,
        "speed": package.speed,
        "price": cents_to_amount(package.price_cents),
        "duration": package.duration,
        "description": package.description,
        "is_active": package.is_active,
    }


def employee_to_dict(employee: Employee) -> dict:
    metrics = employee.performance_metrics
    return {
        "id": employee.id,
        "name": employee.name,
        "email": employee.email,
        "phone": employee.phone,
        "position": employee.position,
        "division": employee.division,
        "role": employee.role,
        "role_label": employee.role_label,
        "hire_date": employee.hire_date.isoformat() if employee.hire_date else None,
        "is_active": employee.is_active,
        "can_handle_tickets": employee.can_handle_tickets,
        "handling_status": employee.handling_status,
        "max_concurrent_tickets": employee.max_concurrent_tickets,
        "current_ticket_count": employee.current_ticket_count,
        "performance": (
            {
                "total_tickets_resolved": metrics.total_tickets_resolved,
                "tickets_resolved_this_month": metrics.tickets_resolved_this_month,
                "average_resolution_time": metrics.average_resolution_time,
                "customer_rating": metrics.customer_rating,
            }
            if metrics
            else None
        ),
    }


def ticket_to_dict(ticket: Ticket) -> dict:
    return {
        "id": ticket.id,
        "title": ticket.title,
        "description": ticket.description,
        "status": ticket.status,
        "priority": ticket.priority,
        "category": ticket.category,
        "customer": {"id": ticket.customer.id, "name": ticket.customer.name},
        "assigned_to": (
            {"id": ticket.assigned_to.id, "name": ticket.assigned_to.name}
            if ticket.assigned_to
            else None
        ),
        "resolution_notes": ticket.resolution_notes,
        "resolution_time_hours": ticket.resolution_time_hours,
        "completed_at": ticket.completed_at.isoformat() if ticket.completed_at else None,
        "created_at": ticket.created_at.isoformat() if ticket.created_at else None,
        "feedback": (
            {"rating": ticket.feedback.rating, "comment": ticket.feedback.comment}
            if ticket.feedback
            else None
        ),
    }


def note_to_dict(note: TicketNote) -> dict:
    return {
        "id": note.id,
        "content": note.content,
        "is_internal": note.is_internal,
        "created_by": {"id": note.created_by.id, "name": note.created_by.name}
        if note.created_by
        else None,
        "created_at": note.created_at.isoformat() if note.created_at else None,
    }


def history_to_dict(entry: TicketStatusHistory) -> dict:
    return {
        "id": entry.id,
        "status": entry.status,
        "notes": entry.notes,
        "changed_by": {"id": entry.changed_by.id, "name": entry.changed_by.name}
        if entry.changed_by
        else None,
        "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
    }


def payment_to_dict(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "customer": {"id": payment.customer.id, "name": payment.customer.name},
        "amount": cents_to_amount(payment.amount_cents),
        "payment_date": payment.payment_date.isoformat(),
        "status": payment.status,
        "notes": payment.notes,
    }


def feedback_to_dict(feedback: TicketFeedback) -> dict:
    ticket = feedback.ticket
    return {
        "id": feedback.id,
        "rating": feedback.rating,
        "comment": feedback.comment,
        "created_at": feedback.created_at.isoformat() if feedback.created_at else None,
        "customer": {"id": feedback.customer.id, "name": feedback.customer.name},
        "ticket": {
            "id": ticket.id,
            "title": ticket.title,
            "assigned_to": {"id": ticket.assigned_to.id, "name": ticket.assigned_to.name}
            if ticket.assigned_to
            else None,
        },
    }


def notification_to_dict(notification: Notification) -> dict:
    return {
        "id": notification.id,
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "is_read": notification.is_read,
        "read_at": notification.read_at.isoformat() if notification.read_at else None,
        "related_type": notification.related_type,
        "related_id": notification.related_id,
        "created_at": notification.created_at.isoformat()
        if notification.created_at
        else None,
    }


def get_dashboard_overview_snapshot(app: Flask) -> dict[str, object]:
    ttl_seconds = float(
        app.config.get(
            "DASHBOARD_OVERVIEW_CACHE_SECONDS",
            DASHBOARD_OVERVIEW_CACHE_SECONDS_DEFAULT,
        )
    )
    now_monotonic = time.monotonic()
    cached = app.config.get(DASHBOARD_OVERVIEW_CACHE_KEY)

    if cached and cached.get("expires_at", 0) > now_monotonic:
        return cached["payload"]

    now = utcnow()
    start_of_month = datetime(now.year, now.month, 1, tzinfo=UTC)

    total_customers = Customer.query.count()
    active_customers = Customer.query.filter_by(status="ACTIVE").count()
    new_customers = Customer.query.filter(Customer.created_at >= start_of_month).count()

    status_counts = dict(
        db.session.query(Ticket.status, db.func.count(Ticket.id))
        .group_by(Ticket.status)
        .all()
    )
    urgent_open = Ticket.query.filter(
        Ticket.priority == "URGENT", Ticket.status.in_(ACTIVE_TICKET_STATUSES)
    ).count()

    employees = Employee.query.options(joinedload(Employee.performance_metrics)).all()
    available_technicians = sum(
        1
        for employee in employees
        if employee.can_handle_tickets
        and employee.is_active
        and employee.handling_status == "AVAILABLE"
    )

    total_revenue_cents = (
        db.session.query(db.func.coalesce(db.func.sum(Payment.amount_cents), 0)).scalar()
    )
    monthly_revenue_cents = (
        db.session.query(db.func.coalesce(db.func.sum(Payment.amount_cents), 0))
        .filter(Payment.payment_date >= start_of_month.date())
        .scalar()
    )
    pending_payments = Payment.query.filter_by(status="PENDING").count()
    overdue_payments = Payment.query.filter_by(status="OVERDUE").count()

    package_rows = (
        db.session.query(Package, db.func.count(Customer.id))
        .outerjoin(Customer, Customer.package_id == Package.id)
        .group_by(Package.id)
        .all()
    )
    most_popular = None
    if package_rows:
        package, customer_total = max(package_rows, key=lambda row: row[1])
        most_popular = {"name": package.name, "customers": customer_total}

    feedback_total, feedback_average = db.session.query(
        db.func.count(TicketFeedback.id), db.func.avg(TicketFeedback.rating)
    ).one()

    recent_tickets = (
        Ticket.query.options(joinedload(Ticket.customer))
        .order_by(Ticket.created_at.desc())
        .limit(5)
        .all()
    )
    recent_customers = Customer.query.order_by(Customer.created_at.desc()).limit(5).all()

    growth = []
    anchor = month_start(now)
    for offset in range(5, -1, -1):
        start = shift_month(anchor, -offset)
        end = shift_month(start, 1)
        start_dt = datetime(start.year, start.month, 1, tzinfo=UTC)
        end_dt = datetime(end.year, end.month, 1, tzinfo=UTC)
        growth.append(
            {
                "month": start.strftime("%b %Y"),
                "customers": Customer.query.filter(
                    Customer.created_at >= start_dt, Customer.created_at < end_dt
                ).count(),
                "tickets": Ticket.query.filter(
                    Ticket.created_at >= start_dt, Ticket.created_at < end_dt
                ).count(),
                "revenue": cents_to_amount(
                    db.session.query(
                        db.func.coalesce(db.func.sum(Payment.amount_cents), 0)
                    )
                    .filter(Payment.payment_date >= start, Payment.payment_date < end)
                    .scalar()
                ),
            }
        )

    top_employees = sorted(
        (employee for employee in employees if employee.performance_metrics),
        key=lambda employee: employee.performance_metrics.customer_rating or 0,
        reverse=True,
    )[:5]

    overview_payload = {
        "customers": {
            "total": total_customers,
            "active": active_customers,
            "new_this_month": new_customers,
        },
        "tickets": {
            "total": sum(status_counts.values()),
            "open": sum(status_counts.get(status, 0) for status in ACTIVE_TICKET_STATUSES),
            "resolved": status_counts.get("RESOLVED", 0),
            "closed": status_counts.get("CLOSED", 0),
            "urgent": urgent_open,
        },
        "employees": {
            "total": len(employees),
            "active": sum(1 for employee in employees if employee.is_active),
            "available_technicians": available_technicians,
        },
        "payments": {
            "total_revenue": cents_to_amount(total_revenue_cents),
            "monthly_revenue": cents_to_amount(monthly_revenue_cents),
            "pending": pending_payments,
            "overdue": overdue_payments,
        },
        "packages": {"total": len(package_rows), "most_popular": most_popular},
        "feedback": {
            "total": feedback_total or 0,
            "average_rating": round(float(feedback_average or 0), 2),
        },
        "recent_tickets": [
            {
                "id": ticket.id,
                "title": ticket.title,
                "status": ticket.status,
                "priority": ticket.priority,
                "customer": ticket.customer.name,
            }
            for ticket in recent_tickets
        ],
        "recent_customers": [
            {"id": customer.id, "name": customer.name, "status": customer.status}
            for customer in recent_customers
        ],
        "monthly_growth": growth,
        "top_employees": [
            {
                "id": employee.id,
                "name": employee.name,
                "customer_rating": employee.performance_metrics.customer_rating,
                "total_tickets_resolved": employee.performance_metrics.total_tickets_resolved,
            }
            for employee in top_employees
        ],
    }

    app.config[DASHBOARD_OVERVIEW_CACHE_KEY] = {
        "payload": overview_payload,
        "expires_at": now_monotonic + ttl_seconds,
    }

    return overview_payload


def _dashboard_overview_cache_invalidator(mapper, connection, target):  # noqa: ARG001
    invalidate_dashboard_overview_cache()


for model in (
    Customer,
    Package,
    Employee,
    Ticket,
    Payment,
    TicketFeedback,
    EmployeePerformanceMetrics,
):
    for event_name in ("after_insert", "after_update", "after_delete"):
        event.listen(model, event_name, _dashboard_overview_cache_invalidator)


def build_technician_workload() -> dict[str, object]:
    technicians = (
        Employee.query.filter(
            Employee.can_handle_tickets.is_(True), Employee.is_active.is_(True)
        )
        .order_by(Employee.name.asc())
        .all()
    )
    breakdown_rows = (
        db.session.query(Ticket.assigned_to_id, Ticket.status, db.func.count(Ticket.id))
        .filter(
            Ticket.assigned_to_id.isnot(None),
            Ticket.status.in_(ACTIVE_TICKET_STATUSES),
        )
        .group_by(Ticket.assigned_to_id, Ticket.status)
        .all()
    )
    breakdown: dict[int, dict[str, int]] = defaultdict(dict)
    for employee_id, status, total in breakdown_rows:
        breakdown[employee_id][status] = total

    entries = []
    for technician in technicians:
        status_counts = {
            status: breakdown[technician.id].get(status, 0)
            for status in ACTIVE_TICKET_STATUSES
        }
        active = sum(status_counts.values())
        maximum = technician.max_concurrent_tickets or 1
        entries.append(
            {
                "id": technician.id,
                "name": technician.name,
                "handling_status": technician.handling_status,
                "active_tickets": active,
                "max_concurrent_tickets": maximum,
                "workload_percentage": round(active / maximum * 100),
                "available_slots": max(maximum - active, 0),
                "can_take_more": active < maximum
                and technician.handling_status == "AVAILABLE",
                "tickets_by_status": status_counts,
            }
        )

    entries.sort(
        key=lambda entry: (not entry["can_take_more"], entry["workload_percentage"])
    )

    summary = {
        "total_technicians": len(entries),
        "available_technicians": sum(1 for entry in entries if entry["can_take_more"]),
        "total_active_tickets": sum(entry["active_tickets"] for entry in entries),
        "average_workload": round(
            sum(entry["workload_percentage"] for entry in entries) / len(entries)
        )
        if entries
        else 0,
    }
    return {"technicians": entries, "summary": summary}


def _period_start(period: str, today: date) -> date | None:
    if period == "week":
        return today - timedelta(days=7)
    if period == "month":
        return month_start(today)
    if period == "year":
        return date(today.year, 1, 1)
    return None


def build_payment_stats(period: str = "all") -> dict[str, object]:
    today = date.today()
    start = _period_start(period, today)

    query = Payment.query.options(joinedload(Payment.customer))
    if start is not None:
        query = query.filter(Payment.payment_date >= start)
    payments = query.order_by(Payment.payment_date.desc(), Payment.id.desc()).all()

    total_cents = sum(payment.amount_cents for payment in payments)
    status_counts = Counter(payment.status for payment in payments)
    revenue_by_status = defaultdict(int)
    for payment in payments:
        revenue_by_status[payment.status] += payment.amount_cents

    month_keys = last_twelve_month_keys(today)
    trend_cents = {key: 0 for key in month_keys}
    trend_counts = {key: 0 for key in month_keys}
    for payment in payments:
        key = payment.payment_date.strftime("%Y-%m")
        if key in trend_cents:
            trend_cents[key] += payment.amount_cents
            trend_counts[key] += 1

    by_customer: dict[int, dict[str, object]] = {}
    for payment in payments:
        entry = by_customer.setdefault(
            payment.customer_id,
            {"id": payment.customer_id, "name": payment.customer.name, "cents": 0, "count": 0},
        )
        entry["cents"] += payment.amount_cents
        entry["count"] += 1
    top_customers = sorted(by_customer.values(), key=lambda item: item["cents"], reverse=True)[:10]

    overdue = [payment for payment in payments if payment.status == "OVERDUE"]
    overdue_details = [
        {
            "id": payment.id,
            "customer": payment.customer.name,
            "amount": cents_to_amount(payment.amount_cents),
            "payment_date": payment.payment_date.isoformat(),
            "days_overdue": max((today - payment.payment_date).days, 0),
        }
        for payment in sorted(overdue, key=lambda payment: payment.payment_date)
    ]

    return {
        "period": period,
        "total_payments": len(payments),
        "total_revenue": cents_to_amount(total_cents),
        "average_payment": cents_to_amount(int(round(total_cents / len(payments))))
        if payments
        else 0,
        "status_breakdown": {
            status: status_counts.get(status, 0) for status in PAYMENT_STATUS_OPTIONS
        },
        "revenue_by_status": {
            status: cents_to_amount(revenue_by_status.get(status, 0))
            for status in PAYMENT_STATUS_OPTIONS
        },
        "monthly_trends": [
            {
                "month": key,
                "revenue": cents_to_amount(trend_cents[key]),
                "count": trend_counts[key],
            }
            for key in month_keys
        ],
        "top_customers": [
            {
                "id": item["id"],
                "name": item["name"],
                "total": cents_to_amount(item["cents"]),
                "payments": item["count"],
            }
            for item in top_customers
        ],
        "overdue_analysis": {
            "count": len(overdue),
            "total": cents_to_amount(sum(payment.amount_cents for payment in overdue)),
            "payments": overdue_details,
        },
        "recent_payments": [payment_to_dict(payment) for payment in payments[:10]],
    }


def _apply_date_range(query, column, date_from: date | None, date_to: date | None):
    if date_from is not None:
        query = query.filter(column >= date_from)
    if date_to is not None:
        query = query.filter(column <= date_to)
    return query


def _datetime_bounds(date_from: date | None, date_to: date | None):
    start = datetime(date_from.year, date_from.month, date_from.day, tzinfo=UTC) if date_from else None
    end = (
        datetime(date_to.year, date_to.month, date_to.day, tzinfo=UTC) + timedelta(days=1)
        if date_to
        else None
    )
    return start, end


def build_financial_report(
    date_from: date | None = None, date_to: date | None = None
) -> dict[str, object]:
    today = date.today()
    payments = _apply_date_range(
        Payment.query.options(joinedload(Payment.customer).joinedload(Customer.package)),
        Payment.payment_date,
        date_from,
        date_to,
    ).all()

    totals = {status: 0 for status in PAYMENT_STATUS_OPTIONS}
    for payment in payments:
        totals[payment.status] = totals.get(payment.status, 0) + payment.amount_cents
    total_cents = sum(totals.values())

    package_revenue: dict[str, dict[str, object]] = {}
    for payment in payments:
        package = payment.customer.package
        key = package.name if package else "No package"
        entry = package_revenue.setdefault(key, {"package": key, "cents": 0, "customers": set()})
        entry["cents"] += payment.amount_cents
        entry["customers"].add(payment.customer_id)

    month_keys = last_twelve_month_keys(today)
    monthly = {key: defaultdict(int) for key in month_keys}
    for payment in payments:
        key = payment.payment_date.strftime("%Y-%m")
        if key in monthly:
            monthly[key][payment.status] += payment.amount_cents
            monthly[key]["total"] += payment.amount_cents

    customers = Customer.query.options(joinedload(Customer.package)).all()
    payments_by_customer: dict[int, list[Payment]] = defaultdict(list)
    for payment in payments:
        payments_by_customer[payment.customer_id].append(payment)

    customer_analysis = []
    for customer in customers:
        rows = payments_by_customer.get(customer.id, [])
        statuses = {payment.status for payment in rows}
        if "OVERDUE" in statuses:
            derived_status = "OVERDUE"
        elif "PENDING" in statuses:
            derived_status = "PENDING"
        else:
            derived_status = "PAID"
        customer_analysis.append(
            {
                "id": customer.id,
                "name": customer.name,
                "status": customer.status,
                "package": customer.package.name if customer.package else None,
                "total_paid": cents_to_amount(
                    sum(p.amount_cents for p in rows if p.status == "PAID")
                ),
                "total_outstanding": cents_to_amount(
                    sum(p.amount_cents for p in rows if p.status != "PAID")
                ),
                "payment_count": len(rows),
                "payment_status": derived_status,
            }
        )

    overdue_customers = [
        entry for entry in customer_analysis if entry["payment_status"] == "OVERDUE"
    ]
    active_customers = sum(1 for customer in customers if customer.status == "ACTIVE")

    return {
        "summary": {
            "total_revenue": cents_to_amount(total_cents),
            "paid_revenue": cents_to_amount(totals["PAID"]),
            "pending_revenue": cents_to_amount(totals["PENDING"]),
            "overdue_revenue": cents_to_amount(totals["OVERDUE"]),
            "total_payments": len(payments),
            "active_customers": active_customers,
            "average_revenue_per_customer": cents_to_amount(
                int(round(totals["PAID"] / active_customers))
            )
            if active_customers
            else 0,
            "collection_rate": round(totals["PAID"] / total_cents * 100, 2)
            if total_cents
            else 0,
        },
        "revenue_by_package": sorted(
            (
                {
                    "package": entry["package"],
                    "revenue": cents_to_amount(entry["cents"]),
                    "customers": len(entry["customers"]),
                }
                for entry in package_revenue.values()
            ),
            key=lambda item: item["revenue"],
            reverse=True,
        ),
        "monthly_revenue": [
            {
                "month": key,
                "total": cents_to_amount(monthly[key]["total"]),
                "paid": cents_to_amount(monthly[key]["PAID"]),
                "pending": cents_to_amount(monthly[key]["PENDING"]),
                "overdue": cents_to_amount(monthly[key]["OVERDUE"]),
            }
            for key in month_keys
        ],
        "customer_analysis": customer_analysis,
        "overdue_customers": overdue_customers,
    }


def build_ticket_analytics(
    date_from: date | None = None,
    date_to: date | None = None,
    assigned_to: Employee | None = None,
) -> dict[str, object]:
    start, end = _datetime_bounds(date_from, date_to)
    query = Ticket.query.options(
        joinedload(Ticket.assigned_to), joinedload(Ticket.feedback)
    )
    if start is not None:
        query = query.filter(Ticket.created_at >= start)
    if end is not None:
        query = query.filter(Ticket.created_at < end)
    if assigned_to is not None:
        query = query.filter(Ticket.assigned_to_id == assigned_to.id)
    tickets = query.all()

    status_counts = Counter(ticket.status for ticket in tickets)
    priority_counts = Counter(ticket.priority for ticket in tickets)
    category_counts = Counter(ticket.category for ticket in tickets)

    resolution_times = [
        ticket.resolution_time_hours
        for ticket in tickets
        if ticket.resolution_time_hours is not None
    ]

    month_keys = last_twelve_month_keys()
    created_trend = {key: 0 for key in month_keys}
    resolved_trend = {key: 0 for key in month_keys}
    for ticket in tickets:
        created_key = as_utc(ticket.created_at).strftime("%Y-%m")
        if created_key in created_trend:
            created_trend[created_key] += 1
        if ticket.completed_at is not None:
            completed_key = as_utc(ticket.completed_at).strftime("%Y-%m")
            if completed_key in resolved_trend:
                resolved_trend[completed_key] += 1

    per_employee: dict[int, dict[str, object]] = {}
    for ticket in tickets:
        if ticket.assigned_to is None:
            continue
        entry = per_employee.setdefault(
            ticket.assigned_to.id,
            {
                "id": ticket.assigned_to.id,
                "name": ticket.assigned_to.name,
                "total": 0,
                "resolved": 0,
                "hours": [],
                "ratings": [],
            },
        )
        entry["total"] += 1
        if ticket.status in COMPLETED_TICKET_STATUSES:
            entry["resolved"] += 1
        if ticket.resolution_time_hours is not None:
            entry["hours"].append(ticket.resolution_time_hours)
        if ticket.feedback is not None:
            entry["ratings"].append(ticket.feedback.rating)

    ratings = [ticket.feedback.rating for ticket in tickets if ticket.feedback]
    rating_distribution = Counter(ratings)

    return {
        "summary": {
            "total_tickets": len(tickets),
            "open_tickets": sum(status_counts.get(s, 0) for s in ACTIVE_TICKET_STATUSES),
            "resolved_tickets": sum(
                status_counts.get(s, 0) for s in COMPLETED_TICKET_STATUSES
            ),
            "average_resolution_hours": round(
                sum(resolution_times) / len(resolution_times), 2
            )
            if resolution_times
            else 0,
            "average_rating": round(sum(ratings) / len(ratings), 2) if ratings else 0,
        },
        "status_breakdown": {s: status_counts.get(s, 0) for s in TICKET_STATUS_OPTIONS},
        "priority_breakdown": {
            p: priority_counts.get(p, 0) for p in TICKET_PRIORITY_OPTIONS
        },
        "category_breakdown": {
            c: category_counts.get(c, 0) for c in TICKET_CATEGORY_OPTIONS
        },
        "monthly_trends": [
            {"month": key, "created": created_trend[key], "resolved": resolved_trend[key]}
            for key in month_keys
        ],
        "employee_stats": sorted(
            (
                {
                    "id": entry["id"],
                    "name": entry["name"],
                    "total": entry["total"],
                    "resolved": entry["resolved"],
                    "average_resolution_hours": round(
                        sum(entry["hours"]) / len(entry["hours"]), 2
                    )
                    if entry["hours"]
                    else 0,
                    "average_rating": round(
                        sum(entry["ratings"]) / len(entry["ratings"]), 2
                    )
                    if entry["ratings"]
                    else 0,
                }
                for entry in per_employee.values()
            ),
            key=lambda item: item["resolved"],
            reverse=True,
        ),
        "rating_distribution": {
            str(rating): rating_distribution.get(rating, 0) for rating in range(1, 6)
        },
    }


def build_employee_performance(
    date_from: date | None = None, date_to: date | None = None
) -> dict[str, object]:
    start, end = _datetime_bounds(date_from, date_to)
    technicians = (
        Employee.query.options(joinedload(Employee.performance_metrics))
        .filter(Employee.can_handle_tickets.is_(True))
        .order_by(Employee.name.asc())
        .all()
    )

    rows = []
    for technician in technicians:
        query = Ticket.query.options(joinedload(Ticket.feedback)).filter(
            Ticket.assigned_to_id == technician.id
        )
        if start is not None:
            query = query.filter(Ticket.created_at >= start)
        if end is not None:
            query = query.filter(Ticket.created_at < end)
        tickets = query.all()

        resolved = [t for t in tickets if t.status in COMPLETED_TICKET_STATUSES]
        hours = [t.resolution_time_hours for t in resolved if t.resolution_time_hours is not None]
        ratings = [t.feedback.rating for t in tickets if t.feedback]
        active = sum(1 for t in tickets if t.status in ACTIVE_TICKET_STATUSES)

        rows.append(
            {
                "id": technician.id,
                "name": technician.name,
                "role": technician.role,
                "handling_status": technician.handling_status,
                "is_active": technician.is_active,
                "total_tickets": len(tickets),
                "resolved_tickets": len(resolved),
                "resolution_rate": round(len(resolved) / len(tickets) * 100, 2)
                if tickets
                else 0,
                "average_resolution_hours": round(sum(hours) / len(hours), 2)
                if hours
                else 0,
                "average_rating": round(sum(ratings) / len(ratings), 2) if ratings else 0,
                "feedback_count": len(ratings),
                "status_breakdown": dict(Counter(t.status for t in tickets)),
                "priority_breakdown": dict(Counter(t.priority for t in tickets)),
                "current_workload": {
                    "active_tickets": active,
                    "max_concurrent_tickets": technician.max_concurrent_tickets,
                    "percentage": round(active / technician.max_concurrent_tickets * 100)
                    if technician.max_concurrent_tickets
                    else 0,
                },
                "tickets_resolved_this_month": technician.performance_metrics.tickets_resolved_this_month
                if technician.performance_metrics
                else 0,
            }
        )

    total_tickets = sum(row["total_tickets"] for row in rows)
    total_resolved = sum(row["resolved_tickets"] for row in rows)
    rated = [row["average_rating"] for row in rows if row["feedback_count"]]
    timed = [row["average_resolution_hours"] for row in rows if row["resolved_tickets"]]

    top_performers = sorted(
        (row for row in rows if row["resolved_tickets"] > 0),
        key=lambda row: (row["average_rating"], row["resolved_tickets"]),
        reverse=True,
    )[:5]

    return {
        "employees": rows,
        "team_summary": {
            "total_technicians": len(rows),
            "active_technicians": sum(1 for row in rows if row["is_active"]),
            "total_tickets": total_tickets,
            "total_resolved": total_resolved,
            "team_resolution_rate": round(total_resolved / total_tickets * 100, 2)
            if total_tickets
            else 0,
            "average_rating": round(sum(rated) / len(rated), 2) if rated else 0,
            "average_resolution_hours": round(sum(timed) / len(timed), 2) if timed else 0,
        },
        "top_performers": top_performers,
    }


def _rating_summary(ratings: list[int]) -> dict[str, object]:
    counts = Counter(ratings)
    return {
        "total_feedbacks": len(ratings),
        "average_rating": round(sum(ratings) / len(ratings), 2) if ratings else 0,
        "rating_distribution": {str(value): counts.get(value, 0) for value in range(1, 6)},
    }


def _monthly_rating_trend(feedbacks: list[TicketFeedback], months: int = 6) -> list[dict]:
    anchor = month_start(date.today())
    keys = [shift_month(anchor, -offset).strftime("%Y-%m") for offset in range(months - 1, -1, -1)]
    buckets: dict[str, list[int]] = {key: [] for key in keys}
    for feedback in feedbacks:
        key = as_utc(feedback.created_at).strftime("%Y-%m")
        if key in buckets:
            buckets[key].append(feedback.rating)
    return [
        {
            "month": key,
            "total_feedbacks": len(buckets[key]),
            "average_rating": round(sum(buckets[key]) / len(buckets[key]), 2)
            if buckets[key]
            else 0,
        }
        for key in keys
    ]


def build_feedback_stats(
    employee_id: int | None = None,
    period: str = "all",
    rating: int | None = None,
) -> dict[str, object]:
    """Summarise customer feedback for the overview page.

    ``period`` is ``all``, ``month`` (since the first of the current month)
    or ``week`` (the last seven days). ``employee_id`` narrows the feedback
    to tickets assigned to that employee.
    """

    query = TicketFeedback.query.options(
        joinedload(TicketFeedback.customer),
        joinedload(TicketFeedback.ticket).joinedload(Ticket.assigned_to),
    )
    now = utcnow()
    if period == "month":
        query = query.filter(
            TicketFeedback.created_at >= datetime(now.year, now.month, 1, tzinfo=UTC)
        )
    elif period == "week":
        query = query.filter(TicketFeedback.created_at >= now - timedelta(days=7))
    if employee_id is not None:
        query = query.join(TicketFeedback.ticket).filter(Ticket.assigned_to_id == employee_id)
    if rating is not None:
        query = query.filter(TicketFeedback.rating == rating)
    feedbacks = query.order_by(TicketFeedback.created_at.desc(), TicketFeedback.id.desc()).all()

    per_employee: dict[int, dict[str, object]] = {}
    for feedback in feedbacks:
        technician = feedback.ticket.assigned_to
        if technician is None:
            continue
        entry = per_employee.setdefault(
            technician.id, {"id": technician.id, "name": technician.name, "ratings": []}
        )
        entry["ratings"].append(feedback.rating)

    employee_performance = []
    for entry in per_employee.values():
        row = {"id": entry["id"], "name": entry["name"]}
        row.update(_rating_summary(entry["ratings"]))
        employee_performance.append(row)
    employee_performance.sort(key=lambda row: row["average_rating"], reverse=True)

    summary = _rating_summary([feedback.rating for feedback in feedbacks])
    summary["period"] = period

    return {
        "summary": summary,
        "employee_performance": employee_performance,
        "feedbacks": [feedback_to_dict(feedback) for feedback in feedbacks],
        "monthly_trends": _monthly_rating_trend(feedbacks),
    }


def build_employee_feedback_performance(employee: Employee) -> dict[str, object]:
    feedbacks = (
        TicketFeedback.query.options(
            joinedload(TicketFeedback.customer), joinedload(TicketFeedback.ticket)
        )
        .join(TicketFeedback.ticket)
        .filter(Ticket.assigned_to_id == employee.id)
        .order_by(TicketFeedback.created_at.desc(), TicketFeedback.id.desc())
        .all()
    )
    metrics = employee.performance_metrics
    performance = _rating_summary([feedback.rating for feedback in feedbacks])
    performance["monthly_stats"] = _monthly_rating_trend(feedbacks)
    return {
        "employee": employee_to_dict(employee),
        "performance": performance,
        "metrics": {
            "total_tickets_resolved": metrics.total_tickets_resolved,
            "tickets_resolved_this_month": metrics.tickets_resolved_this_month,
            "average_resolution_time": metrics.average_resolution_time,
        }
        if metrics
        else None,
        "recent_feedback": [feedback_to_dict(feedback) for feedback in feedbacks[:10]],
    }


def search_records(employee: Employee, query: str, search_type: str, limit: int):
    pattern = f"%{query}%"
    results: list[dict[str, object]] = []
    breakdown: dict[str, int] = {}

    if search_type in ("all", "customers") and has_permission(employee, "customers", "read"):
        customers = (
            Customer.query.options(joinedload(Customer.package))
            .filter(
                or_(
                    Customer.name.ilike(pattern),
                    Customer.email.ilike(pattern),
                    Customer.phone.ilike(pattern),
                    Customer.location.ilike(pattern),
                )
            )
            .order_by(Customer.name.asc())
            .limit(limit)
            .all()
        )
        breakdown["customers"] = len(customers)
        results.extend(
            {
                "id": customer.id,
                "type": "customer",
                "title": customer.name,
                "subtitle": customer.email or customer.phone or "",
                "description": customer.location or customer.address or "",
                "url": url_for("customer_detail", customer_id=customer.id),
                "metadata": {
                    "status": customer.status,
                    "package": customer.package.name if customer.package else None,
                },
            }
            for customer in customers
        )

    if search_type in ("all", "tickets") and has_permission(employee, "tickets", "read"):
        tickets = (
            Ticket.query.join(Customer, Ticket.customer_id == Customer.id)
            .options(joinedload(Ticket.customer), joinedload(Ticket.assigned_to))
            .filter(
                or_(
                    Ticket.title.ilike(pattern),
                    Ticket.description.ilike(pattern),
                    Customer.name.ilike(pattern),
                )
            )
            .order_by(Ticket.created_at.desc())
            .limit(limit)
            .all()
        )
        breakdown["tickets"] = len(tickets)
        results.extend(
            {
                "id": ticket.id,
                "type": "ticket",
                "title": ticket.title,
                "subtitle": ticket.customer.name,
                "description": ticket.description[:120],
                "url": url_for("ticket_detail", ticket_id=ticket.id),
                "metadata": {
                    "status": ticket.status,
                    "priority": ticket.priority,
                    "assigned_to": ticket.assigned_to.name if ticket.assigned_to else None,
                },
            }
            for ticket in tickets
        )

    if search_type in ("all", "employees") and has_permission(employee, "employees", "read"):
        employees = (
            Employee.query.join(User, Employee.user_id == User.id)
            .filter(
                or_(
                    Employee.name.ilike(pattern),
                    User.email.ilike(pattern),
                    Employee.position.ilike(pattern),
                    Employee.division.ilike(pattern),
                )
            )
            .order_by(Employee.name.asc())
            .limit(limit)
            .all()
        )
        breakdown["employees"] = len(employees)
        results.extend(
            {
                "id": member.id,
                "type": "employee",
                "title": member.name,
                "subtitle": member.position or member.role_label,
                "description": member.division or "",
                "url": url_for("employee_detail", employee_id=member.id),
                "metadata": {
                    "role": member.role,
                    "handling_status": member.handling_status,
                },
            }
            for member in employees
        )

    if search_type in ("all", "packages") and has_permission(employee, "packages", "read"):
        packages = (
            Package.query.filter(
                or_(
                    Package.name.ilike(pattern),
                    Package.speed.ilike(pattern),
                    Package.description.ilike(pattern),
                )
            )
            .order_by(Package.name.asc())
            .limit(limit)
            .all()
        )
        breakdown["packages"] = len(packages)
        results.extend(
            {
                "id": package.id,
                "type": "package",
                "title": package.name,
                "subtitle": package.speed,
                "description": package.description or "",
                "url": url_for("edit_package", package_id=package.id),
                "metadata": {
                    "price": cents_to_amount(package.price_cents),
                    "duration": package.duration,
                    "is_active": package.is_active,
                },
            }
            for package in packages
        )

    payload: dict[str, object] = {
        "query": query,
        "type": search_type,
        "results": results[:limit],
        "total": len(results[:limit]),
    }
    if search_type == "all":
        payload["breakdown"] = breakdown
    return payload


EXPORT_COLUMNS: dict[str, list[tuple[str, str]]] = {
    "customers": [
        ("id", "ID"),
        ("name", "Name"),
        ("email", "Email"),
        ("phone", "Phone"),
        ("address", "Address"),
        ("location", "Location"),
        ("status", "Status"),
        ("package", "Package"),
        ("payment_status", "Payment Status"),
        ("created_at", "Created At"),
    ],
    "tickets": [
        ("id", "ID"),
        ("title", "Title"),
        ("customer", "Customer"),
        ("status", "Status"),
        ("priority", "Priority"),
        ("category", "Category"),
        ("assigned_to", "Assigned To"),
        ("created_at", "Created At"),
        ("completed_at", "Completed At"),
    ],
    "payments": [
        ("id", "ID"),
        ("customer", "Customer"),
        ("amount", "Amount"),
        ("payment_date", "Payment Date"),
        ("status", "Status"),
        ("notes", "Notes"),
    ],
    "employees": [
        ("id", "ID"),
        ("name", "Name"),
        ("email", "Email"),
        ("phone", "Phone"),
        ("position", "Position"),
        ("division", "Division"),
        ("role", "Role"),
        ("hire_date", "Hire Date"),
        ("is_active", "Active"),
        ("handling_status", "Handling Status"),
    ],
}


def _format_export_datetime(value: datetime | None) -> str:
    if value is None:
        return ""
    return as_utc(value).strftime("%Y-%m-%d %H:%M")


def collect_export_rows(entity: str, limit: int) -> list[dict[str, object]]:
    if entity == "customers":
        return [
            {
                "id": customer.id,
                "name": customer.name,
                "email": customer.email or "",
                "phone": customer.phone or "",
                "address": customer.address or "",
                "location": customer.location or "",
                "status": customer.status,
                "package": customer.package.name if customer.package else "",
                "payment_status": customer.payment_status,
                "created_at": _format_export_datetime(customer.created_at),
            }
            for customer in Customer.query.options(joinedload(Customer.package))
            .order_by(Customer.created_at.desc())
            .limit(limit)
        ]
    if entity == "tickets":
        return [
            {
                "id": ticket.id,
                "title": ticket.title,
                "customer": ticket.customer.name,
                "status": ticket.status,
                "priority": ticket.priority,
                "category": ticket.category,
                "assigned_to": ticket.assigned_to.name if ticket.assigned_to else "",
                "created_at": _format_export_datetime(ticket.created_at),
                "completed_at": _format_export_datetime(ticket.completed_at),
            }
            for ticket in Ticket.query.options(
                joinedload(Ticket.customer), joinedload(Ticket.assigned_to)
            )
            .order_by(Ticket.created_at.desc())
            .limit(limit)
        ]
    if entity == "payments":
        return [
            {
                "id": payment.id,
                "customer": payment.customer.name,
                "amount": f"{Decimal(payment.amount_cents) / Decimal(100):.2f}",
                "payment_date": payment.payment_date.isoformat(),
                "status": payment.status,
                "notes": payment.notes or "",
            }
            for payment in Payment.query.options(joinedload(Payment.customer))
            .order_by(Payment.payment_date.desc())
            .limit(limit)
        ]
    if entity == "employees":
        return [
            {
                "id": member.id,
                "name": member.name,
                "email": member.email or "",
                "phone": member.phone or "",
                "position": member.position or "",
                "division": member.division or "",
                "role": member.role_label,
                "hire_date": member.hire_date.isoformat() if member.hire_date else "",
                "is_active": "Yes" if member.is_active else "No",
                "handling_status": member.handling_status,
            }
            for member in Employee.query.options(joinedload(Employee.user))
            .order_by(Employee.name.asc())
            .limit(limit)
        ]
    raise KeyError(entity)


def rows_to_csv(entity: str, rows: list[dict[str, object]]) -> str:
    """Render export rows as CSV.

    Values containing a comma, quote or line break are quoted and embedded
    quotes are doubled.
    """

    columns = EXPORT_COLUMNS[entity]
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow([label for _, label in columns])
    for row in rows:
        writer.writerow([row.get(key, "") for key, _ in columns])
    return buffer.getvalue()


def register_routes(app: Flask) -> None:
    def _form_data():
        if request.is_json:
            return request.get_json(silent=True) or {}
        return request.form

    def _safe_next(default_url: str) -> str:
        next_url = request.args.get("next") or request.form.get("next")
        if next_url and next_url.startswith("/") and not next_url.startswith("//"):
            return next_url
        return default_url

    def _success(message: str, redirect_to: str, payload: dict | None = None, status: int = 200):
        if wants_json_response():
            body: dict[str, object] = {"success": True, "message": message}
            if payload:
                body.update(payload)
            return jsonify(body), status
        flash(message, "success")
        return redirect(_safe_next(redirect_to))

    def _failure(message: str, redirect_to: str, status: int = 400):
        if wants_json_response():
            return jsonify({"error": message}), status
        flash(message, "danger")
        return redirect(_safe_next(redirect_to))

    def _invalid(errors: dict[str, str], template: str, **context):
        if wants_json_response():
            return jsonify({"error": "Validation failed", "errors": errors}), 400
        flash("Please correct the highlighted fields.", "danger")
        return render_template(template, errors=errors, form=_form_data(), **context), 400

    def _filter_date(name: str) -> date | None:
        raw = request.args.get(name, "").strip()
        if not raw:
            return None
        try:
            return parse_iso_date(raw)
        except ValueError:
            return None

    def _page_args(default_per_page: int = 20) -> tuple[int, int]:
        page = max(request.args.get("page", 1, type=int) or 1, 1)
        per_page = request.args.get("limit", default_per_page, type=int) or default_per_page
        return page, max(1, min(per_page, 100))

    def _technician_options() -> list[Employee]:
        return (
            Employee.query.filter(
                Employee.can_handle_tickets.is_(True), Employee.is_active.is_(True)
            )
            .order_by(Employee.name.asc())
            .all()
        )

    def _ticket_form_options() -> dict[str, object]:
        return {
            "customers": Customer.query.order_by(Customer.name.asc()).all(),
            "technicians": _technician_options(),
        }

    def _server_error():
        if wants_json_response():
            return jsonify({"error": "Internal server error"}), 500
        return (
            render_template(
                "error.html",
                code=500,
                message="Something went wrong while processing your request.",
            ),
            500,
        )

    @app.template_filter("currency")
    def format_currency(value: int | None):
        return format_cents(value, app.config.get("CURRENCY_PREFIX", "Rp "))

    @app.template_filter("money")
    def format_money(value: float | None):
        cents = int((Decimal(str(value or 0)) * 100).quantize(Decimal("1")))
        return format_cents(cents, app.config.get("CURRENCY_PREFIX", "Rp "))

    @app.template_filter("date_or_dash")
    def format_date(value: date | datetime | None):
        if not value:
            return "-"
        return value.strftime("%b %d, %Y")

    @app.template_filter("datetime_or_dash")
    def format_datetime_value(value: datetime | None):
        if not value:
            return "-"
        return as_utc(value).strftime("%b %d, %Y %H:%M")

    @app.template_filter("humanize")
    def humanize_filter(value: str | None):
        return humanize_enum(value)

    @app.before_request
    def load_logged_in_user():
        g.current_user = None
        g.current_employee = None

        user_id = session.get(SESSION_USER_KEY)
        if user_id is None:
            return

        user = db.session.get(User, user_id)
        if user is None or user.employee is None or not user.employee.is_active:
            session.pop(SESSION_USER_KEY, None)
            return

        g.current_user = user
        g.current_employee = user.employee

    @app.context_processor
    def inject_status_options():
        employee = current_employee()
        unread_total = 0
        if employee is not None:
            unread_total = Notification.query.filter_by(
                recipient_type="EMPLOYEE", recipient_id=employee.id, is_read=False
            ).count()

        def can(resource: str, action: str, context: dict | None = None) -> bool:
            return has_permission(employee, resource, action, context)

        def can_access(path: str) -> bool:
            return can_access_route(employee, path)

        return {
            "current_employee": employee,
            "can": can,
            "can_access": can_access,
            "unread_notification_count": unread_total,
            "company_name": app.config.get("COMPANY_NAME"),
            "role_options": ROLE_OPTIONS,
            "role_display_names": ROLE_DISPLAY_NAMES,
            "handling_status_options": HANDLING_STATUS_OPTIONS,
            "package_duration_options": PACKAGE_DURATION_OPTIONS,
            "customer_status_options": CUSTOMER_STATUS_OPTIONS,
            "ticket_status_options": TICKET_STATUS_OPTIONS,
            "ticket_status_transitions": TICKET_STATUS_TRANSITIONS,
            "ticket_priority_options": TICKET_PRIORITY_OPTIONS,
            "ticket_category_options": TICKET_CATEGORY_OPTIONS,
            "payment_status_options": PAYMENT_STATUS_OPTIONS,
        }

    @app.errorhandler(403)
    def forbidden(error):  # noqa: ARG001
        if wants_json_response():
            return (
                jsonify({"error": "You don't have permission to access this resource"}),
                403,
            )
        return (
            render_template(
                "error.html",
                code=403,
                message="You don't have permission to access this page.",
            ),
            403,
        )

    @app.errorhandler(404)
    def not_found(error):  # noqa: ARG001
        if wants_json_response():
            return jsonify({"error": "Not found"}), 404
        return (
            render_template("error.html", code=404, message="That page could not be found."),
            404,
        )

    @app.errorhandler(SQLAlchemyError)
    def database_error(error):  # noqa: ARG001
        db.session.rollback()
        app.logger.exception("Database error during %s %s", request.method, request.path)
        return _server_error()

    @app.errorhandler(500)
    def internal_error(error):
        original = getattr(error, "original_exception", None)
        if original is not None and not isinstance(original, HTTPException):
            app.logger.error(
                "Unhandled error during %s %s: %s", request.method, request.path, original
            )
        return _server_error()

    @app.route("/")
    def index():
        if current_employee() is None:
            return redirect(url_for("login"))
        return redirect(url_for("dashboard"))

    @app.route("/login", methods=["GET", "POST"])
    def login():
        if request.method == "POST":
            email = request.form.get("email", "").strip().lower()
            password = request.form.get("password", "")

            if email and password:
                user = User.query.filter_by(email=email).first()
                if (
                    user
                    and user.check_password(password)
                    and user.employee is not None
                    and user.employee.is_active
                ):
                    session.clear()
                    session[SESSION_USER_KEY] = user.id
                    user.last_login_at = utcnow()
                    db.session.commit()
                    app.logger.info("User %s logged in", user.email)
                    flash(f"Welcome back, {user.employee.name}!", "success")
                    return redirect(_safe_next(url_for("dashboard")))

            app.logger.warning("Rejected login attempt for %s", email or "<blank>")
            flash("Invalid email or password.", "danger")

        return render_template("login.html")

    @app.get("/logout")
    def logout():
        session.clear()
        flash("You have been logged out.", "info")
        return redirect(url_for("login"))

    @app.route("/dashboard")
    @permission_required("dashboard", "read")
    def dashboard():
        stats = get_dashboard_overview_snapshot(app)
        employee = current_employee()
        my_tickets: list[Ticket] = []
        if employee.can_handle_tickets:
            my_tickets = (
                Ticket.query.options(joinedload(Ticket.customer))
                .filter(
                    Ticket.assigned_to_id == employee.id,
                    Ticket.status.in_(ACTIVE_TICKET_STATUSES),
                )
                .order_by(Ticket.created_at.desc())
                .all()
            )

        if wants_json_response():
            return jsonify(
                {"stats": stats, "my_tickets": [ticket_to_dict(t) for t in my_tickets]}
            )
        return render_template("dashboard.html", stats=stats, my_tickets=my_tickets)

    # Customers

    @app.get("/customers")
    @permission_required("customers", "read")
    def customers():
        search = request.args.get("search", "").strip()
        status_filter = request.args.get("status", "").strip().upper()
        package_filter = request.args.get("package", type=int)
        page, per_page = _page_args()

        query = Customer.query.options(joinedload(Customer.package))
        if search:
            pattern = f"%{search}%"
            query = query.filter(
                or_(
                    Customer.name.ilike(pattern),
                    Customer.email.ilike(pattern),
                    Customer.phone.ilike(pattern),
                    Customer.location.ilike(pattern),
                )
            )
        if status_filter in CUSTOMER_STATUS_OPTIONS:
            query = query.filter(Customer.status == status_filter)
        if package_filter:
            query = query.filter(Customer.package_id == package_filter)

        pagination = query.order_by(Customer.created_at.desc()).paginate(
            page=page, per_page=per_page, error_out=False
        )

        if wants_json_response():
            return jsonify(
                {
                    "customers": [customer_to_dict(c) for c in pagination.items],
                    "total": pagination.total,
                    "page": pagination.page,
                    "pages": pagination.pages,
                }
            )
        return render_template(
            "customers.html",
            pagination=pagination,
            customers=pagination.items,
            packages=Package.query.order_by(Package.name.asc()).all(),
            search=search,
            status_filter=status_filter,
            package_filter=package_filter,
        )

    @app.get("/customers/new")
    @permission_required("customers", "create")
    def new_customer():
        return render_template(
            "customer_form.html",
            customer=None,
            form={},
            errors={},
            packages=Package.query.filter_by(is_active=True).order_by(Package.name).all(),
        )

    @app.post("/customers")
    @permission_required("customers", "create")
    def create_customer():
        cleaned, errors = validate_customer_data(_form_data())
        if errors:
            return _invalid(
                errors,
                "customer_form.html",
                customer=None,
                packages=Package.query.filter_by(is_active=True).order_by(Package.name).all(),
            )

        customer = Customer(**cleaned)
        db.session.add(customer)
        db.session.commit()
        app.logger.info("Customer %s created by %s", customer.id, current_employee().name)

        return _success(
            f"Customer {customer.name} added.",
            url_for("customer_detail", customer_id=customer.id),
            {"customer": customer_to_dict(customer)},
            201,
        )

    @app.get("/customers/<int:customer_id>")
    @permission_required("customers", "read")
    def customer_detail(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        tickets = (
            Ticket.query.options(joinedload(Ticket.assigned_to))
            .filter_by(customer_id=customer.id)
            .order_by(Ticket.created_at.desc())
            .all()
        )
        if wants_json_response():
            payload = customer_to_dict(customer)
            payload["tickets"] = [ticket_to_dict(t) for t in tickets]
            payload["payments"] = [payment_to_dict(p) for p in customer.payments]
            return jsonify({"customer": payload})
        return render_template(
            "customer_detail.html",
            customer=customer,
            tickets=tickets,
            payments=customer.payments,
            can_delete=not any(t.status in ACTIVE_TICKET_STATUSES for t in tickets),
        )

    @app.get("/customers/<int:customer_id>/edit")
    @permission_required("customers", "update")
    def edit_customer(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        form = {
            "name": customer.name,
            "email": customer.email or "",
            "phone": customer.phone or "",
            "address": customer.address or "",
            "location": customer.location or "",
            "status": customer.status,
            "package_id": customer.package_id or "",
        }
        return render_template(
            "customer_form.html",
            customer=customer,
            form=form,
            errors={},
            packages=Package.query.order_by(Package.name).all(),
        )

    @app.post("/customers/<int:customer_id>/update")
    @permission_required("customers", "update")
    def update_customer(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        cleaned, errors = validate_customer_data(_form_data(), customer)
        if errors:
            return _invalid(
                errors,
                "customer_form.html",
                customer=customer,
                packages=Package.query.order_by(Package.name).all(),
            )

        for field, value in cleaned.items():
            setattr(customer, field, value)
        customer.updated_at = utcnow()
        db.session.commit()

        return _success(
            "Customer updated.",
            url_for("customer_detail", customer_id=customer.id),
            {"customer": customer_to_dict(customer)},
        )

    @app.post("/customers/<int:customer_id>/delete")
    @permission_required("customers", "delete")
    def delete_customer(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        active_tickets = Ticket.query.filter(
            Ticket.customer_id == customer.id,
            Ticket.status.in_(ACTIVE_TICKET_STATUSES),
        ).count()
        if active_tickets:
            return _failure(
                f"Cannot delete customer with {active_tickets} active tickets",
                url_for("customer_detail", customer_id=customer.id),
            )

        Notification.query.filter_by(
            recipient_type="CUSTOMER", recipient_id=customer.id
        ).delete()
        name = customer.name
        db.session.delete(customer)
        db.session.commit()
        app.logger.info("Customer %s deleted by %s", customer_id, current_employee().name)

        return _success(f"Customer {name} removed.", url_for("customers"))

    # Packages

    @app.get("/packages")
    @permission_required("packages", "read")
    def packages():
        search = request.args.get("search", "").strip()
        status_filter = request.args.get("status", "").strip().lower()

        query = db.session.query(Package, db.func.count(Customer.id)).outerjoin(
            Customer, Customer.package_id == Package.id
        )
        if search:
            pattern = f"%{search}%"
            query = query.filter(
                or_(
                    Package.name.ilike(pattern),
                    Package.speed.ilike(pattern),
                    Package.description.ilike(pattern),
                )
            )
        if status_filter == "active":
            query = query.filter(Package.is_active.is_(True))
        elif status_filter == "inactive":
            query = query.filter(Package.is_active.is_(False))

        rows = query.group_by(Package.id).order_by(Package.name.asc()).all()

        if wants_json_response():
            return jsonify(
                {
                    "packages": [
                        {**package_to_dict(package), "customer_count": total}
                        for package, total in rows
                    ]
                }
            )
        return render_template(
            "packages.html", rows=rows, search=search, status_filter=status_filter
        )

    @app.get("/packages/new")
    @permission_required("packages", "create")
    def new_package():
        return render_template("package_form.html", package=None, form={}, errors={})

    @app.post("/packages")
    @permission_required("packages", "create")
    def create_package():
        data = _form_data()
        cleaned, errors = validate_package_data(data)
        if errors:
            return _invalid(errors, "package_form.html", package=None)

        package = Package(**cleaned, is_active=is_truthy(data.get("is_active", True)))
        db.session.add(package)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return _failure("A package with this name already exists.", url_for("new_package"))

        return _success(
            f"Package {package.name} created.",
            url_for("packages"),
            {"package": package_to_dict(package)},
            201,
        )

    @app.get("/packages/<int:package_id>/edit")
    @permission_required("packages", "read")
    def edit_package(package_id: int):
        package = Package.query.get_or_404(package_id)
        form = {
            "name": package.name,
            "speed": package.speed,
            "price": f"{Decimal(package.price_cents) / Decimal(100):.2f}",
            "duration": package.duration,
            "description": package.description or "",
            "is_active": package.is_active,
        }
        return render_template(
            "package_form.html",
            package=package,
            form=form,
            errors={},
            customer_count=len(package.customers),
        )

    @app.post("/packages/<int:package_id>/update")
    @permission_required("packages", "update")
    def update_package(package_id: int):
        package = Package.query.get_or_404(package_id)
        data = _form_data()
        cleaned, errors = validate_package_data(data, package)
        if errors:
            return _invalid(errors, "package_form.html", package=package)

        for field, value in cleaned.items():
            setattr(package, field, value)
        if request.is_json:
            package.is_active = is_truthy(data.get("is_active", package.is_active))
        else:
            package.is_active = is_truthy(data.get("is_active"))
        package.updated_at = utcnow()
        db.session.commit()

        return _success(
            "Package updated.", url_for("packages"), {"package": package_to_dict(package)}
        )

    @app.post("/packages/<int:package_id>/toggle")
    @permission_required("packages", "update")
    def toggle_package(package_id: int):
        package = Package.query.get_or_404(package_id)
        package.is_active = not package.is_active
        db.session.commit()
        state = "activated" if package.is_active else "deactivated"
        return _success(
            f"Package {package.name} {state}.",
            url_for("packages"),
            {"package": package_to_dict(package)},
        )

    @app.post("/packages/<int:package_id>/delete")
    @permission_required("packages", "delete")
    def delete_package(package_id: int):
        package = Package.query.get_or_404(package_id)
        active_customers = Customer.query.filter_by(
            package_id=package.id, status="ACTIVE"
        ).count()
        if active_customers:
            return _failure(
                f"Cannot delete package with {active_customers} active customers",
                url_for("packages"),
            )

        name = package.name
        db.session.delete(package)
        db.session.commit()
        app.logger.info("Package %s deleted by %s", package_id, current_employee().name)
        return _success(f"Package {name} removed.", url_for("packages"))

    # Employees

    @app.get("/employees")
    @permission_required("employees", "read")
    def employees():
        search = request.args.get("search", "").strip()
        role_filter = request.args.get("role", "").strip().upper()
        status_filter = request.args.get("status", "").strip().lower()

        query = Employee.query.join(User, Employee.user_id == User.id).options(
            joinedload(Employee.performance_metrics)
        )
        if search:
            pattern = f"%{search}%"
            query = query.filter(
                or_(
                    Employee.name.ilike(pattern),
                    User.email.ilike(pattern),
                    Employee.position.ilike(pattern),
                    Employee.division.ilike(pattern),
                )
            )
        if role_filter in ROLE_OPTIONS:
            query = query.filter(Employee.role == role_filter)
        if status_filter == "active":
            query = query.filter(Employee.is_active.is_(True))
        elif status_filter == "inactive":
            query = query.filter(Employee.is_active.is_(False))

        members = query.order_by(Employee.name.asc()).all()

        if wants_json_response():
            return jsonify({"employees": [employee_to_dict(e) for e in members]})
        return render_template(
            "employees.html",
            employees=members,
            search=search,
            role_filter=role_filter,
            status_filter=status_filter,
        )

    @app.get("/employees/new")
    @permission_required("employees", "create")
    def new_employee():
        form = {"hire_date": date.today().isoformat(), "max_concurrent_tickets": 5, "is_active": True}
        return render_template("employee_form.html", employee=None, form=form, errors={})

    @app.post("/employees")
    @permission_required("employees", "create")
    def create_employee():
        cleaned, errors = validate_employee_data(_form_data())
        if errors:
            return _invalid(errors, "employee_form.html", employee=None)

        user = User(email=cleaned["email"])
        user.set_password(cleaned["password"])
        employee = Employee(
            user=user,
            name=cleaned["name"],
            phone=cleaned["phone"],
            position=cleaned["position"],
            division=cleaned["division"],
            role=cleaned["role"],
            hire_date=cleaned["hire_date"],
            photo_url=cleaned["photo_url"],
            is_active=cleaned["is_active"],
            can_handle_tickets=cleaned["can_handle_tickets"],
            handling_status="AVAILABLE" if cleaned["can_handle_tickets"] else "OFFLINE",
            max_concurrent_tickets=cleaned["max_concurrent_tickets"],
            current_ticket_count=0,
        )
        db.session.add_all([user, employee])
        ensure_performance_metrics(employee)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return _failure("An account with that email already exists.", url_for("new_employee"))

        app.logger.info("Employee %s created by %s", employee.id, current_employee().name)
        return _success(
            f"Employee {employee.name} created.",
            url_for("employee_detail", employee_id=employee.id),
            {"employee": employee_to_dict(employee)},
            201,
        )

    @app.get("/employees/<int:employee_id>")
    @permission_required("employees", "read")
    def employee_detail(employee_id: int):
        employee = Employee.query.get_or_404(employee_id)
        tickets = (
            Ticket.query.options(joinedload(Ticket.customer))
            .filter_by(assigned_to_id=employee.id)
            .order_by(Ticket.created_at.desc())
            .limit(20)
            .all()
        )
        if wants_json_response():
            payload = employee_to_dict(employee)
            payload["recent_tickets"] = [ticket_to_dict(t) for t in tickets]
            return jsonify({"employee": payload})
        return render_template(
            "employee_detail.html",
            employee=employee,
            tickets=tickets,
            metrics=employee.performance_metrics,
        )

    @app.get("/employees/<int:employee_id>/performance")
    @permission_required("employees", "read")
    def employee_performance(employee_id: int):
        employee = Employee.query.get_or_404(employee_id)
        report = build_employee_feedback_performance(employee)
        if wants_json_response():
            return jsonify(report)
        return render_template(
            "employee_performance.html", employee=employee, report=report
        )

    @app.get("/employees/<int:employee_id>/edit")
    @permission_required("employees", "update")
    def edit_employee(employee_id: int):
        employee = Employee.query.get_or_404(employee_id)
        form = {
            "name": employee.name,
            "email": employee.email or "",
            "phone": employee.phone or "",
            "position": employee.position or "",
            "division": employee.division or "",
            "role": employee.role,
            "hire_date": employee.hire_date.isoformat() if employee.hire_date else "",
            "photo_url": employee.photo_url or "",
            "is_active": employee.is_active,
            "can_handle_tickets": employee.can_handle_tickets,
            "max_concurrent_tickets": employee.max_concurrent_tickets,
        }
        return render_template(
            "employee_form.html", employee=employee, form=form, errors={}
        )

    @app.post("/employees/<int:employee_id>/update")
    @permission_required("employees", "update")
    def update_employee(employee_id: int):
        employee = Employee.query.get_or_404(employee_id)
        data = _form_data()
        cleaned, errors = validate_employee_data(data, employee)
        if errors:
            return _invalid(errors, "employee_form.html", employee=employee)

        if request.is_json:
            cleaned["is_active"] = is_truthy(data.get("is_active", employee.is_active))
            cleaned["can_handle_tickets"] = is_truthy(
                data.get("can_handle_tickets", employee.can_handle_tickets)
            )

        if employee.id == current_employee().id and not cleaned["is_active"]:
            return _failure(
                "You cannot deactivate your own account.",
                url_for("edit_employee", employee_id=employee.id),
            )

        employee.user.email = cleaned["email"]
        if cleaned["password"]:
            employee.user.set_password(cleaned["password"])
        for field in (
            "name",
            "phone",
            "position",
            "division",
            "role",
            "hire_date",
            "photo_url",
            "is_active",
            "can_handle_tickets",
            "max_concurrent_tickets",
        ):
            setattr(employee, field, cleaned[field])
        if not employee.can_handle_tickets:
            employee.handling_status = "OFFLINE"
        employee.updated_at = utcnow()

        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return _failure(
                "An account with that email already exists.",
                url_for("edit_employee", employee_id=employee.id),
            )

        return _success(
            "Employee updated.",
            url_for("employee_detail", employee_id=employee.id),
            {"employee": employee_to_dict(employee)},
        )

    @app.post("/employees/<int:employee_id>/handling-status")
    @login_required
    def update_handling_status(employee_id: int):
        employee = Employee.query.get_or_404(employee_id)
        actor = current_employee()
        if actor.id != employee.id:
            require_permission("employees", "update")

        status_value = _text(_form_data(), "handling_status").upper()
        back = url_for("employee_detail", employee_id=employee.id)
        if status_value not in HANDLING_STATUS_OPTIONS:
            return _failure("Unknown handling status.", back)
        if not employee.can_handle_tickets and status_value != "OFFLINE":
            return _failure("Employees who cannot handle tickets must stay offline.", back)

        employee.handling_status = status_value
        db.session.commit()
        return _success(
            f"{employee.name} is now {humanize_enum(status_value).lower()}.",
            back,
            {"employee": employee_to_dict(employee)},
        )

    @app.post("/employees/<int:employee_id>/delete")
    @permission_required("employees", "delete")
    def delete_employee(employee_id: int):
        employee = Employee.query.get_or_404(employee_id)
        back = url_for("employee_detail", employee_id=employee.id)

        if employee.id == current_employee().id:
            return _failure("You cannot delete your own account.", back)

        active_tickets = employee.active_ticket_total()
        if active_tickets:
            return _failure(
                f"Cannot delete employee with {active_tickets} active tickets", back
            )

        TicketNote.query.filter_by(created_by_id=employee.id).delete()
        TicketStatusHistory.query.filter_by(changed_by_id=employee.id).update(
            {TicketStatusHistory.changed_by_id: None}
        )
        Notification.query.filter_by(
            recipient_type="EMPLOYEE", recipient_id=employee.id
        ).delete()

        name = employee.name
        user = employee.user
        db.session.delete(employee)
        db.session.delete(user)
        db.session.commit()
        app.logger.info("Employee %s deleted by %s", employee_id, current_employee().name)
        return _success(f"Employee {name} removed.", url_for("employees"))

    # Tickets

    @app.get("/tickets")
    @permission_required("tickets", "read")
    def tickets():
        search = request.args.get("search", "").strip()
        status_filter = request.args.get("status", "").strip().upper()
        priority_filter = request.args.get("priority", "").strip().upper()
        category_filter = request.args.get("category", "").strip().upper()
        assigned_filter = request.args.get("assigned_to", "").strip()
        customer_filter = request.args.get("customer", type=int)
        page, per_page = _page_args()

        query = Ticket.query.join(Customer, Ticket.customer_id == Customer.id).options(
            joinedload(Ticket.customer), joinedload(Ticket.assigned_to)
        )
        if search:
            pattern = f"%{search}%"
            query = query.filter(
                or_(
                    Ticket.title.ilike(pattern),
                    Ticket.description.ilike(pattern),
                    Customer.name.ilike(pattern),
                )
            )
        if status_filter in TICKET_STATUS_OPTIONS:
            query = query.filter(Ticket.status == status_filter)
        if priority_filter in TICKET_PRIORITY_OPTIONS:
            query = query.filter(Ticket.priority == priority_filter)
        if category_filter in TICKET_CATEGORY_OPTIONS:
            query = query.filter(Ticket.category == category_filter)
        if is_truthy(request.args.get("mine")):
            query = query.filter(Ticket.assigned_to_id == current_employee().id)
        elif assigned_filter == "unassigned":
            query = query.filter(Ticket.assigned_to_id.is_(None))
        elif assigned_filter.isdigit():
            query = query.filter(Ticket.assigned_to_id == int(assigned_filter))
        if customer_filter:
            query = query.filter(Ticket.customer_id == customer_filter)

        priority_order = db.case(TICKET_PRIORITY_RANK, value=Ticket.priority, else_=4)
        pagination = query.order_by(priority_order, Ticket.created_at.desc()).paginate(
            page=page, per_page=per_page, error_out=False
        )

        if wants_json_response():
            return jsonify(
                {
                    "tickets": [ticket_to_dict(t) for t in pagination.items],
                    "total": pagination.total,
                    "page": pagination.page,
                    "pages": pagination.pages,
                }
            )
        return render_template(
            "tickets.html",
            pagination=pagination,
            tickets=pagination.items,
            technicians=_technician_options(),
            search=search,
            status_filter=status_filter,
            priority_filter=priority_filter,
            category_filter=category_filter,
            assigned_filter=assigned_filter,
        )

    @app.get("/tickets/new")
    @permission_required("tickets", "create")
    def new_ticket():
        form = {"customer_id": request.args.get("customer_id", "")}
        return render_template(
            "ticket_form.html", ticket=None, form=form, errors={}, **_ticket_form_options()
        )

    @app.post("/tickets")
    @permission_required("tickets", "create")
    def create_ticket():
        cleaned, errors = validate_ticket_data(_form_data())
        assignee = cleaned["assignee"]
        if not errors and assignee is not None:
            try:
                check_assignment_capacity(assignee)
            except TicketWorkflowError as exc:
                errors["assigned_to_id"] = exc.message
        if errors:
            return _invalid(errors, "ticket_form.html", ticket=None, **_ticket_form_options())

        actor = current_employee()
        ticket = Ticket(
            title=cleaned["title"],
            description=cleaned["description"],
            priority=cleaned["priority"],
            category=cleaned["category"],
            customer=cleaned["customer"],
            status="OPEN",
        )
        db.session.add(ticket)
        ticket.assigned_to = assignee
        sync_ticket_workload(ticket, None, None)
        record_status_history(ticket, "OPEN", actor, "Ticket created")
        if assignee is not None:
            add_ticket_note(ticket, actor, f"Ticket assigned to {assignee.name}")
        db.session.commit()
        app.logger.info("Ticket %s created by %s", ticket.id, actor.name)

        notify_ticket_created(ticket)
        if assignee is not None:
            notify_ticket_assigned(ticket)

        return _success(
            "Ticket created.",
            url_for("ticket_detail", ticket_id=ticket.id),
            {"ticket": ticket_to_dict(ticket)},
            201,
        )

    @app.get("/tickets/<int:ticket_id>")
    @permission_required("tickets", "read")
    def ticket_detail(ticket_id: int):
        ticket = Ticket.query.get_or_404(ticket_id)
        if wants_json_response():
            payload = ticket_to_dict(ticket)
            if has_permission(current_employee(), "ticket-notes", "read"):
                payload["notes"] = [note_to_dict(n) for n in ticket.notes]
            payload["history"] = [history_to_dict(h) for h in ticket.status_history]
            return jsonify({"ticket": payload})
        return render_template(
            "ticket_detail.html",
            ticket=ticket,
            technicians=_technician_options(),
            allowed_statuses=TICKET_STATUS_TRANSITIONS.get(ticket.status, ()),
            ticket_context={"assigned_to_id": ticket.assigned_to_id},
        )

    @app.get("/tickets/<int:ticket_id>/edit")
    @login_required
    def edit_ticket(ticket_id: int):
        ticket = Ticket.query.get_or_404(ticket_id)
        require_permission("tickets", "update", {"assigned_to_id": ticket.assigned_to_id})
        form = {
            "title": ticket.title,
            "description": ticket.description,
            "priority": ticket.priority,
            "category": ticket.category,
            "status": ticket.status,
            "customer_id": ticket.customer_id,
            "assigned_to_id": ticket.assigned_to_id or "",
            "resolution_notes": ticket.resolution_notes or "",
        }
        return render_template(
            "ticket_form.html", ticket=ticket, form=form, errors={}, **_ticket_form_options()
        )

    @app.post("/tickets/<int:ticket_id>/update")
    @login_required
    def update_ticket(ticket_id: int):
        ticket = Ticket.query.get_or_404(ticket_id)
        require_permission("tickets", "update", {"assigned_to_id": ticket.assigned_to_id})
        data = _form_data()
        cleaned, errors = validate_ticket_data(data, ticket)

        new_assignee = cleaned["assignee"]
        if "assigned_to_id" not in data:
            new_assignee = ticket.assigned_to
        if not errors and new_assignee is not None and new_assignee.id != ticket.assigned_to_id:
            try:
                check_assignment_capacity(new_assignee)
            except TicketWorkflowError as exc:
                errors["assigned_to_id"] = exc.message
        if errors:
            return _invalid(errors, "ticket_form.html", ticket=ticket, **_ticket_form_options())

        actor = current_employee()
        previous_assignee = ticket.assigned_to
        previous_status = ticket.status

        ticket.title = cleaned["title"]
        ticket.description = cleaned["description"]
        ticket.priority = cleaned["priority"]
        ticket.category = cleaned["category"]
        ticket.customer = cleaned["customer"]
        ticket.assigned_to = new_assignee
        if cleaned["resolution_notes"] is not None:
            ticket.resolution_notes = cleaned["resolution_notes"]
        apply_ticket_status(ticket, cleaned["status"])
        sync_ticket_workload(ticket, previous_assignee, previous_status)

        status_changed = ticket.status != previous_status
        assignee_changed = (previous_assignee.id if previous_assignee else None) != (
            new_assignee.id if new_assignee else None
        )

        if status_changed:
            record_status_history(
                ticket,
                ticket.status,
                actor,
                f"Status changed from {previous_status} to {ticket.status}",
            )
            if (
                ticket.status == "RESOLVED"
                and previous_status in ACTIVE_TICKET_STATUSES
                and new_assignee is not None
            ):
                record_ticket_resolution(new_assignee, ticket.resolution_time_hours or 0.0)
            if ticket.status in COMPLETED_TICKET_STATUSES:
                release_technician_if_idle(new_assignee)
        if assignee_changed:
            if new_assignee is None:
                add_ticket_note(ticket, actor, f"Ticket unassigned from {previous_assignee.name}")
            elif previous_assignee is None:
                add_ticket_note(ticket, actor, f"Ticket assigned to {new_assignee.name}")
            else:
                add_ticket_note(
                    ticket,
                    actor,
                    f"Ticket reassigned from {previous_assignee.name} to {new_assignee.name}",
                )
        ticket.updated_at = utcnow()
        db.session.commit()

        if status_changed:
            notify_ticket_status_changed(ticket, previous_status, ticket.status, actor)
        if assignee_changed and new_assignee is not None:
            notify_ticket_assigned(ticket)

        return _success(
            "Ticket updated.",
            url_for("ticket_detail", ticket_id=ticket.id),
            {"ticket": ticket_to_dict(ticket)},
        )

    @app.post("/tickets/<int:ticket_id>/delete")
    @permission_required("tickets", "delete")
    def delete_ticket(ticket_id: int):
        ticket = Ticket.query.get_or_404(ticket_id)
        assignee = ticket.assigned_to
        if assignee is not None and ticket.status in ACTIVE_TICKET_STATUSES:
            assignee.current_ticket_count = max(0, (assignee.current_ticket_count or 0) - 1)

        db.session.delete(ticket)
        db.session.commit()
        app.logger.info("Ticket %s deleted by %s", ticket_id, current_employee().name)
        return _success("Ticket removed.", url_for("tickets"))

    @app.post("/tickets/<int:ticket_id>/assign")
    @login_required
    def ticket_assign(ticket_id: int):
        ticket = Ticket.query.get_or_404(ticket_id)
        require_permission("tickets", "update", {"assigned_to_id": ticket.assigned_to_id})
        data = _form_data()
        back = url_for("ticket_detail", ticket_id=ticket.id)

        technician_raw = _text(data, "technician_id")
        technician = (
            db.session.get(Employee, int(technician_raw)) if technician_raw.isdigit() else None
        )
        if technician is None:
            return _failure("Technician not found", back, 404)

        try:
            assign_ticket(ticket, technician, current_employee(), _text(data, "reason") or None)
        except TicketWorkflowError as exc:
            db.session.rollback()
            return _failure(exc.message, back, exc.status_code)

        db.session.commit()
        notify_ticket_assigned(ticket)
        return _success(
            f"Ticket assigned to {technician.name}.", back, {"ticket": ticket_to_dict(ticket)}
        )

    @app.post("/tickets/<int:ticket_id>/unassign")
    @login_required
    def ticket_unassign(ticket_id: int):
        ticket = Ticket.query.get_or_404(ticket_id)
        require_permission("tickets", "update", {"assigned_to_id": ticket.assigned_to_id})
        back = url_for("ticket_detail", ticket_id=ticket.id)

        try:
            unassign_ticket(ticket, current_employee(), _text(_form_data(), "reason") or None)
        except TicketWorkflowError as exc:
            db.session.rollback()
            return _failure(exc.message, back, exc.status_code)

        db.session.commit()
        return _success("Ticket unassigned.", back, {"ticket": ticket_to_dict(ticket)})

    @app.post("/tickets/<int:ticket_id>/status")
    @login_required
    def ticket_status(ticket_id: int):
        ticket = Ticket.query.get_or_404(ticket_id)
        require_permission("tickets", "update", {"assigned_to_id": ticket.assigned_to_id})
        data = _form_data()
        back = url_for("ticket_detail", ticket_id=ticket.id)
        actor = current_employee()
        new_status = _text(data, "status").upper()

        try:
            old_status = change_ticket_status(
                ticket,
                new_status,
                actor,
                notes=_text(data, "notes") or None,
                resolution_notes=_text(data, "resolution_notes") or None,
            )
        except TicketWorkflowError as exc:
            db.session.rollback()
            return _failure(exc.message, back, exc.status_code)

        db.session.commit()
        notify_ticket_status_changed(ticket, old_status, new_status, actor)
        return _success(
            f"Ticket status updated to {humanize_enum(new_status)}.",
            back,
            {"ticket": ticket_to_dict(ticket)},
        )

    @app.post("/tickets/<int:ticket_id>/complete")
    @login_required
    def ticket_complete(ticket_id: int):
        ticket = Ticket.query.get_or_404(ticket_id)
        data = _form_data()
        back = url_for("ticket_detail", ticket_id=ticket.id)
        actor = current_employee()
        status_value = _text(data, "status", "RESOLVED").upper() or "RESOLVED"

        try:
            old_status = complete_ticket(
                ticket, actor, status_value, _text(data, "resolution_notes")
            )
        except TicketWorkflowError as exc:
            db.session.rollback()
            return _failure(exc.message, back, exc.status_code)

        db.session.commit()
        notify_ticket_status_changed(ticket, old_status, status_value, actor)
        return _success(
            "Ticket completed.", back, {"ticket": ticket_to_dict(ticket)}
        )

    @app.post("/tickets/<int:ticket_id>/feedback")
    @login_required
    def ticket_feedback(ticket_id: int):
        ticket = Ticket.query.get_or_404(ticket_id)
        require_permission("tickets", "update", {"assigned_to_id": ticket.assigned_to_id})
        back = url_for("ticket_detail", ticket_id=ticket.id)

        cleaned, errors = validate_feedback_data(_form_data())
        if errors:
            if wants_json_response():
                return jsonify({"error": "Validation failed", "errors": errors}), 400
            return _failure(next(iter(errors.values())), back)

        try:
            submit_ticket_feedback(
                ticket, cleaned["rating"], cleaned["comment"], current_employee()
            )
            db.session.commit()
        except TicketWorkflowError as exc:
            db.session.rollback()
            return _failure(exc.message, back, exc.status_code)
        except IntegrityError:
            db.session.rollback()
            return _failure("Feedback has already been submitted for this ticket", back)

        notify_feedback_received(ticket, cleaned["rating"])
        return _success(
            "Feedback recorded.", back, {"ticket": ticket_to_dict(ticket)}, 201
        )

    @app.get("/tickets/<int:ticket_id>/notes")
    @permission_required("ticket-notes", "read")
    def ticket_notes(ticket_id: int):
        ticket = Ticket.query.get_or_404(ticket_id)
        return jsonify({"notes": [note_to_dict(note) for note in ticket.notes]})

    @app.post("/tickets/<int:ticket_id>/notes")
    @login_required
    def ticket_add_note(ticket_id: int):
        ticket = Ticket.query.get_or_404(ticket_id)
        require_permission(
            "ticket-notes", "create", {"assigned_to_id": ticket.assigned_to_id}
        )
        data = _form_data()
        back = url_for("ticket_detail", ticket_id=ticket.id)
        content = _text(data, "content")

        error = validate_note_content(content)
        if error:
            if wants_json_response():
                return jsonify({"error": "Validation failed", "errors": {"content": error}}), 400
            return _failure(error, back)

        note = add_ticket_note(
            ticket, current_employee(), content, is_internal=is_truthy(data.get("is_internal"))
        )
        ticket.updated_at = utcnow()
        db.session.commit()
        return _success("Note added.", back, {"note": note_to_dict(note)}, 201)

    @app.post("/tickets/<int:ticket_id>/notes/<int:note_id>/delete")
    @login_required
    def ticket_delete_note(ticket_id: int, note_id: int):
        note = TicketNote.query.filter_by(id=note_id, ticket_id=ticket_id).first_or_404()
        actor = current_employee()
        if note.created_by_id != actor.id and not actor.is_admin:
            abort(403)

        db.session.delete(note)
        db.session.commit()
        return _success("Note deleted.", url_for("ticket_detail", ticket_id=ticket_id))

    @app.get("/tickets/<int:ticket_id>/history")
    @permission_required("tickets", "read")
    def ticket_history(ticket_id: int):
        ticket = Ticket.query.get_or_404(ticket_id)
        return jsonify(
            {"history": [history_to_dict(entry) for entry in ticket.status_history]}
        )

    @app.get("/technicians/workload")
    @permission_required("tickets", "read")
    def technician_workload():
        workload = build_technician_workload()
        if wants_json_response():
            return jsonify(workload)
        return render_template("workload.html", **workload)

    @app.route("/feedback/<int:ticket_id>", methods=["GET", "POST"])
    def public_feedback(ticket_id: int):
        ticket = Ticket.query.get_or_404(ticket_id)
        errors: dict[str, str] = {}

        if request.method == "POST":
            cleaned, errors = validate_feedback_data(_form_data())
            if not errors:
                try:
                    submit_ticket_feedback(ticket, cleaned["rating"], cleaned["comment"])
                    db.session.commit()
                except TicketWorkflowError as exc:
                    db.session.rollback()
                    errors["form"] = exc.message
                except IntegrityError:
                    db.session.rollback()
                    errors["form"] = "Feedback has already been submitted for this ticket"
                else:
                    notify_feedback_received(ticket, cleaned["rating"])
                    if wants_json_response():
                        return jsonify({"success": True, "message": "Thank you for your feedback!"}), 201
                    return render_template("feedback.html", ticket=ticket, submitted=True, errors={})

            if wants_json_response():
                return jsonify({"error": "Validation failed", "errors": errors}), 400
            return render_template(
                "feedback.html", ticket=ticket, submitted=False, errors=errors
            ), 400

        return render_template(
            "feedback.html",
            ticket=ticket,
            submitted=ticket.feedback is not None,
            errors=errors,
        )

    # Payments

    def _payment_form_context(payment: Payment | None = None) -> dict[str, object]:
        return {
            "payment": payment,
            "customers": Customer.query.order_by(Customer.name.asc()).all(),
        }

    @app.get("/payments")
    @permission_required("payments", "read")
    def payments():
        search = request.args.get("search", "").strip()
        status_filter = request.args.get("status", "").strip().upper()
        customer_filter = request.args.get("customer", type=int)
        date_from = _filter_date("date_from")
        date_to = _filter_date("date_to")
        page, per_page = _page_args()

        query = Payment.query.join(Customer, Payment.customer_id == Customer.id).options(
            joinedload(Payment.customer)
        )
        if search:
            query = query.filter(Customer.name.ilike(f"%{search}%"))
        if status_filter in PAYMENT_STATUS_OPTIONS:
            query = query.filter(Payment.status == status_filter)
        if customer_filter:
            query = query.filter(Payment.customer_id == customer_filter)
        if date_from:
            query = query.filter(Payment.payment_date >= date_from)
        if date_to:
            query = query.filter(Payment.payment_date <= date_to)

        pagination = query.order_by(
            Payment.payment_date.desc(), Payment.id.desc()
        ).paginate(page=page, per_page=per_page, error_out=False)

        if wants_json_response():
            return jsonify(
                {
                    "payments": [payment_to_dict(p) for p in pagination.items],
                    "total": pagination.total,
                    "page": pagination.page,
                    "pages": pagination.pages,
                }
            )
        return render_template(
            "payments.html",
            pagination=pagination,
            payments=pagination.items,
            search=search,
            status_filter=status_filter,
            date_from=date_from,
            date_to=date_to,
        )

    @app.get("/payments/new")
    @permission_required("payments", "create")
    def new_payment():
        form = {
            "customer_id": request.args.get("customer_id", ""),
            "payment_date": date.today().isoformat(),
            "status": "PENDING",
        }
        return render_template(
            "payment_form.html", form=form, errors={}, **_payment_form_context()
        )

    @app.post("/payments")
    @permission_required("payments", "create")
    def create_payment():
        cleaned, errors = validate_payment_data(_form_data())
        if errors:
            return _invalid(errors, "payment_form.html", **_payment_form_context())

        customer = cleaned["customer"]
        payment = Payment(
            customer=customer,
            amount_cents=cleaned["amount_cents"],
            payment_date=cleaned["payment_date"],
            status=cleaned["status"],
            notes=cleaned["notes"],
        )
        db.session.add(payment)
        recalculate_customer_payment_status(customer)
        db.session.commit()
        app.logger.info(
            "Payment %s of %s recorded for customer %s",
            payment.id,
            payment.amount_cents,
            customer.id,
        )

        return _success(
            "Payment recorded.",
            url_for("payments"),
            {"payment": payment_to_dict(payment)},
            201,
        )

    @app.get("/payments/<int:payment_id>/edit")
    @permission_required("payments", "update")
    def edit_payment(payment_id: int):
        payment = Payment.query.get_or_404(payment_id)
        form = {
            "customer_id": payment.customer_id,
            "amount": f"{Decimal(payment.amount_cents) / Decimal(100):.2f}",
            "payment_date": payment.payment_date.isoformat(),
            "status": payment.status,
            "notes": payment.notes or "",
        }
        return render_template(
            "payment_form.html", form=form, errors={}, **_payment_form_context(payment)
        )

    @app.post("/payments/<int:payment_id>/update")
    @permission_required("payments", "update")
    def update_payment(payment_id: int):
        payment = Payment.query.get_or_404(payment_id)
        cleaned, errors = validate_payment_data(_form_data(), payment)
        if errors:
            return _invalid(errors, "payment_form.html", **_payment_form_context(payment))

        previous_customer = payment.customer
        payment.customer = cleaned["customer"]
        payment.amount_cents = cleaned["amount_cents"]
        payment.payment_date = cleaned["payment_date"]
        payment.status = cleaned["status"]
        payment.notes = cleaned["notes"]
        payment.updated_at = utcnow()

        recalculate_customer_payment_status(payment.customer)
        if previous_customer is not payment.customer:
            recalculate_customer_payment_status(previous_customer)
        db.session.commit()

        return _success(
            "Payment updated.", url_for("payments"), {"payment": payment_to_dict(payment)}
        )

    @app.post("/payments/<int:payment_id>/delete")
    @permission_required("payments", "delete")
    def delete_payment(payment_id: int):
        payment = Payment.query.get_or_404(payment_id)
        customer = payment.customer
        customer.payments.remove(payment)
        recalculate_customer_payment_status(customer)
        db.session.commit()
        app.logger.info("Payment %s deleted by %s", payment_id, current_employee().name)
        return _success("Payment removed.", url_for("payments"))

    @app.get("/payments/stats")
    @permission_required("payments", "read")
    def payment_stats():
        period = request.args.get("period", "all").strip().lower()
        if period not in {"all", "week", "month", "year"}:
            period = "all"
        stats = build_payment_stats(period)
        if wants_json_response():
            return jsonify(stats)
        return render_template("payment_stats.html", stats=stats)

    @app.get("/billing")
    @permission_required("payments", "read")
    def billing():
        today = date.today()
        date_from = _filter_date("date_from") or month_start(today)
        date_to = _filter_date("date_to") or (shift_month(month_start(today), 1) - timedelta(days=1))

        period_payments = (
            Payment.query.options(joinedload(Payment.customer))
            .filter(Payment.payment_date >= date_from, Payment.payment_date <= date_to)
            .order_by(Payment.payment_date.desc(), Payment.id.desc())
            .all()
        )

        counts = Counter(payment.status for payment in period_payments)
        revenue = defaultdict(int)
        for payment in period_payments:
            revenue[payment.status] += payment.amount_cents
        total_cents = sum(revenue.values())

        active_customers = (
            Customer.query.options(joinedload(Customer.package))
            .filter(Customer.status == "ACTIVE", Customer.package_id.isnot(None))
            .all()
        )
        expected_cents = sum(
            customer.package.monthly_price_cents for customer in active_customers
        )

        summary = {
            "date_from": date_from.isoformat(),
            "date_to": date_to.isoformat(),
            "total_payments": len(period_payments),
            "paid_count": counts.get("PAID", 0),
            "pending_count": counts.get("PENDING", 0),
            "overdue_count": counts.get("OVERDUE", 0),
            "paid_revenue": cents_to_amount(revenue.get("PAID", 0)),
            "pending_revenue": cents_to_amount(revenue.get("PENDING", 0)),
            "overdue_revenue": cents_to_amount(revenue.get("OVERDUE", 0)),
            "expected_monthly_revenue": cents_to_amount(expected_cents),
            "collection_rate": round(revenue.get("PAID", 0) / total_cents * 100, 2)
            if total_cents
            else 0,
        }

        if wants_json_response():
            return jsonify(
                {
                    "summary": summary,
                    "payments": [payment_to_dict(p) for p in period_payments],
                }
            )
        return render_template(
            "billing.html",
            summary=summary,
            payments=period_payments,
            date_from=date_from,
            date_to=date_to,
        )

    # Notifications

    def _own_notification(notification_id: int) -> Notification:
        return Notification.query.filter_by(
            id=notification_id,
            recipient_type="EMPLOYEE",
            recipient_id=current_employee().id,
        ).first_or_404()

    @app.get("/notifications")
    @login_required
    def notifications():
        employee = current_employee()
        unread_only = is_truthy(request.args.get("unread"))
        page, per_page = _page_args()

        base = Notification.query.filter_by(
            recipient_type="EMPLOYEE", recipient_id=employee.id
        )
        unread_count = base.filter(Notification.is_read.is_(False)).count()
        query = base.filter(Notification.is_read.is_(False)) if unread_only else base
        pagination = query.order_by(
            Notification.created_at.desc(), Notification.id.desc()
        ).paginate(page=page, per_page=per_page, error_out=False)

        if wants_json_response():
            return jsonify(
                {
                    "notifications": [notification_to_dict(n) for n in pagination.items],
                    "unread_count": unread_count,
                    "total": pagination.total,
                    "page": pagination.page,
                    "pages": pagination.pages,
                }
            )
        return render_template(
            "notifications.html",
            pagination=pagination,
            notifications=pagination.items,
            unread_count=unread_count,
            unread_only=unread_only,
        )

    @app.post("/notifications/<int:notification_id>/read")
    @login_required
    def mark_notification_read(notification_id: int):
        notification = _own_notification(notification_id)
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = utcnow()
            db.session.commit()
        return _success(
            "Notification marked as read.",
            url_for("notifications"),
            {"notification": notification_to_dict(notification)},
        )

    @app.post("/notifications/read-all")
    @login_required
    def mark_all_notifications_read():
        updated = Notification.query.filter_by(
            recipient_type="EMPLOYEE",
            recipient_id=current_employee().id,
            is_read=False,
        ).update({Notification.is_read: True, Notification.read_at: utcnow()})
        db.session.commit()
        return _success(
            f"{updated} notifications marked as read.",
            url_for("notifications"),
            {"updated": updated},
        )

    @app.post("/notifications/<int:notification_id>/delete")
    @login_required
    def delete_notification(notification_id: int):
        notification = _own_notification(notification_id)
        db.session.delete(notification)
        db.session.commit()
        return _success("Notification deleted.", url_for("notifications"))

    # Reports

    @app.get("/reports")
    @login_required
    def reports():
        employee = current_employee()
        available = [
            (endpoint, label)
            for endpoint, label, scope in (
                ("financial_report", "Financial report", "marketing"),
                ("ticket_report", "Ticket analytics", "own"),
                ("employee_report", "Employee performance", "hr"),
            )
            if has_permission(employee, "reports", "read", {"scope": scope})
        ]
        return render_template("reports.html", available=available)

    @app.get("/reports/financial")
    @permission_required("reports", "read", scope="marketing")
    def financial_report():
        date_from, date_to = _filter_date("date_from"), _filter_date("date_to")
        report = build_financial_report(date_from, date_to)
        if wants_json_response():
            return jsonify(report)
        return render_template(
            "report_financial.html", report=report, date_from=date_from, date_to=date_to
        )

    @app.get("/reports/tickets")
    @permission_required("reports", "read", scope="own")
    def ticket_report():
        employee = current_employee()
        date_from, date_to = _filter_date("date_from"), _filter_date("date_to")
        report = build_ticket_analytics(
            date_from,
            date_to,
            assigned_to=employee if employee.role == "TECHNICIAN" else None,
        )
        if wants_json_response():
            return jsonify(report)
        return render_template(
            "report_tickets.html", report=report, date_from=date_from, date_to=date_to
        )

    @app.get("/reports/employees")
    @permission_required("reports", "read", scope="hr")
    def employee_report():
        date_from, date_to = _filter_date("date_from"), _filter_date("date_to")
        report = build_employee_performance(date_from, date_to)
        if wants_json_response():
            return jsonify(report)
        return render_template(
            "report_employees.html", report=report, date_from=date_from, date_to=date_to
        )

    @app.get("/feedback")
    @permission_required("tickets", "read")
    def feedback_overview():
        employee = current_employee()
        period = request.args.get("period", "all").strip().lower()
        if period not in FEEDBACK_PERIOD_OPTIONS:
            period = "all"
        rating = request.args.get("rating", type=int)
        if rating is not None and not 1 <= rating <= 5:
            rating = None
        employee_id = request.args.get("employee_id", type=int)
        if employee.role == "TECHNICIAN":
            employee_id = employee.id

        stats = build_feedback_stats(employee_id, period, rating)
        if wants_json_response():
            return jsonify(stats)
        technicians = (
            Employee.query.filter_by(can_handle_tickets=True, is_active=True)
            .order_by(Employee.name.asc())
            .all()
        )
        return render_template(
            "feedback_overview.html",
            stats=stats,
            technicians=technicians,
            filters={"employee_id": employee_id, "period": period, "rating": rating},
        )

    # Search and export

    @app.get("/search")
    @login_required
    def search():
        if not wants_json_response() and not request.args.get("q", "").strip():
            return render_template("search.html", results=None, errors={}, params={})

        params, errors = validate_search_params(request.args)
        if errors:
            if wants_json_response():
                return jsonify({"error": "Validation failed", "errors": errors}), 400
            return render_template("search.html", results=None, errors=errors, params=params), 400

        results = search_records(
            current_employee(), params["q"], params["type"], params["limit"]
        )
        if wants_json_response():
            return jsonify(results)
        return render_template("search.html", results=results, errors={}, params=params)

    def _export_rows(entity: str) -> list[dict[str, object]]:
        resource = EXPORT_ENTITIES.get(entity)
        if resource is None:
            abort(404)
        require_permission(resource, "read")
        return collect_export_rows(entity, app.config.get("EXPORT_ROW_LIMIT", 10000))

    @app.get("/export/<entity>.csv")
    @login_required
    def export_csv(entity: str):
        rows = _export_rows(entity)
        filename = f"{entity}-{date.today().isoformat()}.csv"
        app.logger.info(
            "%s exported %s %s rows", current_employee().name, len(rows), entity
        )
        return Response(
            rows_to_csv(entity, rows),
            mimetype="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )

    @app.get("/export/<entity>/print")
    @login_required
    def export_print(entity: str):
        rows = _export_rows(entity)
        return render_template(
            "export_print.html",
            entity=entity,
            columns=EXPORT_COLUMNS[entity],
            rows=rows,
            generated_at=utcnow(),
        )

    # Settings

    @app.get("/settings")
    @login_required
    def settings():
        config = None
        if has_permission(current_employee(), "settings", "read"):
            config = ensure_notification_configuration()
        return render_template("settings.html", config=config, errors={})

    @app.post("/settings/profile")
    @login_required
    def update_profile():
        data = _form_data()
        employee = current_employee()
        name = _text(data, "name")
        phone = _text(data, "phone")

        errors: dict[str, str] = {}
        name_error = _validate_name(name)
        if name_error:
            errors["name"] = name_error
        if phone and not PHONE_PATTERN.match(normalize_phone(phone)):
            errors["phone"] = "Invalid phone number format"
        if errors:
            if wants_json_response():
                return jsonify({"error": "Validation failed", "errors": errors}), 400
            flash("Please correct the highlighted fields.", "danger")
            config = None
            if has_permission(employee, "settings", "read"):
                config = ensure_notification_configuration()
            return render_template("settings.html", config=config, errors=errors), 400

        employee.name = name
        employee.phone = phone or None
        employee.updated_at = utcnow()
        db.session.commit()
        app.logger.info("Employee %s updated their profile", employee.id)
        return _success(
            "Profile updated.", url_for("settings"), {"employee": employee_to_dict(employee)}
        )

    @app.post("/settings/password")
    @login_required
    def change_password():
        data = _form_data()
        user = current_employee().user
        current_password = _text(data, "current_password")
        new_password = _text(data, "new_password")
        confirm_password = _text(data, "confirm_password")

        errors: dict[str, str] = {}
        if not user.check_password(current_password):
            errors["current_password"] = "Current password is incorrect"
        if len(new_password) < 8:
            errors["new_password"] = "Password must be at least 8 characters"
        elif new_password != confirm_password:
            errors["confirm_password"] = "Passwords do not match"
        if errors:
            if wants_json_response():
                return jsonify({"error": "Validation failed", "errors": errors}), 400
            flash("Please correct the highlighted fields.", "danger")
            config = None
            if has_permission(current_employee(), "settings", "read"):
                config = ensure_notification_configuration()
            return render_template("settings.html", config=config, errors=errors), 400

        user.set_password(new_password)
        db.session.commit()
        app.logger.info("User %s changed their password", user.email)
        return _success("Password updated.", url_for("settings"))

    @app.post("/settings/notifications")
    @permission_required("settings", "update", scope="hr")
    def update_notification_settings():
        data = _form_data()
        config = ensure_notification_configuration()
        errors: dict[str, str] = {}

        port_raw = _text(data, "smtp_port", str(config.smtp_port or 587))
        try:
            smtp_port = int(port_raw)
        except ValueError:
            errors["smtp_port"] = "SMTP port must be a number"
        else:
            if not 1 <= smtp_port <= 65535:
                errors["smtp_port"] = "SMTP port must be between 1 and 65535"

        from_email = _text(data, "from_email")
        if from_email and not EMAIL_PATTERN.match(from_email):
            errors["from_email"] = "Invalid email format"

        if errors:
            if wants_json_response():
                return jsonify({"error": "Validation failed", "errors": errors}), 400
            flash("Please correct the highlighted fields.", "danger")
            return render_template("settings.html", config=config, errors=errors), 400

        for flag in ("email_enabled", "sms_enabled", "notify_customers", "escalate_low_ratings", "use_tls"):
            if request.is_json:
                setattr(config, flag, is_truthy(data.get(flag, getattr(config, flag))))
            else:
                setattr(config, flag, is_truthy(data.get(flag)))
        config.smtp_port = smtp_port
        for field in ("smtp_host", "smtp_username", "from_name", "sms_gateway_url"):
            setattr(config, field, _text(data, field) or None)
        config.from_email = from_email or None
        for secret_field in ("smtp_password", "sms_gateway_token"):
            value = _text(data, secret_field)
            if value:
                setattr(config, secret_field, value)
        db.session.commit()
        app.logger.info("Notification settings updated by %s", current_employee().name)

        return _success("Notification settings saved.", url_for("settings"))


app = create_app()


if __name__ == "__main__":
    from werkzeug.serving import make_server

    port_env = os.environ.get("PORT", "5000")
    try:
        port = int(port_env)
    except ValueError:
        app.logger.warning("Ignoring invalid PORT value: %s", port_env)
        port = 5000

    host = os.environ.get("HOST", "0.0.0.0")
    server = make_server(host, port, app, threaded=True)
    app.logger.info("Serving back office on http://%s:%s", host, port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        app.logger.info("Shutting down")
    finally:
        server.server_close()
