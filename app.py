import errno
import os
import re
import secrets
import threading
import time
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from functools import wraps
from pathlib import Path
from urllib.parse import urlencode

import requests
from dotenv import load_dotenv
from flask import (
    Flask,
    current_app,
    g,
    jsonify,
    redirect,
    request,
    send_from_directory,
    session,
    url_for,
)
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.serving import BaseWSGIServer, make_server
from werkzeug.utils import secure_filename

load_dotenv()

db = SQLAlchemy()

SESSION_USER_KEY = "portal_user_id"

USER_ROLES = ("admin", "client", "pending")
INQUIRY_STATUS_OPTIONS = ["pending", "approved", "rejected"]
PAID_INVOICE_STATUSES = {"paid", "auto-paid"}
UNBILLED_INVOICE_STATUSES = {"draft"}
MIN_PASSWORD_LENGTH = 8

DASHBOARD_STATS_CACHE_KEY = "_dashboard_stats_cache"
DASHBOARD_STATS_CACHE_SECONDS_DEFAULT = 10.0

BRANDING_SETTINGS_ID = 1
DEFAULT_COMPANY_NAME = "Client Portal"
DEFAULT_PRIMARY_COLOR = "#000000"
DEFAULT_LOGO_SIZE_PX = 32
LOGO_SIZE_MIN_PX = 16
LOGO_SIZE_MAX_PX = 64
MAX_URL_LENGTH = 500

BRANDING_FIELD_COLUMNS: dict[str, str] = {
    "companyName": "company_name",
    "logoUrl": "logo_url",
    "faviconUrl": "favicon_url",
    "logoSizePx": "logo_size_px",
    "primaryColor": "primary_color",
    "metaTitle": "meta_title",
    "metaDescription": "meta_description",
    "heroTitle": "hero_title",
    "heroDescription": "hero_description",
    "services": "services",
    "ctaTitle": "cta_title",
    "ctaDescription": "cta_description",
    "ctaButtonText": "cta_button_text",
    "loginTitle": "login_title",
    "loginDescription": "login_description",
    "loginFeatures": "login_features",
    "loginBackgroundGradient": "login_background_gradient",
}
SERVER_ASSIGNED_BRANDING_FIELDS = {"id", "updatedAt", "version"}
SERVICE_ENTRY_KEYS = ("title", "description", "iconKey")
GRADIENT_KEYS = ("from", "to")

PUBLIC_BRANDING_FIELDS = (
    "companyName",
    "logoUrl",
    "faviconUrl",
    "logoSizePx",
    "primaryColor",
    "metaTitle",
    "metaDescription",
    "heroTitle",
    "heroDescription",
    "services",
    "ctaTitle",
    "ctaDescription",
    "ctaButtonText",
    "loginTitle",
    "loginDescription",
    "loginFeatures",
    "loginBackgroundGradient",
)

BRANDING_UPLOAD_TYPES = {
    "logo": {"label": "Logo", "field": "logoUrl"},
    "favicon": {"label": "Favicon", "field": "faviconUrl"},
}
ALLOWED_BRANDING_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "svg", "ico", "webp"}
BRANDING_UPLOAD_ROUTE = "/uploads/branding"

HEX_COLOR_PATTERN = re.compile(r"^#(?:[0-9a-f]{3,4}|[0-9a-f]{6}|[0-9a-f]{8})$", re.IGNORECASE)
_COLOR_NUMBER = r"[-+]?(?:\d+(?:\.\d*)?|\.\d+)"
_COLOR_CHANNEL = rf"{_COLOR_NUMBER}%?"
_COLOR_HUE = rf"{_COLOR_NUMBER}(?:deg|grad|rad|turn)?"
_COLOR_PERCENT = rf"{_COLOR_NUMBER}%"
RGB_COLOR_PATTERN = re.compile(
    rf"^rgba?\(\s*{_COLOR_CHANNEL}"
    rf"(?:\s*,\s*{_COLOR_CHANNEL}\s*,\s*{_COLOR_CHANNEL}(?:\s*,\s*{_COLOR_CHANNEL})?"
    rf"|\s+{_COLOR_CHANNEL}\s+{_COLOR_CHANNEL}(?:\s*/\s*{_COLOR_CHANNEL})?)\s*\)$",
    re.IGNORECASE,
)
HSL_COLOR_PATTERN = re.compile(
    rf"^hsla?\(\s*{_COLOR_HUE}"
    rf"(?:\s*,\s*{_COLOR_PERCENT}\s*,\s*{_COLOR_PERCENT}(?:\s*,\s*{_COLOR_CHANNEL})?"
    rf"|\s+{_COLOR_PERCENT}\s+{_COLOR_PERCENT}(?:\s*/\s*{_COLOR_CHANNEL})?)\s*\)$",
    re.IGNORECASE,
)
CSS_NAMED_COLORS = frozenset(
    """
    aliceblue antiquewhite aqua aquamarine azure beige bisque black blanchedalmond
    blue blueviolet brown burlywood cadetblue chartreuse chocolate coral
    cornflowerblue cornsilk crimson cyan darkblue darkcyan darkgoldenrod darkgray
    darkgreen darkgrey darkkhaki darkmagenta darkolivegreen darkorange darkorchid
    darkred darksalmon darkseagreen darkslateblue darkslategray darkslategrey
    darkturquoise darkviolet deeppink deepskyblue dimgray dimgrey dodgerblue
    firebrick floralwhite forestgreen fuchsia gainsboro ghostwhite gold goldenrod
    gray green greenyellow grey honeydew hotpink indianred indigo ivory khaki
    lavender lavenderblush lawngreen lemonchiffon lightblue lightcoral lightcyan
    lightgoldenrodyellow lightgray lightgreen lightgrey lightpink lightsalmon
    lightseagreen lightskyblue lightslategray lightslategrey lightsteelblue
    lightyellow lime limegreen linen magenta maroon mediumaquamarine mediumblue
    mediumorchid mediumpurple mediumseagreen mediumslateblue mediumspringgreen
    mediumturquoise mediumvioletred midnightblue mintcream mistyrose moccasin
    navajowhite navy oldlace olive olivedrab orange orangered orchid palegoldenrod
    palegreen paleturquoise palevioletred papayawhip peachpuff peru pink plum
    powderblue purple rebeccapurple red rosybrown royalblue saddlebrown salmon
    sandybrown seagreen seashell sienna silver skyblue slateblue slategray
    slategrey snow springgreen steelblue tan teal thistle tomato turquoise violet
    wheat white whitesmoke yellow yellowgreen transparent currentcolor
    """.split()
)
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

FRESHBOOKS_PROVIDER = "freshbooks"
FRESHBOOKS_API_URL = "https://api.freshbooks.com"
FRESHBOOKS_AUTHORIZE_URL = "https://auth.freshbooks.com/oauth/authorize"


class BrandingValidationError(ValueError):
    """Raised when a branding patch violates the field rules."""

    def __init__(self, errors: list[dict[str, str]]):
        self.errors = list(errors)
        summary = "; ".join(f"{error['field']}: {error['message']}" for error in self.errors)
        super().__init__(summary or "Invalid branding settings.")


class BrandingStorageError(RuntimeError):
    """Raised when the branding settings row cannot be read or written."""


class BrandingConflictError(RuntimeError):
    """Raised when an update was prepared against an older settings version."""

    def __init__(self, expected_version: int, current_version: int):
        self.expected_version = expected_version
        self.current_version = current_version
        super().__init__(
            f"Branding settings changed (expected version {expected_version}, "
            f"found {current_version})."
        )


class FreshbooksApiError(RuntimeError):
    """Raised when the Freshbooks API responds with an error."""


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def isoformat_or_none(value: datetime | date | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    return value.isoformat()


def is_css_color(value: object) -> bool:
    if not isinstance(value, str):
        return False
    cleaned = value.strip()
    return bool(
        HEX_COLOR_PATTERN.match(cleaned)
        or RGB_COLOR_PATTERN.match(cleaned)
        or HSL_COLOR_PATTERN.match(cleaned)
        or cleaned.lower() in CSS_NAMED_COLORS
    )


def clamp_logo_size(value: object) -> int:
    try:
        size = int(value)
    except (TypeError, ValueError):
        size = DEFAULT_LOGO_SIZE_PX
    return max(LOGO_SIZE_MIN_PX, min(LOGO_SIZE_MAX_PX, size))


def _coerce_int(value: object | None) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value:  # NaN check
            return None
        return int(value)
    if isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            return None
        try:
            return int(cleaned)
        except ValueError:
            return None
    return None


def _parse_date(value: object | None) -> date | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def _amount_to_cents(value: object | None) -> int | None:
    if isinstance(value, dict):
        value = value.get("amount")
    if value is None or value == "":
        return None
    try:
        return int((Decimal(str(value)) * 100).quantize(Decimal("1")))
    except (InvalidOperation, ValueError):
        return None


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    password_hash = db.Column(db.String(255), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default="pending")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_login_at = db.Column(db.DateTime(timezone=True))

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "createdAt": isoformat_or_none(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<User {self.email} ({self.role})>"


class Client(db.Model):
    __tablename__ = "clients"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    freshbooks_id = db.Column(db.String(64), unique=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(50))
    address = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    projects = db.relationship("Project", back_populates="client")
    invoices = db.relationship("Invoice", back_populates="client")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "freshbooksId": self.freshbooks_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "createdAt": isoformat_or_none(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Client {self.name}>"


class Project(db.Model):
    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"))
    freshbooks_id = db.Column(db.String(64), unique=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default="active")
    budget_cents = db.Column(db.Integer)
    due_date = db.Column(db.Date)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    client = db.relationship("Client", back_populates="projects")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Project {self.name} ({self.status})>"


class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"))
    freshbooks_id = db.Column(db.String(64), unique=True)
    invoice_number = db.Column(db.String(64))
    status = db.Column(db.String(30), nullable=False, default="sent")
    amount_cents = db.Column(db.Integer)
    due_date = db.Column(db.Date)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    client = db.relationship("Client", back_populates="invoices")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Invoice {self.invoice_number} ({self.status})>"


class Inquiry(db.Model):
    __tablename__ = "inquiries"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=False)
    company = db.Column(db.String(255))
    message = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "company": self.company,
            "message": self.message,
            "status": self.status,
            "createdAt": isoformat_or_none(self.created_at),
        }


class Activity(db.Model):
    __tablename__ = "activities"

    id = db.Column(db.Integer, primary_key=True)
    activity_type = db.Column(db.String(50), nullable=False)
    description = db.Column(db.String(500), nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "type": self.activity_type,
            "description": self.description,
            "createdAt": isoformat_or_none(self.created_at),
        }


class IntegrationToken(db.Model):
    __tablename__ = "integration_tokens"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(50), nullable=False, unique=True)
    access_token = db.Column(db.Text, nullable=False)
    refresh_token = db.Column(db.Text)
    expires_at = db.Column(db.DateTime(timezone=True))
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def is_expired(self) -> bool:
        expires_at = ensure_utc(self.expires_at)
        return expires_at is not None and expires_at <= utcnow()


class BrandingSettings(db.Model):
    """Singleton row; always stored under BRANDING_SETTINGS_ID."""

    __tablename__ = "branding_settings"

    id = db.Column(db.Integer, primary_key=True, autoincrement=False)
    company_name = db.Column(db.String(255), nullable=False)
    logo_url = db.Column(db.String(MAX_URL_LENGTH))
    favicon_url = db.Column(db.String(MAX_URL_LENGTH))
    logo_size_px = db.Column(db.Integer, nullable=False, default=DEFAULT_LOGO_SIZE_PX)
    primary_color = db.Column(db.String(64), nullable=False, default=DEFAULT_PRIMARY_COLOR)
    meta_title = db.Column(db.Text)
    meta_description = db.Column(db.Text)
    hero_title = db.Column(db.Text)
    hero_description = db.Column(db.Text)
    services = db.Column(db.JSON)
    cta_title = db.Column(db.Text)
    cta_description = db.Column(db.Text)
    cta_button_text = db.Column(db.Text)
    login_title = db.Column(db.Text)
    login_description = db.Column(db.Text)
    login_features = db.Column(db.JSON)
    login_background_gradient = db.Column(db.JSON)
    version = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime(timezone=True))

    def to_dict(self) -> dict[str, object]:
        document: dict[str, object] = {
            field: getattr(self, column) for field, column in BRANDING_FIELD_COLUMNS.items()
        }
        document["services"] = [dict(entry) for entry in (self.services or [])]
        document["loginFeatures"] = list(self.login_features or [])
        if self.login_background_gradient:
            document["loginBackgroundGradient"] = dict(self.login_background_gradient)
        document["updatedAt"] = isoformat_or_none(self.updated_at)
        document["version"] = self.version or 0
        return document

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<BrandingSettings {self.company_name} v{self.version}>"


def empty_branding_document() -> dict[str, object]:
    document: dict[str, object] = {field: None for field in BRANDING_FIELD_COLUMNS}
    document.update(
        {
            "companyName": "",
            "logoSizePx": DEFAULT_LOGO_SIZE_PX,
            "primaryColor": DEFAULT_PRIMARY_COLOR,
            "services": [],
            "loginFeatures": [],
            "updatedAt": None,
            "version": 0,
        }
    )
    return document


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)

    instance_path = Path(app.instance_path)
    db_path = instance_path / "portal.db"
    os.makedirs(instance_path, exist_ok=True)

    secret_key = os.environ.get("SECRET_KEY") or secrets.token_hex(16)

    try:
        freshbooks_timeout = float(os.environ.get("FRESHBOOKS_API_TIMEOUT", "10"))
    except ValueError:
        freshbooks_timeout = 10.0

    default_config = {
        "SECRET_KEY": secret_key,
        "SQLALCHEMY_DATABASE_URI": os.environ.get("DATABASE_URL") or f"sqlite:///{db_path}",
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "ADMIN_EMAIL": os.environ.get("ADMIN_EMAIL"),
        "ADMIN_PASSWORD": os.environ.get("ADMIN_PASSWORD"),
        "ADMIN_NAME": os.environ.get("ADMIN_NAME", "System Admin"),
        "BRANDING_UPLOAD_FOLDER": os.environ.get("BRANDING_UPLOAD_FOLDER")
        or str(instance_path / "branding"),
        "MAX_CONTENT_LENGTH": 5 * 1024 * 1024,
        "FRESHBOOKS_CLIENT_ID": os.environ.get("FRESHBOOKS_CLIENT_ID"),
        "FRESHBOOKS_CLIENT_SECRET": os.environ.get("FRESHBOOKS_CLIENT_SECRET"),
        "FRESHBOOKS_REDIRECT_URI": os.environ.get("FRESHBOOKS_REDIRECT_URI"),
        "FRESHBOOKS_API_TIMEOUT": freshbooks_timeout,
        "DASHBOARD_STATS_CACHE_SECONDS": float(
            os.environ.get(
                "DASHBOARD_STATS_CACHE_SECONDS", DASHBOARD_STATS_CACHE_SECONDS_DEFAULT
            )
        ),
    }

    app.config.update(default_config)

    if test_config:
        app.config.update(test_config)

    db.init_app(app)

    register_routes(app)
    register_commands(app)

    with app.app_context():
        Path(app.config["BRANDING_UPLOAD_FOLDER"]).mkdir(parents=True, exist_ok=True)
        db.create_all()
        ensure_default_admin_user()

    return app


def ensure_default_admin_user() -> None:
    if User.query.filter_by(role="admin").count() > 0:
        return

    email = (current_app.config.get("ADMIN_EMAIL") or "").strip().lower()
    password = current_app.config.get("ADMIN_PASSWORD")

    if not email or not password:
        current_app.logger.warning(
            "No admin users exist and ADMIN_EMAIL/ADMIN_PASSWORD were not provided."
        )
        return

    existing = User.query.filter_by(email=email).first()
    if existing:
        existing.role = "admin"
        existing.set_password(password)
    else:
        admin = User(
            email=email,
            name=current_app.config.get("ADMIN_NAME") or "System Admin",
            role="admin",
        )
        admin.set_password(password)
        db.session.add(admin)
    db.session.commit()


def reset_admin_user() -> User | None:
    email = (current_app.config.get("ADMIN_EMAIL") or "").strip().lower()
    password = current_app.config.get("ADMIN_PASSWORD")
    if not email or not password:
        current_app.logger.warning(
            "ADMIN_EMAIL and ADMIN_PASSWORD are required to reset the administrator."
        )
        return None

    admin = User.query.filter_by(email=email).first()
    if admin is None:
        admin = User(email=email, name=current_app.config.get("ADMIN_NAME") or "System Admin")
        db.session.add(admin)
    admin.role = "admin"
    admin.set_password(password)
    db.session.commit()
    return admin


def record_activity(activity_type: str, description: str) -> Activity:
    activity = Activity(activity_type=activity_type, description=description[:500])
    db.session.add(activity)
    db.session.commit()
    return activity


def current_user() -> User | None:
    if "current_user" in g:
        return g.current_user

    user = None
    user_id = session.get(SESSION_USER_KEY)
    if user_id:
        user = db.session.get(User, user_id)
        if user is None:
            session.pop(SESSION_USER_KEY, None)

    g.current_user = user
    return user


def login_required(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        if current_user() is None:
            return jsonify({"error": "Authentication required."}), 401
        return func(*args, **kwargs)

    return wrapper


def admin_required(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        user = current_user()
        if user is None:
            return jsonify({"error": "Authentication required."}), 401
        if not user.is_admin:
            current_app.logger.warning(
                "Rejected %s %s for user %s with role '%s'",
                request.method,
                request.path,
                user.id,
                user.role,
            )
            return jsonify({"error": "Administrator access required."}), 403
        return func(*args, **kwargs)

    return wrapper


def _field_error(field: str, message: str) -> dict[str, str]:
    return {"field": field, "message": message}


def _clean_optional_text(value: object, max_length: int | None = None) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError("Must be a string or null.")
    cleaned = value.strip()
    if max_length is not None and len(cleaned) > max_length:
        raise ValueError(f"Must be at most {max_length} characters.")
    return cleaned or None


def _clean_url(value: object) -> str | None:
    return _clean_optional_text(value, MAX_URL_LENGTH)


def _clean_company_name(value: object) -> str:
    if not isinstance(value, str):
        raise ValueError("Must be a string.")
    cleaned = value.strip()
    if not cleaned:
        raise ValueError("Company name is required.")
    if len(cleaned) > 255:
        raise ValueError("Must be at most 255 characters.")
    return cleaned


def _clean_logo_size(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError("Must be a whole number of pixels.")
    if value < LOGO_SIZE_MIN_PX or value > LOGO_SIZE_MAX_PX:
        raise ValueError(
            f"Must be between {LOGO_SIZE_MIN_PX} and {LOGO_SIZE_MAX_PX} pixels."
        )
    return value


def _clean_color(value: object) -> str:
    if not is_css_color(value):
        raise ValueError("Must be a CSS color such as #1a73e8.")
    return value.strip()


def _clean_services(value: object) -> list[dict[str, str]]:
    if not isinstance(value, list):
        raise ValueError("Must be a list of services.")

    services: list[dict[str, str]] = []
    for index, entry in enumerate(value):
        if not isinstance(entry, dict):
            raise ValueError(f"Item {index + 1} must be an object.")
        missing = [key for key in SERVICE_ENTRY_KEYS if key not in entry]
        if missing:
            raise ValueError(f"Item {index + 1} is missing {', '.join(missing)}.")
        unexpected = sorted(set(entry) - set(SERVICE_ENTRY_KEYS))
        if unexpected:
            raise ValueError(f"Item {index + 1} has unknown keys: {', '.join(unexpected)}.")
        for key in SERVICE_ENTRY_KEYS:
            if not isinstance(entry[key], str):
                raise ValueError(f"Item {index + 1} {key} must be a string.")
        services.append({key: entry[key].strip() for key in SERVICE_ENTRY_KEYS})
    return services


def _clean_login_features(value: object) -> list[str]:
    if not isinstance(value, list):
        raise ValueError("Must be a list of strings.")
    features: list[str] = []
    for index, entry in enumerate(value):
        if not isinstance(entry, str):
            raise ValueError(f"Item {index + 1} must be a string.")
        features.append(entry.strip())
    return features


def _clean_gradient(value: object) -> dict[str, str] | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValueError("Must be an object with 'from' and 'to' colors, or null.")
    if set(value) != set(GRADIENT_KEYS):
        raise ValueError("Must contain exactly 'from' and 'to'.")
    gradient: dict[str, str] = {}
    for key in GRADIENT_KEYS:
        if not is_css_color(value[key]):
            raise ValueError(f"'{key}' must be a CSS color.")
        gradient[key] = value[key].strip()
    return gradient


BRANDING_FIELD_CLEANERS = {
    "companyName": _clean_company_name,
    "logoUrl": _clean_url,
    "faviconUrl": _clean_url,
    "logoSizePx": _clean_logo_size,
    "primaryColor": _clean_color,
    "metaTitle": _clean_optional_text,
    "metaDescription": _clean_optional_text,
    "heroTitle": _clean_optional_text,
    "heroDescription": _clean_optional_text,
    "services": _clean_services,
    "ctaTitle": _clean_optional_text,
    "ctaDescription": _clean_optional_text,
    "ctaButtonText": _clean_optional_text,
    "loginTitle": _clean_optional_text,
    "loginDescription": _clean_optional_text,
    "loginFeatures": _clean_login_features,
    "loginBackgroundGradient": _clean_gradient,
}


def validate_branding_patch(patch: object) -> dict[str, object]:
    if not isinstance(patch, dict):
        raise BrandingValidationError(
            [_field_error("body", "Request body must be a JSON object.")]
        )

    errors: list[dict[str, str]] = []
    cleaned: dict[str, object] = {}
    for field, value in patch.items():
        if field in SERVER_ASSIGNED_BRANDING_FIELDS:
            errors.append(_field_error(field, "This field is assigned by the server."))
            continue
        cleaner = BRANDING_FIELD_CLEANERS.get(field)
        if cleaner is None:
            errors.append(_field_error(field, "Unknown branding field."))
            continue
        try:
            cleaned[field] = cleaner(value)
        except ValueError as exc:
            errors.append(_field_error(field, str(exc)))

    if errors:
        raise BrandingValidationError(errors)
    return cleaned


def read_branding_settings() -> BrandingSettings | None:
    try:
        return db.session.get(BrandingSettings, BRANDING_SETTINGS_ID)
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise BrandingStorageError("Unable to read branding settings.") from exc


def _next_branding_timestamp(previous: datetime | None) -> datetime:
    now = utcnow()
    previous = ensure_utc(previous)
    if previous is not None and now <= previous:
        now = previous + timedelta(microseconds=1)
    return now


def _merge_branding_patch(settings: BrandingSettings, patch: dict[str, object]) -> None:
    for field, value in patch.items():
        if isinstance(value, list):
            value = [dict(entry) if isinstance(entry, dict) else entry for entry in value]
        elif isinstance(value, dict):
            value = dict(value)
        setattr(settings, BRANDING_FIELD_COLUMNS[field], value)

    settings.logo_size_px = clamp_logo_size(settings.logo_size_px)
    settings.updated_at = _next_branding_timestamp(settings.updated_at)
    settings.version = (settings.version or 0) + 1


def write_branding_settings(
    patch: dict[str, object], *, expected_version: int | None = None
) -> BrandingSettings:
    last_error: Exception | None = None

    # A second attempt covers a concurrent first write that claimed the row.
    for _attempt in range(2):
        try:
            settings = db.session.get(BrandingSettings, BRANDING_SETTINGS_ID)
            current_version = settings.version if settings else 0
            if expected_version is not None and expected_version != current_version:
                raise BrandingConflictError(expected_version, current_version)

            if settings is None:
                settings = BrandingSettings(
                    id=BRANDING_SETTINGS_ID,
                    company_name=DEFAULT_COMPANY_NAME,
                    logo_size_px=DEFAULT_LOGO_SIZE_PX,
                    primary_color=DEFAULT_PRIMARY_COLOR,
                    services=[],
                    login_features=[],
                    version=0,
                )
                db.session.add(settings)

            _merge_branding_patch(settings, patch)
            db.session.commit()
            return settings
        except IntegrityError as exc:
            db.session.rollback()
            last_error = exc
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise BrandingStorageError("Unable to save branding settings.") from exc

    raise BrandingStorageError("Unable to save branding settings.") from last_error


def get_branding_settings() -> dict[str, object]:
    settings = read_branding_settings()
    if settings is None:
        return empty_branding_document()
    return settings.to_dict()


def get_public_branding() -> dict[str, object]:
    document = get_branding_settings()
    return {field: document.get(field) for field in PUBLIC_BRANDING_FIELDS}


def update_branding_settings(
    patch: object, *, expected_version: int | None = None
) -> dict[str, object]:
    cleaned = validate_branding_patch(patch)
    settings = write_branding_settings(cleaned, expected_version=expected_version)
    return settings.to_dict()


def parse_if_match_version(header_value: str | None) -> int | None:
    """Return the version named by an If-Match header, or None when absent or ``*``."""

    if not header_value:
        return None
    cleaned = header_value.strip()
    if cleaned == "*":
        return None
    if cleaned.startswith("W/"):
        cleaned = cleaned[2:]
    cleaned = cleaned.strip().strip('"')
    try:
        return int(cleaned)
    except ValueError as exc:
        raise ValueError("If-Match must carry a branding settings version.") from exc


def allowed_branding_file(filename: str) -> bool:
    extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    return extension in ALLOWED_BRANDING_EXTENSIONS


def store_branding_upload(app: Flask, upload_type: str, file) -> str:
    filename = secure_filename(file.filename or "")
    if not filename or not allowed_branding_file(filename):
        allowed = ", ".join(sorted(ALLOWED_BRANDING_EXTENSIONS))
        raise ValueError(f"Unsupported branding file type. Allowed formats: {allowed}.")

    extension = filename.rsplit(".", 1)[-1].lower()
    upload_folder = Path(app.config["BRANDING_UPLOAD_FOLDER"])
    os.makedirs(upload_folder, exist_ok=True)

    stored_filename = (
        f"{upload_type}_{int(utcnow().timestamp())}_{secrets.token_hex(4)}.{extension}"
    )
    file.save(upload_folder / stored_filename)
    return url_for("branding_upload_file", filename=stored_filename)


def delete_branding_upload(app: Flask, url: str | None) -> None:
    marker = f"{BRANDING_UPLOAD_ROUTE}/"
    if not url or marker not in url:
        return

    stored_filename = secure_filename(url.split(marker, 1)[1])
    if not stored_filename:
        return

    file_path = Path(app.config["BRANDING_UPLOAD_FOLDER"]) / stored_filename
    if file_path.is_file():
        try:
            file_path.unlink()
        except OSError as exc:
            app.logger.warning("Unable to remove replaced branding file %s: %s", file_path, exc)


def invalidate_dashboard_stats_cache(app: Flask | None = None) -> None:
    target_app = app
    if target_app is None:
        try:
            target_app = current_app._get_current_object()
        except RuntimeError:
            target_app = None

    if target_app is None:
        return

    target_app.config.pop(DASHBOARD_STATS_CACHE_KEY, None)


def get_dashboard_stats_snapshot(app: Flask) -> dict[str, int]:
    ttl_seconds = float(
        app.config.get("DASHBOARD_STATS_CACHE_SECONDS", DASHBOARD_STATS_CACHE_SECONDS_DEFAULT)
    )
    now = time.monotonic()
    cached = app.config.get(DASHBOARD_STATS_CACHE_KEY)

    if cached and cached.get("expires_at", 0) > now:
        return cached["payload"]

    payload = {
        "clientCount": Client.query.count(),
        "activeProjects": Project.query.filter_by(status="active").count(),
        "pendingInvoices": Invoice.query.filter(
            ~Invoice.status.in_(PAID_INVOICE_STATUSES | UNBILLED_INVOICE_STATUSES)
        ).count(),
        "newInquiries": Inquiry.query.filter_by(status="pending").count(),
    }

    app.config[DASHBOARD_STATS_CACHE_KEY] = {
        "payload": payload,
        "expires_at": now + ttl_seconds,
    }
    return payload


def _dashboard_stats_cache_invalidator(mapper, connection, target):  # noqa: ARG001
    invalidate_dashboard_stats_cache()


for model in (Client, Project, Invoice, Inquiry):
    for event_name in ("after_insert", "after_update", "after_delete"):
        event.listen(model, event_name, _dashboard_stats_cache_invalidator)


class FreshbooksClient:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        timeout: float = 10.0,
    ):
        self.client_id = (client_id or "").strip()
        self.client_secret = (client_secret or "").strip()
        self.redirect_uri = (redirect_uri or "").strip()
        self.timeout = timeout

        if not self.client_id or not self.client_secret:
            raise FreshbooksApiError("Freshbooks client id and secret are required.")

    def authorize_url(self) -> str:
        query = urlencode(
            {
                "client_id": self.client_id,
                "response_type": "code",
                "redirect_uri": self.redirect_uri,
            }
        )
        return f"{FRESHBOOKS_AUTHORIZE_URL}?{query}"

    def _post_token(self, payload: dict[str, str]) -> IntegrationToken:
        response = requests.post(
            f"{FRESHBOOKS_API_URL}/auth/oauth/token",
            json={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                **payload,
            },
            timeout=self.timeout,
        )
        if response.status_code != 200:
            raise FreshbooksApiError(
                f"Freshbooks token endpoint responded with HTTP {response.status_code}."
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise FreshbooksApiError("Freshbooks returned an invalid token payload.") from exc

        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            raise FreshbooksApiError("Freshbooks token payload is missing an access token.")

        token = IntegrationToken.query.filter_by(provider=FRESHBOOKS_PROVIDER).first()
        if token is None:
            token = IntegrationToken(provider=FRESHBOOKS_PROVIDER, access_token=access_token)
            db.session.add(token)

        expires_in = _coerce_int(data.get("expires_in"))
        token.access_token = access_token
        token.refresh_token = data.get("refresh_token") or token.refresh_token
        token.expires_at = utcnow() + timedelta(seconds=expires_in) if expires_in else None
        db.session.commit()
        return token

    def exchange_code(self, code: str) -> IntegrationToken:
        return self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            }
        )

    def refresh_access_token(self, token: IntegrationToken) -> IntegrationToken:
        if not token.refresh_token:
            raise FreshbooksApiError("No Freshbooks refresh token available.")
        return self._post_token(
            {"grant_type": "refresh_token", "refresh_token": token.refresh_token}
        )

    def _request(self, method: str, endpoint: str) -> object:
        token = IntegrationToken.query.filter_by(provider=FRESHBOOKS_PROVIDER).first()
        if token is None:
            raise FreshbooksApiError("Not connected to Freshbooks.")
        if token.is_expired():
            token = self.refresh_access_token(token)

        response = requests.request(
            method,
            f"{FRESHBOOKS_API_URL}{endpoint}",
            headers={
                "Authorization": f"Bearer {token.access_token}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
        )
        if response.status_code != 200:
            raise FreshbooksApiError(
                f"Freshbooks API responded with HTTP {response.status_code}: {response.text}"
            )

        try:
            return response.json()
        except ValueError as exc:
            raise FreshbooksApiError("Freshbooks API returned an invalid JSON payload.") from exc

    @staticmethod
    def _extract_collection(payload: object, key: str) -> list[dict]:
        if isinstance(payload, list):
            return [entry for entry in payload if isinstance(entry, dict)]
        if not isinstance(payload, dict):
            raise FreshbooksApiError("Unexpected Freshbooks API response structure.")

        candidates: list[object] = [payload.get(key)]
        response = payload.get("response")
        if isinstance(response, dict):
            result = response.get("result")
            if isinstance(result, dict):
                candidates.insert(0, result.get(key))

        for candidate in candidates:
            if isinstance(candidate, list):
                return [entry for entry in candidate if isinstance(entry, dict)]
        raise FreshbooksApiError("Unexpected Freshbooks API response structure.")

    def get_clients(self) -> list[dict]:
        return self._extract_collection(
            self._request("GET", "/accounting/account/clients"), "clients"
        )

    def get_projects(self) -> list[dict]:
        return self._extract_collection(
            self._request("GET", "/projects/business/projects"), "projects"
        )

    def get_invoices(self) -> list[dict]:
        return self._extract_collection(
            self._request("GET", "/accounting/account/invoices"), "invoices"
        )

    def sync(self) -> dict[str, list[dict]]:
        return {
            "clients": self.get_clients(),
            "projects": self.get_projects(),
            "invoices": self.get_invoices(),
        }


def sync_freshbooks_data(data: dict[str, list[dict]]) -> dict[str, int]:
    clients_by_remote_id: dict[str, Client] = {}
    counts = {"clients": 0, "projects": 0, "invoices": 0}

    for entry in data.get("clients") or []:
        remote_id = str(entry.get("id") or entry.get("userid") or "").strip()
        email = (entry.get("email") or "").strip().lower()
        if not remote_id or not email:
            continue
        name = (
            (entry.get("organization") or "").strip()
            or " ".join(
                part for part in (entry.get("fname"), entry.get("lname")) if part
            ).strip()
            or email
        )
        client = Client.query.filter_by(freshbooks_id=remote_id).first()
        if client is None:
            client = Client.query.filter_by(email=email, freshbooks_id=None).first()
        if client is None:
            client = Client(freshbooks_id=remote_id, name=name, email=email)
            db.session.add(client)
        client.freshbooks_id = remote_id
        client.name = name
        client.email = email
        client.phone = entry.get("mob_phone") or entry.get("bus_phone") or client.phone
        clients_by_remote_id[remote_id] = client
        counts["clients"] += 1

    def _linked_client(remote_client_id: object) -> Client | None:
        key = str(remote_client_id or "").strip()
        if not key:
            return None
        return clients_by_remote_id.get(key) or Client.query.filter_by(freshbooks_id=key).first()

    for entry in data.get("projects") or []:
        remote_id = str(entry.get("id") or "").strip()
        title = (entry.get("title") or "").strip()
        if not remote_id or not title:
            continue
        project = Project.query.filter_by(freshbooks_id=remote_id).first()
        if project is None:
            project = Project(freshbooks_id=remote_id, name=title)
            db.session.add(project)
        project.name = title
        project.description = entry.get("description") or project.description
        if entry.get("complete"):
            project.status = "completed"
        elif entry.get("active") is False:
            project.status = "on_hold"
        else:
            project.status = "active"
        project.budget_cents = _amount_to_cents(entry.get("budget"))
        project.due_date = _parse_date(entry.get("due_date"))
        project.client = _linked_client(entry.get("client_id"))
        counts["projects"] += 1

    for entry in data.get("invoices") or []:
        remote_id = str(entry.get("invoiceid") or entry.get("id") or "").strip()
        if not remote_id:
            continue
        invoice = Invoice.query.filter_by(freshbooks_id=remote_id).first()
        if invoice is None:
            invoice = Invoice(freshbooks_id=remote_id)
            db.session.add(invoice)
        invoice.invoice_number = entry.get("invoice_number") or invoice.invoice_number
        invoice.status = (
            str(entry.get("v3_status") or entry.get("payment_status") or "sent").lower()
        )
        invoice.amount_cents = _amount_to_cents(entry.get("amount"))
        invoice.due_date = _parse_date(entry.get("due_date"))
        invoice.client = _linked_client(entry.get("customerid"))
        counts["invoices"] += 1

    db.session.commit()
    record_activity(
        "sync",
        "Synchronized data with Freshbooks "
        f"({counts['clients']} clients, {counts['projects']} projects, "
        f"{counts['invoices']} invoices)",
    )
    return counts


def register_commands(app: Flask) -> None:
    @app.cli.command("reset-admin")
    def reset_admin_command():
        """Create or reset the administrator from ADMIN_EMAIL and ADMIN_PASSWORD."""
        admin = reset_admin_user()
        if admin is None:
            raise SystemExit(1)
        app.logger.info("Administrator %s is ready.", admin.email)


def register_routes(app: Flask) -> None:
    def _json_body() -> dict:
        payload = request.get_json(silent=True)
        return payload if isinstance(payload, dict) else {}

    def _login(user: User) -> None:
        session.clear()
        session[SESSION_USER_KEY] = user.id
        session["authenticated_at"] = utcnow().isoformat()
        g.current_user = user

    def _build_freshbooks_client() -> FreshbooksClient:
        return FreshbooksClient(
            app.config.get("FRESHBOOKS_CLIENT_ID") or "",
            app.config.get("FRESHBOOKS_CLIENT_SECRET") or "",
            app.config.get("FRESHBOOKS_REDIRECT_URI") or "",
            timeout=float(app.config.get("FRESHBOOKS_API_TIMEOUT") or 10.0),
        )

    def _branding_response(document: dict[str, object], status: int = 200):
        response = jsonify(document)
        response.status_code = status
        response.set_etag(str(document.get("version") or 0))
        return response

    def _storage_failure(exc: BrandingStorageError):
        app.logger.exception("Branding settings storage failed: %s", exc)
        return jsonify({"error": "Unable to save branding settings right now."}), 500

    def _record_branding_activity(description: str) -> None:
        # The branding write has already committed at this point.
        try:
            record_activity("branding", description)
        except SQLAlchemyError as exc:
            db.session.rollback()
            app.logger.warning("Unable to record branding activity: %s", exc)

    @app.get("/")
    def index():
        try:
            branding = get_public_branding()
        except BrandingStorageError:
            branding = empty_branding_document()
        return jsonify(
            {
                "name": branding.get("companyName") or DEFAULT_COMPANY_NAME,
                "status": "ok",
            }
        )

    @app.post("/api/register")
    def register():
        payload = _json_body()
        email = str(payload.get("email") or "").strip().lower()
        password = str(payload.get("password") or "")
        name = str(payload.get("name") or "").strip()

        if not email or not EMAIL_PATTERN.match(email):
            return jsonify({"error": "A valid email address is required."}), 400
        if len(password) < MIN_PASSWORD_LENGTH:
            return (
                jsonify(
                    {"error": f"Password must be at least {MIN_PASSWORD_LENGTH} characters."}
                ),
                400,
            )
        if not name:
            return jsonify({"error": "Name is required."}), 400
        if User.query.filter_by(email=email).first():
            return jsonify({"error": "An account with that email already exists."}), 409

        user = User(email=email, name=name, role="pending")
        user.set_password(password)
        db.session.add(user)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return jsonify({"error": "An account with that email already exists."}), 409

        record_activity("user", f"New user {user.name} registered")
        _login(user)
        return jsonify(user.to_dict()), 201

    @app.post("/api/login")
    def login():
        payload = _json_body()
        email = str(payload.get("email") or "").strip().lower()
        password = str(payload.get("password") or "")

        user = User.query.filter_by(email=email).first() if email else None
        if user is None or not password or not user.check_password(password):
            return jsonify({"error": "Invalid email or password."}), 401

        user.last_login_at = utcnow()
        db.session.commit()
        _login(user)
        return jsonify(user.to_dict())

    @app.post("/api/logout")
    def logout():
        session.clear()
        g.pop("current_user", None)
        return "", 204

    @app.get("/api/user")
    @login_required
    def get_current_user():
        return jsonify(current_user().to_dict())

    @app.get("/api/users")
    @admin_required
    def list_users():
        query = User.query
        role = (request.args.get("role") or "").strip()
        if role:
            query = query.filter_by(role=role)
        users = query.order_by(User.created_at.desc(), User.id.desc()).all()
        return jsonify([user.to_dict() for user in users])

    @app.post("/api/users/<int:user_id>/role")
    @admin_required
    def update_user_role(user_id: int):
        user = db.session.get(User, user_id)
        if user is None:
            return jsonify({"error": "User not found."}), 404

        role = str(_json_body().get("role") or "").strip().lower()
        if role not in USER_ROLES:
            return jsonify({"error": f"Role must be one of: {', '.join(USER_ROLES)}."}), 400
        if user.id == current_user().id and role != "admin":
            return jsonify({"error": "Administrators cannot demote themselves."}), 400

        user.role = role
        if role == "client" and not Client.query.filter_by(user_id=user.id).first():
            db.session.add(Client(user_id=user.id, name=user.name, email=user.email))
        db.session.commit()

        record_activity("user", f"{user.name} is now {role}")
        return jsonify(user.to_dict())

    @app.get("/api/stats")
    @admin_required
    def stats():
        return jsonify(get_dashboard_stats_snapshot(app))

    @app.get("/api/clients")
    @admin_required
    def list_clients():
        clients = Client.query.order_by(Client.name.asc()).all()
        return jsonify([client.to_dict() for client in clients])

    @app.get("/api/activities")
    @admin_required
    def list_activities():
        try:
            limit = max(1, min(int(request.args.get("limit", 50)), 200))
        except ValueError:
            limit = 50
        activities = (
            Activity.query.order_by(Activity.created_at.desc(), Activity.id.desc())
            .limit(limit)
            .all()
        )
        return jsonify([activity.to_dict() for activity in activities])

    @app.post("/api/inquiries")
    def create_inquiry():
        payload = _json_body()
        name = str(payload.get("name") or "").strip()
        email = str(payload.get("email") or "").strip().lower()
        message = str(payload.get("message") or "").strip()
        company = str(payload.get("company") or "").strip() or None

        if not name or not message:
            return jsonify({"error": "Name and message are required."}), 400
        if not EMAIL_PATTERN.match(email):
            return jsonify({"error": "A valid email address is required."}), 400

        inquiry = Inquiry(name=name, email=email, company=company, message=message)
        db.session.add(inquiry)
        db.session.commit()
        record_activity("inquiry", f"New inquiry from {name}")
        return jsonify(inquiry.to_dict()), 201

    @app.get("/api/inquiries")
    @admin_required
    def list_inquiries():
        inquiries = Inquiry.query.order_by(Inquiry.created_at.desc(), Inquiry.id.desc()).all()
        return jsonify([inquiry.to_dict() for inquiry in inquiries])

    @app.post("/api/inquiries/<int:inquiry_id>/status")
    @admin_required
    def update_inquiry_status(inquiry_id: int):
        inquiry = db.session.get(Inquiry, inquiry_id)
        if inquiry is None:
            return jsonify({"error": "Inquiry not found."}), 404

        status = str(_json_body().get("status") or "").strip().lower()
        if status not in INQUIRY_STATUS_OPTIONS:
            return (
                jsonify(
                    {"error": f"Status must be one of: {', '.join(INQUIRY_STATUS_OPTIONS)}."}
                ),
                400,
            )

        inquiry.status = status
        db.session.commit()
        return jsonify(inquiry.to_dict())

    @app.get("/api/branding/public")
    def public_branding():
        try:
            return jsonify(get_public_branding())
        except BrandingStorageError as exc:
            app.logger.warning("Serving default branding after read failure: %s", exc)
            document = empty_branding_document()
            return jsonify({field: document.get(field) for field in PUBLIC_BRANDING_FIELDS})

    @app.get("/api/branding")
    @login_required
    def get_branding():
        try:
            document = get_branding_settings()
        except BrandingStorageError as exc:
            app.logger.exception("Branding settings read failed: %s", exc)
            return jsonify({"error": "Unable to load branding settings right now."}), 500
        return _branding_response(document)

    @app.patch("/api/branding")
    @admin_required
    def update_branding():
        try:
            expected_version = parse_if_match_version(request.headers.get("If-Match"))
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400

        try:
            document = update_branding_settings(
                request.get_json(silent=True), expected_version=expected_version
            )
        except BrandingValidationError as exc:
            return jsonify({"error": "Invalid branding settings.", "fields": exc.errors}), 400
        except BrandingConflictError as exc:
            return (
                jsonify(
                    {
                        "error": "Branding settings were changed by someone else.",
                        "currentVersion": exc.current_version,
                    }
                ),
                412,
            )
        except BrandingStorageError as exc:
            return _storage_failure(exc)

        _record_branding_activity(f"Branding settings updated by {current_user().name}")
        return _branding_response(document)

    @app.post("/api/branding/upload/<upload_type>")
    @admin_required
    def upload_branding(upload_type: str):
        if upload_type not in BRANDING_UPLOAD_TYPES:
            return jsonify({"error": "Unknown branding upload type."}), 400

        file = request.files.get("file")
        if not file or not file.filename:
            return jsonify({"error": "Please choose a file to upload."}), 400

        try:
            url = store_branding_upload(app, upload_type, file)
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400

        field = BRANDING_UPLOAD_TYPES[upload_type]["field"]
        try:
            previous = read_branding_settings()
            previous_url = previous.to_dict().get(field) if previous else None
            write_branding_settings({field: url})
        except BrandingStorageError as exc:
            delete_branding_upload(app, url)
            return _storage_failure(exc)

        if previous_url != url:
            delete_branding_upload(app, previous_url)
        _record_branding_activity(f"{BRANDING_UPLOAD_TYPES[upload_type]['label']} uploaded")
        return jsonify({"url": url})

    @app.get(f"{BRANDING_UPLOAD_ROUTE}/<path:filename>")
    def branding_upload_file(filename: str):
        return send_from_directory(app.config["BRANDING_UPLOAD_FOLDER"], filename)

    @app.get("/api/freshbooks/connect")
    @admin_required
    def freshbooks_connect():
        try:
            freshbooks = _build_freshbooks_client()
        except FreshbooksApiError as exc:
            return jsonify({"error": str(exc)}), 400
        return jsonify({"url": freshbooks.authorize_url()})

    @app.get("/api/freshbooks/callback")
    @admin_required
    def freshbooks_callback():
        code = (request.args.get("code") or "").strip()
        if not code:
            return jsonify({"error": "Missing authorization code."}), 400

        try:
            _build_freshbooks_client().exchange_code(code)
        except FreshbooksApiError as exc:
            app.logger.warning("Freshbooks authorization failed: %s", exc)
            return jsonify({"error": "Failed to connect to Freshbooks."}), 502
        except requests.RequestException as exc:
            app.logger.warning("Freshbooks authorization request failed: %s", exc)
            return jsonify({"error": "Failed to connect to Freshbooks."}), 502

        record_activity("sync", "Connected to Freshbooks")
        return redirect(url_for("index"))

    @app.post("/api/freshbooks/sync")
    @admin_required
    def freshbooks_sync():
        try:
            data = _build_freshbooks_client().sync()
        except FreshbooksApiError as exc:
            app.logger.warning("Freshbooks sync failed: %s", exc)
            return jsonify({"error": "Failed to sync with Freshbooks."}), 502
        except requests.RequestException as exc:
            app.logger.warning("Freshbooks sync request failed: %s", exc)
            return jsonify({"error": "Failed to sync with Freshbooks."}), 502

        return jsonify(sync_freshbooks_data(data))


app = create_app()


if __name__ == "__main__":
    http_port = 5000
    port_env = os.environ.get("PORT")
    if port_env:
        try:
            http_port = int(port_env)
        except ValueError:
            app.logger.warning("Ignoring invalid PORT value: %s", port_env)

    try:
        server: BaseWSGIServer = make_server(host="0.0.0.0", port=http_port, app=app, threaded=True)
    except OSError as exc:  # pragma: no cover - exercised in deployment
        if exc.errno == errno.EACCES:
            app.logger.error(
                "Permission denied starting the portal on port %s. Choose a port above 1024.",
                http_port,
            )
        else:
            app.logger.error("Unable to start the portal on port %s: %s", http_port, exc)
        raise SystemExit(1) from exc

    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    app.logger.info("Client portal listening on port %s", http_port)

    wait_event = threading.Event()
    try:
        while thread.is_alive():
            wait_event.wait(0.5)
    except KeyboardInterrupt:  # pragma: no cover - exercised in deployment
        app.logger.info("Shutting down the portal...")
    finally:
        server.shutdown()
        thread.join()
