"""Turn a branding document into display effects and page copy.

``compute_display_effects`` is pure; ``apply_branding`` executes the effects
against a ``DisplayContext`` (CSS custom properties, document title and head
links). Every field is optional and applied independently.
"""

import enum
import logging
from typing import NamedTuple

logger = logging.getLogger(__name__)

DEFAULT_COMPANY_NAME = "Client Portal"
DEFAULT_SITE_TITLE = DEFAULT_COMPANY_NAME
DEFAULT_TAGLINE = (
    "Access your projects, track progress, and manage invoices all in one place."
)
DEFAULT_LOGIN_FEATURES = [
    "Real-time project updates",
    "Secure client portal",
    "Invoice management",
    "Document sharing",
]
DEFAULT_CTA_BUTTON_TEXT = "Get Started"
DEFAULT_LOGO_SIZE_PX = 32
LOGO_SIZE_MIN_PX = 16
LOGO_SIZE_MAX_PX = 64

PRIMARY_COLOR_VARIABLE = "--branding-primary"
GRADIENT_FROM_VARIABLE = "--branding-gradient-from"
GRADIENT_TO_VARIABLE = "--branding-gradient-to"
FAVICON_LINK_TYPE = "image/x-icon"


class ServiceIcon(enum.Enum):
    BRIEFCASE = "Briefcase"
    CODE = "Code"
    SERVER = "Server"
    SHIELD = "Shield"
    CLOUD = "Cloud"
    CHART = "BarChart"
    USERS = "Users"
    WRENCH = "Wrench"
    MONITOR = "Monitor"
    SMARTPHONE = "Smartphone"
    GLOBE = "Globe"
    DATABASE = "Database"


DEFAULT_SERVICE_ICON = ServiceIcon.BRIEFCASE

_ICON_LOOKUP: dict[str, ServiceIcon] = {}
for _icon in ServiceIcon:
    _ICON_LOOKUP[_icon.value.lower()] = _icon
    _ICON_LOOKUP[_icon.name.lower()] = _icon


def resolve_service_icon(key: object) -> ServiceIcon:
    if isinstance(key, ServiceIcon):
        return key
    if not isinstance(key, str):
        return DEFAULT_SERVICE_ICON
    return _ICON_LOOKUP.get(key.strip().lower(), DEFAULT_SERVICE_ICON)


class DisplayEffect(NamedTuple):
    kind: str
    name: str | None
    value: str


class ServiceCard(NamedTuple):
    title: str
    description: str
    icon: ServiceIcon


class LinkElement:
    def __init__(self, rel: str, href: str = "", type: str | None = None):
        self.rel = rel
        self.href = href
        self.type = type

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<link rel={self.rel!r} href={self.href!r}>"


class DisplayContext:
    """In-memory stand-in for the browser document the portal renders into."""

    def __init__(self, title: str = ""):
        self.title = title
        self.css_variables: dict[str, str] = {}
        self.head_links: list[LinkElement] = []

    def find_link(self, rel: str) -> LinkElement | None:
        for link in self.head_links:
            if link.rel == rel:
                return link
        return None

    def snapshot(self) -> dict[str, object]:
        return {
            "title": self.title,
            "cssVariables": dict(self.css_variables),
            "links": [(link.rel, link.href, link.type) for link in self.head_links],
        }


def _text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _company_name(document: dict) -> str:
    return _text(document.get("companyName")) or DEFAULT_COMPANY_NAME


def compute_display_effects(document: object) -> list[DisplayEffect]:
    if not isinstance(document, dict):
        return []

    effects: list[DisplayEffect] = []

    primary_color = _text(document.get("primaryColor"))
    if primary_color:
        effects.append(DisplayEffect("css_variable", PRIMARY_COLOR_VARIABLE, primary_color))

    favicon_url = _text(document.get("faviconUrl"))
    if favicon_url:
        effects.append(DisplayEffect("favicon", "icon", favicon_url))

    title = (
        _text(document.get("metaTitle"))
        or _text(document.get("companyName"))
        or DEFAULT_SITE_TITLE
    )
    effects.append(DisplayEffect("title", None, title))

    gradient = document.get("loginBackgroundGradient")
    if isinstance(gradient, dict):
        gradient_from = _text(gradient.get("from"))
        gradient_to = _text(gradient.get("to"))
        if gradient_from:
            effects.append(DisplayEffect("css_variable", GRADIENT_FROM_VARIABLE, gradient_from))
        if gradient_to:
            effects.append(DisplayEffect("css_variable", GRADIENT_TO_VARIABLE, gradient_to))

    return effects


def apply_branding(context: DisplayContext, document: object) -> list[DisplayEffect]:
    effects = compute_display_effects(document)
    for effect in effects:
        if effect.kind == "css_variable":
            context.css_variables[effect.name] = effect.value
        elif effect.kind == "favicon":
            link = context.find_link(effect.name)
            if link is None:
                link = LinkElement(rel=effect.name)
                context.head_links.append(link)
            link.type = FAVICON_LINK_TYPE
            link.href = effect.value
        elif effect.kind == "title":
            context.title = effect.value
    return effects


class BrandingApplier:
    """Cache listener that re-applies branding whenever the document changes."""

    def __init__(self, context: DisplayContext):
        self.context = context

    def __call__(self, document: dict) -> None:
        try:
            apply_branding(self.context, document)
        except Exception:
            logger.exception("Unable to apply branding to the display context")


def render_services(document: object) -> list[ServiceCard]:
    if not isinstance(document, dict) or not isinstance(document.get("services"), list):
        return []

    cards: list[ServiceCard] = []
    for entry in document["services"]:
        if not isinstance(entry, dict):
            continue
        cards.append(
            ServiceCard(
                title=_text(entry.get("title")) or "",
                description=_text(entry.get("description")) or "",
                icon=resolve_service_icon(entry.get("iconKey")),
            )
        )
    return cards


def _logo_size(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return DEFAULT_LOGO_SIZE_PX
    return max(LOGO_SIZE_MIN_PX, min(LOGO_SIZE_MAX_PX, value))


def home_page_content(document: object) -> dict[str, object]:
    document = document if isinstance(document, dict) else {}
    company = _company_name(document)
    return {
        "companyName": company,
        "logoUrl": _text(document.get("logoUrl")),
        "logoSizePx": _logo_size(document.get("logoSizePx")),
        "heroTitle": _text(document.get("heroTitle")) or f"Welcome to {company}",
        "heroDescription": _text(document.get("heroDescription"))
        or _text(document.get("metaDescription"))
        or DEFAULT_TAGLINE,
        "services": render_services(document),
        "cta": {
            "title": _text(document.get("ctaTitle")),
            "description": _text(document.get("ctaDescription")),
            "buttonText": _text(document.get("ctaButtonText")) or DEFAULT_CTA_BUTTON_TEXT,
        },
    }


def login_page_content(document: object) -> dict[str, object]:
    document = document if isinstance(document, dict) else {}
    raw_features = document.get("loginFeatures")
    if not isinstance(raw_features, list):
        raw_features = []
    features = [feature for feature in (_text(entry) for entry in raw_features) if feature]
    gradient = document.get("loginBackgroundGradient")
    return {
        "title": _text(document.get("loginTitle")) or f"Welcome to {_company_name(document)}",
        "description": _text(document.get("loginDescription")) or DEFAULT_TAGLINE,
        "features": features or list(DEFAULT_LOGIN_FEATURES),
        "gradient": dict(gradient) if isinstance(gradient, dict) else None,
    }
