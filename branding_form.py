"""Editable form state for the branding settings page."""

import copy
import logging

from branding_cache import BrandingCache, BrandingApi, BrandingRequestError, BrandingUpdateError
from branding_display import (
    DEFAULT_LOGO_SIZE_PX,
    DEFAULT_SERVICE_ICON,
    LOGO_SIZE_MAX_PX,
    LOGO_SIZE_MIN_PX,
)

logger = logging.getLogger(__name__)

FORM_FIELDS = (
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
LIST_FIELDS = {"services", "loginFeatures"}
SERVICE_KEYS = ("title", "description", "iconKey")

UPLOAD_FIELDS = {
    "logo": ("logoUrl", "Logo"),
    "favicon": ("faviconUrl", "Favicon"),
}

DEFAULT_PRIMARY_COLOR = "#000000"


def clamp_logo_size(value: object) -> int:
    try:
        size = int(value)
    except (TypeError, ValueError):
        size = DEFAULT_LOGO_SIZE_PX
    return max(LOGO_SIZE_MIN_PX, min(LOGO_SIZE_MAX_PX, size))


def default_form_values() -> dict[str, object]:
    values: dict[str, object] = {field: "" for field in FORM_FIELDS}
    values.update(
        {
            "logoSizePx": DEFAULT_LOGO_SIZE_PX,
            "primaryColor": DEFAULT_PRIMARY_COLOR,
            "services": [],
            "loginFeatures": [],
            "loginBackgroundGradient": None,
        }
    )
    return values


def form_values_from_document(document: dict) -> dict[str, object]:
    values = default_form_values()
    for field in FORM_FIELDS:
        value = document.get(field)
        if value is None:
            continue
        if field == "logoSizePx":
            values[field] = clamp_logo_size(value)
        elif field in LIST_FIELDS:
            values[field] = copy.deepcopy(value) if isinstance(value, list) else []
        elif field == "loginBackgroundGradient":
            values[field] = dict(value) if isinstance(value, dict) else None
        else:
            values[field] = value
    return values


class BrandingForm:
    def __init__(
        self,
        cache: BrandingCache,
        api: BrandingApi,
        *,
        check_version: bool = False,
    ):
        self.cache = cache
        self.api = api
        self.check_version = check_version

        self.values = default_form_values()
        self.version: int | None = None
        self.field_errors: dict[str, str] = {}
        self.notifications: list[tuple[str, str]] = []
        self.is_loading = True
        self.is_submitting = False
        self.has_document = False
        self.dirty = False

    @property
    def can_submit(self) -> bool:
        return self.has_document and not self.is_loading and not self.is_submitting

    def load(self) -> bool:
        """Sync the form with the cache. Returns True once a document is available."""

        state = self.cache.current()
        if state.document is None:
            self.is_loading = state.is_loading or state.error is None
            if state.error is not None and not self.is_loading:
                self.notifications.append(
                    ("warning", "Unable to load the current branding settings.")
                )
            return False

        self.is_loading = False
        self.has_document = True
        if not self.dirty:
            self.values = form_values_from_document(state.document)
            self.version = state.document.get("version")
        return True

    def set_value(self, field: str, value: object) -> None:
        if field not in FORM_FIELDS:
            raise KeyError(f"Unknown branding field: {field}")

        if field == "logoSizePx":
            value = clamp_logo_size(value)
        elif field in LIST_FIELDS:
            value = copy.deepcopy(list(value or []))
        elif field == "loginBackgroundGradient":
            value = dict(value) if value else None

        self.values[field] = value
        self.field_errors.pop(field, None)
        self.dirty = True

    def add_service(
        self, title: str = "", description: str = "", icon_key: str = DEFAULT_SERVICE_ICON.value
    ) -> None:
        services = copy.deepcopy(self.values["services"])
        services.append({"title": title, "description": description, "iconKey": icon_key})
        self.set_value("services", services)

    def update_service(self, index: int, **changes: str) -> None:
        unknown = set(changes) - set(SERVICE_KEYS)
        if unknown:
            raise KeyError(f"Unknown service keys: {', '.join(sorted(unknown))}")
        services = copy.deepcopy(self.values["services"])
        services[index] = {**services[index], **changes}
        self.set_value("services", services)

    def remove_service(self, index: int) -> None:
        services = copy.deepcopy(self.values["services"])
        del services[index]
        self.set_value("services", services)

    def add_login_feature(self, feature: str = "") -> None:
        self.set_value("loginFeatures", [*self.values["loginFeatures"], feature])

    def update_login_feature(self, index: int, feature: str) -> None:
        features = list(self.values["loginFeatures"])
        features[index] = feature
        self.set_value("loginFeatures", features)

    def remove_login_feature(self, index: int) -> None:
        features = list(self.values["loginFeatures"])
        del features[index]
        self.set_value("loginFeatures", features)

    def payload(self) -> dict[str, object]:
        payload = {field: copy.deepcopy(self.values[field]) for field in FORM_FIELDS}
        payload["logoSizePx"] = clamp_logo_size(payload["logoSizePx"])
        return payload

    def submit(self) -> bool:
        if not self.can_submit:
            self.notifications.append(("warning", "Branding settings are still loading."))
            return False

        expected_version = self.version if self.check_version else None
        self.is_submitting = True
        try:
            document = self.api.update(self.payload(), expected_version=expected_version)
        except BrandingUpdateError as exc:
            self.field_errors = {
                str(entry.get("field")): str(entry.get("message"))
                for entry in exc.fields
            }
            details = "; ".join(
                f"{field}: {message}" for field, message in self.field_errors.items()
            )
            self.notifications.append(("danger", f"{exc} {details}".strip()))
            return False
        except BrandingRequestError as exc:
            logger.warning("Branding update failed: %s", exc)
            if exc.status_code == 412:
                message = (
                    "Branding settings were changed by someone else. "
                    "Reload to see the latest values."
                )
            else:
                message = "Unable to save branding settings. Please try again."
            self.notifications.append(("danger", message))
            return False
        finally:
            self.is_submitting = False

        self.cache.invalidate()
        self.values = form_values_from_document(document)
        self.version = document.get("version")
        self.field_errors = {}
        self.dirty = False
        self.notifications.append(("success", "Your branding changes have been saved."))
        return True

    def upload(self, kind: str, stream, filename: str) -> str | None:
        if kind not in UPLOAD_FIELDS:
            raise ValueError(f"Unknown branding upload type: {kind}")

        field, label = UPLOAD_FIELDS[kind]
        try:
            url = self.api.upload(kind, stream, filename)
        except BrandingRequestError as exc:
            logger.warning("Branding %s upload failed: %s", kind, exc)
            self.notifications.append(("danger", f"Upload failed: {exc}"))
            return None

        self.values[field] = url
        self.cache.invalidate()
        self.notifications.append(("success", f"{label} has been updated successfully."))
        return url
