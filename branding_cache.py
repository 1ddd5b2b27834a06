"""Client-side access to the portal's branding settings.

``BrandingApi`` talks to the portal over HTTP; ``BrandingCache`` keeps the
latest branding document for one application instance and shares a single
in-flight fetch between every caller.
"""

import logging
import threading
import time
from collections.abc import Callable
from typing import NamedTuple

import requests

logger = logging.getLogger(__name__)

BRANDING_STALE_AFTER_SECONDS = 5 * 60
BRANDING_EVICT_AFTER_SECONDS = 30 * 60
BRANDING_FETCH_RETRIES = 2
BRANDING_RETRY_DELAY_SECONDS = 0.5


class BrandingFetchError(RuntimeError):
    """Raised when the branding document cannot be fetched."""


class BrandingRequestError(RuntimeError):
    """Raised when the portal rejects a branding write."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class BrandingUpdateError(BrandingRequestError):
    """Raised when the portal rejects a branding update with field errors."""

    def __init__(self, message: str, fields: list[dict[str, str]]):
        self.fields = list(fields)
        super().__init__(message, 400)


class BrandingApi:
    def __init__(
        self,
        base_url: str,
        *,
        session: requests.Session | None = None,
        timeout: float = 10.0,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

        if not self.base_url:
            raise ValueError("A portal base URL is required.")

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    @staticmethod
    def _payload(response: requests.Response) -> dict:
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}

    def _error_message(self, response: requests.Response, fallback: str) -> str:
        return str(self._payload(response).get("error") or fallback)

    def login(self, email: str, password: str) -> dict:
        try:
            response = self.session.post(
                self._url("/api/login"),
                json={"email": email, "password": password},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise BrandingRequestError(f"Unable to reach the portal: {exc}") from exc

        if response.status_code != 200:
            raise BrandingRequestError(
                self._error_message(response, "Login failed."), response.status_code
            )
        return self._payload(response)

    def fetch(self) -> dict:
        try:
            response = self.session.get(
                self._url("/api/branding"),
                headers={"accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise BrandingFetchError(f"Unable to reach the portal: {exc}") from exc

        if response.status_code != 200:
            raise BrandingFetchError(
                f"Branding request responded with HTTP {response.status_code}."
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise BrandingFetchError("Branding response was not valid JSON.") from exc
        if not isinstance(payload, dict):
            raise BrandingFetchError("Branding response was not a JSON object.")
        return payload

    def update(self, patch: dict, *, expected_version: int | None = None) -> dict:
        headers = {"accept": "application/json"}
        if expected_version is not None:
            headers["If-Match"] = f'"{expected_version}"'

        try:
            response = self.session.patch(
                self._url("/api/branding"),
                json=patch,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise BrandingRequestError(f"Unable to reach the portal: {exc}") from exc

        if response.status_code == 400:
            payload = self._payload(response)
            raise BrandingUpdateError(
                str(payload.get("error") or "Invalid branding settings."),
                [entry for entry in payload.get("fields") or [] if isinstance(entry, dict)],
            )
        if response.status_code != 200:
            raise BrandingRequestError(
                self._error_message(response, "Unable to save branding settings."),
                response.status_code,
            )
        return self._payload(response)

    def upload(self, kind: str, stream, filename: str) -> str:
        try:
            response = self.session.post(
                self._url(f"/api/branding/upload/{kind}"),
                files={"file": (filename, stream)},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise BrandingRequestError(f"Unable to reach the portal: {exc}") from exc

        if response.status_code != 200:
            raise BrandingRequestError(
                self._error_message(response, "Upload failed."), response.status_code
            )

        url = self._payload(response).get("url")
        if not url:
            raise BrandingRequestError("Upload response did not include a URL.")
        return url


class BrandingState(NamedTuple):
    document: dict | None
    is_loading: bool
    error: Exception | None
    fetched_at: float | None


class _PendingFetch:
    def __init__(self, sequence: int):
        self.sequence = sequence
        self.done = threading.Event()


class BrandingCache:
    """Process-wide copy of the branding document for one application instance.

    Reads never block: ``current()`` returns what is known and starts a
    background fetch when the document is missing, stale, or invalidated.
    Callers that need the result can ``wait()`` or ``refresh(wait=True)``.
    """

    def __init__(
        self,
        fetcher: Callable[[], dict],
        *,
        stale_after: float = BRANDING_STALE_AFTER_SECONDS,
        evict_after: float = BRANDING_EVICT_AFTER_SECONDS,
        retries: int = BRANDING_FETCH_RETRIES,
        retry_delay: float = BRANDING_RETRY_DELAY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetcher = fetcher
        self._stale_after = stale_after
        self._evict_after = evict_after
        self._retries = max(0, retries)
        self._retry_delay = retry_delay
        self._clock = clock

        self._lock = threading.Lock()
        self._document: dict | None = None
        self._error: Exception | None = None
        self._fetched_at: float | None = None
        self._checked_at: float | None = None
        self._last_access: float | None = None
        self._invalidated = True
        self._in_flight: _PendingFetch | None = None
        self._next_sequence = 0
        self._discard_through = 0
        self._document_sequence = 0
        self._listeners: list[Callable[[dict], None]] = []
        # Serializes listener delivery; never acquired while holding _lock.
        self._notify_lock = threading.RLock()
        self._delivered_sequence = 0

    def _snapshot_locked(self) -> BrandingState:
        return BrandingState(
            document=self._document,
            is_loading=self._document is None and self._in_flight is not None,
            error=self._error,
            fetched_at=self._fetched_at,
        )

    def _evict_if_idle_locked(self, now: float) -> None:
        if self._document is None or self._last_access is None:
            return
        if now - self._last_access < self._evict_after:
            return
        logger.debug("Evicting idle branding document")
        self._document = None
        self._fetched_at = None
        self._invalidated = True

    def _needs_fetch_locked(self, now: float) -> bool:
        if self._in_flight is not None:
            return False
        if self._invalidated or self._checked_at is None:
            return True
        return now - self._checked_at >= self._stale_after

    def _start_fetch_locked(self) -> _PendingFetch:
        self._next_sequence += 1
        pending = _PendingFetch(self._next_sequence)
        self._in_flight = pending
        self._invalidated = False
        thread = threading.Thread(
            target=self._run_fetch,
            args=(pending,),
            name=f"branding-fetch-{pending.sequence}",
            daemon=True,
        )
        thread.start()
        return pending

    def _fetch_with_retries(self) -> tuple[dict | None, Exception | None]:
        attempts = self._retries + 1
        error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                return self._fetcher(), None
            except BrandingFetchError as exc:
                error = exc
                logger.warning(
                    "Branding fetch attempt %s of %s failed: %s", attempt, attempts, exc
                )
            if attempt < attempts and self._retry_delay:
                time.sleep(self._retry_delay)
        return None, error

    def _run_fetch(self, pending: _PendingFetch) -> None:
        try:
            document, error = self._fetch_with_retries()
        except Exception as exc:
            logger.exception("Unexpected failure while fetching branding settings")
            document, error = None, exc

        listeners: list[Callable[[dict], None]] = []
        with self._lock:
            if self._in_flight is pending:
                self._in_flight = None
            if pending.sequence <= self._discard_through:
                logger.debug("Discarding superseded branding fetch %s", pending.sequence)
            else:
                self._discard_through = pending.sequence
                self._checked_at = self._clock()
                if error is not None:
                    self._error = error
                else:
                    changed = document != self._document
                    self._document = document
                    self._document_sequence = pending.sequence
                    self._error = None
                    self._fetched_at = self._checked_at
                    if changed:
                        listeners = list(self._listeners)
        pending.done.set()

        if listeners:
            self._deliver(pending.sequence, document, listeners)

    def _deliver(
        self,
        sequence: int,
        document: dict,
        listeners: list[Callable[[dict], None]],
    ) -> None:
        with self._notify_lock:
            if sequence < self._delivered_sequence:
                logger.debug("Skipping out-of-order branding notification %s", sequence)
                return
            self._delivered_sequence = sequence
            for listener in listeners:
                self._notify(listener, document)

    @staticmethod
    def _notify(listener: Callable[[dict], None], document: dict) -> None:
        try:
            listener(document)
        except Exception:
            logger.exception("Branding listener %r failed", listener)

    def current(self) -> BrandingState:
        with self._lock:
            now = self._clock()
            self._evict_if_idle_locked(now)
            self._last_access = now
            if self._needs_fetch_locked(now):
                self._start_fetch_locked()
            return self._snapshot_locked()

    def peek(self) -> BrandingState:
        with self._lock:
            return self._snapshot_locked()

    def refresh(self, *, wait: bool = True, timeout: float | None = None) -> BrandingState:
        with self._lock:
            self._last_access = self._clock()
            pending = self._in_flight or self._start_fetch_locked()
        if wait:
            pending.done.wait(timeout)
        return self.peek()

    def wait(self, timeout: float | None = None) -> BrandingState:
        with self._lock:
            pending = self._in_flight
        if pending is not None:
            pending.done.wait(timeout)
        return self.peek()

    def invalidate(self) -> None:
        with self._lock:
            self._invalidated = True
            if self._in_flight is not None:
                # The running fetch may predate the write; its result is dropped.
                self._discard_through = max(self._discard_through, self._in_flight.sequence)
                self._in_flight = None

    def subscribe(self, listener: Callable[[dict], None]) -> Callable[[], None]:
        with self._notify_lock:
            with self._lock:
                self._listeners.append(listener)
                document = self._document
                sequence = self._document_sequence
            if document is not None:
                self._deliver(sequence, document, [listener])

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe
