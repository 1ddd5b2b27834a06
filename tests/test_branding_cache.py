import threading

import pytest
import requests

from branding_cache import (
    BrandingApi,
    BrandingCache,
    BrandingFetchError,
    BrandingRequestError,
    BrandingUpdateError,
)


ACME = {"companyName": "Acme", "primaryColor": "#112233", "version": 1}
GLOBEX = {"companyName": "Globex", "primaryColor": "#445566", "version": 2}


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class StubFetcher:
    """Returns queued results in order, repeating the last one."""

    def __init__(self, *results, gate=None):
        self.results = list(results)
        self.gate = gate
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.calls += 1
            index = min(self.calls, len(self.results)) - 1
            result = self.results[index]
        if self.gate is not None:
            self.gate.wait(5)
        if isinstance(result, Exception):
            raise result
        return dict(result)


def join_fetch_threads():
    for thread in threading.enumerate():
        if thread.name.startswith("branding-fetch-"):
            thread.join(5)


def make_cache(fetcher, clock=None, **kwargs):
    kwargs.setdefault("retry_delay", 0)
    return BrandingCache(fetcher, clock=clock or FakeClock(), **kwargs)


def test_current_reports_loading_until_document_arrives():
    gate = threading.Event()
    cache = make_cache(StubFetcher(ACME, gate=gate))

    state = cache.current()
    assert state.document is None
    assert state.is_loading is True
    assert state.error is None

    assert state.fetched_at is None

    gate.set()
    state = cache.wait(5)
    assert state.document == ACME
    assert state.is_loading is False
    assert state.fetched_at == 1000.0


def test_concurrent_readers_share_a_single_fetch():
    gate = threading.Event()
    fetcher = StubFetcher(ACME, gate=gate)
    cache = make_cache(fetcher)
    barrier = threading.Barrier(8)
    states = []

    def reader():
        barrier.wait(5)
        states.append(cache.current())

    readers = [threading.Thread(target=reader) for _ in range(8)]
    for thread in readers:
        thread.start()
    for thread in readers:
        thread.join(5)

    gate.set()
    assert cache.wait(5).document == ACME
    assert fetcher.calls == 1
    assert all(state.document is None for state in states)


def test_document_is_refetched_only_after_it_goes_stale():
    clock = FakeClock()
    fetcher = StubFetcher(ACME, GLOBEX)
    cache = make_cache(fetcher, clock)

    cache.current()
    cache.wait(5)

    clock.advance(299)
    assert cache.current().document == ACME
    assert fetcher.calls == 1

    clock.advance(2)
    state = cache.current()
    assert state.document == ACME
    assert state.is_loading is False
    assert cache.wait(5).document == GLOBEX
    assert fetcher.calls == 2


def test_invalidate_triggers_refetch_on_next_read():
    fetcher = StubFetcher(ACME, GLOBEX)
    cache = make_cache(fetcher)
    cache.current()
    cache.wait(5)

    cache.invalidate()
    assert cache.current().document == ACME
    assert cache.wait(5).document == GLOBEX


def test_failed_refresh_keeps_last_good_document():
    failure = BrandingFetchError("HTTP 503")
    fetcher = StubFetcher(ACME, failure)
    cache = make_cache(fetcher, retries=2)
    cache.current()
    cache.wait(5)

    cache.invalidate()
    cache.current()
    state = cache.wait(5)

    assert state.document == ACME
    assert state.error is failure
    assert fetcher.calls == 4


def test_failure_without_document_surfaces_error_then_recovers():
    failure = BrandingFetchError("unreachable")
    clock = FakeClock()
    fetcher = StubFetcher(failure, failure, ACME)
    cache = make_cache(fetcher, clock, retries=1)

    cache.current()
    state = cache.wait(5)
    assert state.document is None
    assert state.is_loading is False
    assert state.error is failure

    assert cache.current().is_loading is False
    assert fetcher.calls == 2

    clock.advance(300)
    cache.current()
    state = cache.wait(5)
    assert state.document == ACME
    assert state.error is None


def test_unexpected_fetch_errors_are_not_retried():
    fetcher = StubFetcher(KeyError("boom"))
    cache = make_cache(fetcher, retries=3)

    state = cache.refresh(wait=True, timeout=5)

    assert state.document is None
    assert isinstance(state.error, KeyError)
    assert fetcher.calls == 1


def test_superseded_fetch_result_is_discarded():
    release_first = threading.Event()
    calls = []

    def fetcher():
        calls.append(len(calls) + 1)
        if len(calls) == 1:
            release_first.wait(5)
            return dict(ACME)
        return dict(GLOBEX)

    cache = make_cache(fetcher)
    existing = set(threading.enumerate())
    cache.current()
    first_thread = next(
        thread
        for thread in threading.enumerate()
        if thread not in existing and thread.name == "branding-fetch-1"
    )

    cache.invalidate()
    cache.current()
    assert cache.wait(5).document == GLOBEX

    release_first.set()
    first_thread.join(5)
    assert cache.peek().document == GLOBEX


def test_idle_document_is_evicted():
    clock = FakeClock()
    fetcher = StubFetcher(ACME)
    cache = make_cache(fetcher, clock, stale_after=10_000)
    cache.current()
    cache.wait(5)

    clock.advance(1800)
    state = cache.current()

    assert state.document is None
    assert state.is_loading is True
    assert cache.wait(5).document == ACME
    assert fetcher.calls == 2


def test_listeners_are_notified_only_when_document_changes():
    fetcher = StubFetcher(ACME, ACME, GLOBEX)
    cache = make_cache(fetcher)
    received = []
    unsubscribe = cache.subscribe(received.append)

    cache.refresh(wait=True, timeout=5)
    join_fetch_threads()
    assert received == [ACME]

    cache.refresh(wait=True, timeout=5)
    join_fetch_threads()
    assert received == [ACME]

    late = []
    cache.subscribe(late.append)
    assert late == [ACME]

    unsubscribe()
    cache.refresh(wait=True, timeout=5)
    join_fetch_threads()
    assert received == [ACME]
    assert late == [ACME, GLOBEX]


def test_failing_listener_does_not_break_other_listeners():
    cache = make_cache(StubFetcher(ACME))
    received = []

    def broken(document):
        raise RuntimeError("listener failure")

    cache.subscribe(broken)
    cache.subscribe(received.append)
    cache.refresh(wait=True, timeout=5)
    join_fetch_threads()

    assert received == [ACME]


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON payload")
        return self._payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def _respond(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response

    def get(self, url, **kwargs):
        return self._respond("GET", url, **kwargs)

    def patch(self, url, **kwargs):
        return self._respond("PATCH", url, **kwargs)

    def post(self, url, **kwargs):
        return self._respond("POST", url, **kwargs)


def test_api_requires_base_url():
    with pytest.raises(ValueError):
        BrandingApi("", session=FakeSession())


def test_api_fetch_returns_document():
    session = FakeSession(FakeResponse(200, ACME))
    api = BrandingApi("https://portal.example.com/", session=session)

    assert api.fetch() == ACME
    assert session.requests[0][1] == "https://portal.example.com/api/branding"


def test_api_fetch_errors_become_fetch_errors():
    api = BrandingApi("https://portal.example.com", session=FakeSession(FakeResponse(500, {})))
    with pytest.raises(BrandingFetchError):
        api.fetch()

    api = BrandingApi(
        "https://portal.example.com",
        session=FakeSession(error=requests.ConnectionError("refused")),
    )
    with pytest.raises(BrandingFetchError):
        api.fetch()

    api = BrandingApi("https://portal.example.com", session=FakeSession(FakeResponse(200)))
    with pytest.raises(BrandingFetchError):
        api.fetch()


def test_api_update_sends_if_match_and_reports_field_errors():
    session = FakeSession(
        FakeResponse(
            400,
            {
                "error": "Invalid branding settings.",
                "fields": [{"field": "logoSizePx", "message": "Must be between 16 and 64 pixels."}],
            },
        )
    )
    api = BrandingApi("https://portal.example.com", session=session)

    with pytest.raises(BrandingUpdateError) as excinfo:
        api.update({"logoSizePx": 5}, expected_version=3)

    assert excinfo.value.status_code == 400
    assert excinfo.value.fields[0]["field"] == "logoSizePx"
    assert session.requests[0][2]["headers"]["If-Match"] == '"3"'


def test_api_update_reports_conflicts_with_status():
    session = FakeSession(FakeResponse(412, {"error": "Changed by someone else."}))
    api = BrandingApi("https://portal.example.com", session=session)

    with pytest.raises(BrandingRequestError) as excinfo:
        api.update({"companyName": "Acme"})

    assert excinfo.value.status_code == 412
    assert "If-Match" not in session.requests[0][2]["headers"]


def test_api_upload_returns_url():
    session = FakeSession(FakeResponse(200, {"url": "/uploads/branding/logo_1.png"}))
    api = BrandingApi("https://portal.example.com", session=session)

    assert api.upload("logo", b"bytes", "logo.png") == "/uploads/branding/logo_1.png"
    method, url, kwargs = session.requests[0]
    assert url.endswith("/api/branding/upload/logo")
    assert kwargs["files"]["file"][0] == "logo.png"
