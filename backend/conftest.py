import json
from datetime import datetime, timedelta, timezone

import pytest
import requests

from sheet_backend import create_sheet_app
from state_store import StateStore
from storage import STORAGE_KEYS, LocalStorage
from sync import PushOutcome, SyncEngine


class FixedClock:
    def __init__(self, now=None):
        self.now = now or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeTimer:
    def __init__(self, due, callback):
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Virtual-time stand-in for TimerScheduler; nothing runs until advance()."""

    def __init__(self):
        self.now = 0.0
        self.timers = []

    def call_later(self, delay, callback):
        timer = FakeTimer(self.now + delay, callback)
        self.timers.append(timer)
        return timer

    def pending(self):
        return [t for t in self.timers if not t.cancelled]

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = [t for t in self.pending() if t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.timers.remove(timer)
            self.now = timer.due
            timer.callback()
        self.now = target


class RecordingClient:
    def __init__(self):
        self.pushes = []
        self.fetches = []
        self.remote_data = {}
        self.push_outcome = PushOutcome(sent=True, confirmed=True)
        self.fetch_error = None
        self.on_push = None
        self.on_fetch = None

    def push_all(self, url, data):
        self.pushes.append((url, data))
        if self.on_push:
            self.on_push()
        return self.push_outcome

    def fetch_all(self, url):
        self.fetches.append(url)
        if self.on_fetch:
            self.on_fetch()
        if self.fetch_error:
            raise self.fetch_error
        return json.loads(json.dumps(self.remote_data))


class FakeResponse:
    def __init__(self, status_code, text):
        self.status_code = status_code
        self.text = text

    def json(self):
        return json.loads(self.text)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")


class SheetSession:
    """requests.Session look-alike that sends every call to the sheet backend test client."""

    def __init__(self, app):
        self.client = app.test_client()
        self.offline = False
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append(('GET', url))
        if self.offline:
            raise requests.ConnectionError("No internet connection")
        res = self.client.get('/exec', query_string=params or {})
        return FakeResponse(res.status_code, res.get_data(as_text=True))

    def post(self, url, data=None, headers=None, timeout=None):
        self.calls.append(('POST', url))
        if self.offline:
            raise requests.ConnectionError("No internet connection")
        res = self.client.post('/exec', data=data, headers=headers or {})
        return FakeResponse(res.status_code, res.get_data(as_text=True))


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def storage(tmp_path):
    return LocalStorage('sqlite:///' + str(tmp_path / 'local.db'))


@pytest.fixture
def store(storage, clock):
    return StateStore(storage, clock=clock)


@pytest.fixture
def p1_store(storage, clock):
    """Store whose only product is p1: stock 10, sale price 50, cost price 20."""
    storage.write_many({
        STORAGE_KEYS['products']: [
            {"id": "p1", "sku": "SKU-1", "name": "Vestido", "category": "Vestidos", "unit": "un",
             "costPrice": 20.0, "salePrice": 50.0, "minStock": 2, "currentStock": 10},
        ],
        STORAGE_KEYS['transactions']: [
            {"id": "tx0", "productId": "p1", "type": "ENTRY", "quantity": 10, "unitPrice": 20.0,
             "totalValue": 200.0, "timestamp": "2026-03-01T09:00:00.000Z", "userId": "u1"},
        ],
    })
    return StateStore(storage, clock=clock)


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def client():
    return RecordingClient()


@pytest.fixture
def engine(store, client, scheduler):
    return SyncEngine(store, client=client, scheduler=scheduler)


@pytest.fixture
def sheet_app(tmp_path):
    return create_sheet_app({
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///' + str(tmp_path / 'sheets.db'),
        'TESTING': True,
    })


@pytest.fixture
def sheet_session(sheet_app):
    return SheetSession(sheet_app)
