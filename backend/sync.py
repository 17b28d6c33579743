import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import requests

from records import iso_timestamp

logger = logging.getLogger(__name__)

PUSH_DEBOUNCE_SECONDS = 3.0
PULL_INTERVAL_SECONDS = 20.0
REQUEST_TIMEOUT = 30


class SyncError(Exception):
    pass


class PushState(Enum):
    IDLE = 'idle'
    PENDING = 'pending'
    PUSHING = 'pushing'


@dataclass
class PushOutcome:
    sent: bool
    confirmed: bool = False
    error: Optional[str] = None
    remote_timestamp: Optional[str] = None

    @property
    def ok(self):
        return self.sent and self.error is None

    def to_dict(self):
        return {"sent": self.sent, "confirmed": self.confirmed,
                "error": self.error, "remoteTimestamp": self.remote_timestamp}


class RemoteClient:
    """HTTP side of the sheet protocol: one URL, getAllData / syncAll."""

    def __init__(self, session=None, timeout=REQUEST_TIMEOUT):
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch_all(self, url):
        try:
            res = self.session.get(url, params={'action': 'getAllData'}, timeout=self.timeout)
            res.raise_for_status()
            data = res.json()
        except requests.RequestException as e:
            raise SyncError(f"Pull request failed: {e}") from e
        except ValueError as e:
            raise SyncError("Pull response is not valid JSON") from e
        if not isinstance(data, dict):
            raise SyncError(f"Unexpected pull response (not an object): {type(data).__name__}")
        return data

    def push_all(self, url, data):
        body = json.dumps({'action': 'syncAll', 'data': data}, ensure_ascii=False)
        try:
            # text/plain keeps the request "simple" for script endpoints that cannot answer a CORS preflight
            res = self.session.post(url, data=body.encode('utf-8'),
                                    headers={'Content-Type': 'text/plain;charset=utf-8'},
                                    timeout=self.timeout)
        except requests.RequestException as e:
            return PushOutcome(sent=False, error=str(e))

        if res.status_code >= 400:
            return PushOutcome(sent=True, error=f"HTTP {res.status_code}")
        try:
            reply = res.json()
        except ValueError:
            # delivered, but nothing readable came back
            return PushOutcome(sent=True)
        if not isinstance(reply, dict):
            return PushOutcome(sent=True)
        if reply.get('success') is False:
            return PushOutcome(sent=True, error=str(reply.get('error') or 'Remote rejected the sync'))
        return PushOutcome(sent=True, confirmed=reply.get('success') is True,
                           remote_timestamp=reply.get('timestamp'))


class TimerScheduler:
    def call_later(self, delay, callback):
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer


class SyncEngine:
    """Keeps the local store loosely in step with the remote sheet.

    Push is a small state machine: IDLE -> PENDING on a mutation (deadline
    re-armed on every further mutation), PENDING -> PUSHING when the deadline
    elapses, PUSHING -> IDLE when the request completes. Each armed deadline
    and each in-flight push owns a token; a callback whose token is no longer
    current does nothing.

    Pull runs once when an endpoint is configured and then every
    ``pull_interval`` seconds. It is skipped while a push is pending or in
    flight, and its result is dropped if local edits happened meanwhile.
    When the endpoint changes, an armed push is held back until the first
    pull of the new loop, and only re-armed if that pull applied nothing.
    """

    def __init__(self, store, client=None, scheduler=None,
                 debounce=PUSH_DEBOUNCE_SECONDS, pull_interval=PULL_INTERVAL_SECONDS):
        self.store = store
        self.client = client or RemoteClient()
        self.scheduler = scheduler or TimerScheduler()
        self.debounce = debounce
        self.pull_interval = pull_interval

        self._lock = threading.Lock()
        self._pull_lock = threading.Lock()
        self._running = False
        self._push_timer = None
        self._deadline_token = None
        self._push_token = None
        self._loop_url = None
        self._loop_token = None
        self._pull_timer = None
        self._pull_seq = 0
        self._applied_pull_seq = 0
        self._push_after_first_pull = False

        self.status = 'idle'
        self.last_push = None
        self.last_pull_at = None
        self.push_attempts = 0

        store.subscribe(self._on_store_event)

    # ----- Lifecycle -----

    def start(self):
        with self._lock:
            self._running = True
        self._restart_pull_loop()

    def stop(self):
        with self._lock:
            self._running = False
            self._loop_url = None
            self._loop_token = None
            self._deadline_token = None
            for timer in (self._pull_timer, self._push_timer):
                if timer is not None:
                    timer.cancel()
            self._pull_timer = None
            self._push_timer = None

    @property
    def running(self):
        return self._running

    @property
    def state(self):
        with self._lock:
            return self._state_locked()

    def _state_locked(self):
        if self._push_token is not None:
            return PushState.PUSHING
        if self._push_timer is not None:
            return PushState.PENDING
        return PushState.IDLE

    def _on_store_event(self, kind):
        if kind == 'mutation':
            self.schedule_push()
        elif kind == 'config':
            self._restart_pull_loop()

    # ----- Push -----

    def schedule_push(self):
        with self._lock:
            if not self._running:
                return
            if self._push_timer is not None:
                self._push_timer.cancel()
            token = object()
            self._deadline_token = token
            self._push_timer = self.scheduler.call_later(self.debounce, lambda: self._deadline_elapsed(token))

    def _deadline_elapsed(self, token):
        with self._lock:
            if token is not self._deadline_token:
                return
            self._deadline_token = None
            self._push_timer = None
        self.push()

    def push(self, payload=None):
        """Send the whole dataset (or ``payload``) to the remote endpoint.

        Returns the PushOutcome, or None when there is no endpoint or another
        push is already in flight (the request is dropped, not queued).
        """
        url = self.store.endpoint_url
        if not url:
            return None
        with self._lock:
            if self._push_token is not None:
                logger.info("Push already in flight, dropping this request")
                return None
            token = object()
            self._push_token = token
            self.push_attempts += 1

        try:
            revision, data = self.store.versioned_snapshot()
            outcome = self.client.push_all(url, payload if payload is not None else data)
        finally:
            with self._lock:
                if self._push_token is token:
                    self._push_token = None

        self.last_push = outcome
        if outcome.ok:
            self.status = 'success'
            logger.info("Cloud push successful%s", " (confirmed)" if outcome.confirmed else " (unconfirmed)")
        else:
            self.status = 'error'
            logger.error("Cloud push failed: %s", outcome.error)

        # edits made while the request was in flight were not part of it
        if payload is None and self.store.revision != revision and self.state is PushState.IDLE:
            self.schedule_push()
        return outcome

    # ----- Pull -----

    def pull(self):
        url = self.store.endpoint_url
        if not url:
            return False
        with self._lock:
            if self._state_locked() is not PushState.IDLE:
                logger.info("Push pending, skipping pull")
                return False
            self._pull_seq += 1
            seq = self._pull_seq

        revision = self.store.revision
        try:
            data = self.client.fetch_all(url)
        except SyncError as e:
            logger.warning("Cloud load failed, using local copy: %s", e)
            return False

        with self._pull_lock:
            if seq <= self._applied_pull_seq:
                logger.info("A newer pull was already applied, dropping this response")
                return False
            with self._lock:
                busy = self._state_locked() is not PushState.IDLE
            if busy:
                logger.info("Push pending, dropping pull response")
                return False
            applied = self.store.apply_remote(data, expected_revision=revision)
            if applied:
                self._applied_pull_seq = seq
                self.last_pull_at = iso_timestamp(datetime.now(timezone.utc))
                logger.info("Cloud pull successful")
        return applied

    def _restart_pull_loop(self):
        url = self.store.endpoint_url
        with self._lock:
            if not self._running:
                return
            if url == self._loop_url and self._loop_token is not None:
                return
            if self._pull_timer is not None:
                self._pull_timer.cancel()
            self._pull_timer = None
            self._loop_url = url
            if not url:
                self._loop_token = None
                logger.info("No remote endpoint configured, polling stopped")
                return
            # a new remote is read before anything is written to it
            self._push_after_first_pull = self._push_timer is not None
            if self._push_timer is not None:
                self._push_timer.cancel()
                self._push_timer = None
                self._deadline_token = None
            token = object()
            self._loop_token = token
            self._pull_timer = self.scheduler.call_later(0, lambda: self._pull_tick(token))

    def _pull_tick(self, token):
        with self._lock:
            if token is not self._loop_token:
                return
            self._pull_timer = None
            push_after, self._push_after_first_pull = self._push_after_first_pull, False
        try:
            applied = self.pull()
        finally:
            with self._lock:
                if token is self._loop_token:
                    self._pull_timer = self.scheduler.call_later(
                        self.pull_interval, lambda: self._pull_tick(token))
        # nothing came back to replace local edits, so they still need sending
        if push_after and not applied:
            self.schedule_push()

    # ----- Maintenance -----

    def force_sync(self):
        """Pull then push, off the caller's thread."""
        def run():
            self.pull()
            self.push()
        self.scheduler.call_later(0, run)

    def status_dict(self):
        return {
            "status": self.status,
            "state": self.state.value,
            "running": self.running,
            "endpoint": self.store.endpoint_url,
            "pushAttempts": self.push_attempts,
            "lastPush": self.last_push.to_dict() if self.last_push else None,
            "lastPullAt": self.last_pull_at,
        }
