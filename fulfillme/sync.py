"""
Offline sync client.

Needs created while a device has no connectivity are stored in an
``OfflineNeedQueue``. When connectivity comes back, ``NeedSyncer`` replays
the queue in insertion order against ``POST /needs``. An entry is removed
only after the server confirms it; failed entries stay queued for the next
pass. Delivery is at-least-once: a submission whose response is lost will be
sent again.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

import requests

from fulfillme.queue import OfflineNeedQueue, QueuedNeed

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30  # seconds

TokenSource = Union[str, Callable[[], Optional[str]], None]
Submitter = Callable[[dict], dict]


@dataclass
class SyncResult:
    submitted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def remaining(self) -> int:
        return len(self.failed)


class HttpNeedSubmitter:
    """Posts a queued need to the marketplace API."""

    def __init__(
        self,
        api_base_url: str,
        token: TokenSource = None,
        session: Optional[requests.Session] = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self.api_base_url = api_base_url.rstrip("/")
        self.token = token
        self.session = session or requests.Session()
        self.timeout = timeout

    def _bearer(self) -> Optional[str]:
        return self.token() if callable(self.token) else self.token

    def __call__(self, payload: dict) -> dict:
        headers = {"Content-Type": "application/json"}
        token = self._bearer()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        response = self.session.post(
            f"{self.api_base_url}/needs",
            json=payload,
            headers=headers,
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def is_online(self) -> bool:
        """Connectivity probe against the health endpoint."""
        try:
            response = self.session.get(
                f"{self.api_base_url}/health", timeout=self.timeout
            )
        except requests.RequestException:
            return False
        return response.ok


class NeedSyncer:
    def __init__(self, queue: OfflineNeedQueue, submit: Submitter):
        self.queue = queue
        self.submit = submit
        self._in_flight = threading.Lock()
        self._online = False

    def enqueue(self, payload: dict, entry_id: Optional[str] = None) -> QueuedNeed:
        """Store a need locally until the next successful pass."""
        entry = self.queue.put(payload, entry_id=entry_id)
        logger.info("Queued offline need %s", entry.entry_id)
        return entry

    @property
    def in_flight(self) -> bool:
        return self._in_flight.locked()

    def run_pass(self) -> Optional[SyncResult]:
        """
        Submit every queued entry once, oldest first.

        Returns ``None`` without doing anything if another pass is already
        running.
        """
        if not self._in_flight.acquire(blocking=False):
            logger.info("Sync pass already in flight; ignoring trigger")
            return None
        try:
            result = SyncResult()
            for entry in self.queue.pending():
                try:
                    self.submit(entry.payload)
                except Exception as exc:
                    logger.warning("Failed to sync need %s: %s", entry.entry_id, exc)
                    result.failed.append(entry.entry_id)
                    continue
                self.queue.remove(entry.entry_id)
                result.submitted.append(entry.entry_id)
            logger.info(
                "Sync pass done: %d submitted, %d still queued",
                len(result.submitted),
                len(result.failed),
            )
            return result
        finally:
            self._in_flight.release()

    def on_connectivity_change(self, online: bool) -> Optional[SyncResult]:
        """Run a pass when the device goes from offline to online."""
        was_online = self._online
        self._online = online
        if online and not was_online:
            return self.run_pass()
        return None
