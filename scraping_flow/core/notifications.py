"""Best-effort balance notifications over Redis pub/sub.

``emit`` only enqueues. A background sender thread publishes queued events in
FIFO order outside the queue lock, removing each one only after Redis accepted
it, and pings with a growing delay while the channel is down.
"""

import json
import logging
import threading
from collections import deque
from typing import Deque, Optional

from redis import Redis
from redis.exceptions import RedisError

from scraping_flow.models import PendingNotification

logger = logging.getLogger(__name__)

EVENT_NAME = "scraping-credits-updated"
RECONNECT_DELAY_SECONDS = 2.0
RECONNECT_DELAY_MAX_SECONDS = 10.0


def build_payload(notification: PendingNotification) -> str:
    return json.dumps(
        {"event": EVENT_NAME, "userId": notification.owner_id, "credits": notification.balance},
        ensure_ascii=False,
    )


class NotificationSink:
    def __init__(
        self,
        redis_client: Optional[Redis],
        channel: str = EVENT_NAME,
        *,
        background: bool = True,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        reconnect_delay_max: float = RECONNECT_DELAY_MAX_SECONDS,
    ) -> None:
        self.redis_client = redis_client
        self.channel = channel
        self.background = background
        self.reconnect_delay = reconnect_delay
        self.reconnect_delay_max = reconnect_delay_max
        self._pending: Deque[PendingNotification] = deque()
        self._lock = threading.Lock()
        # Serialises publishers so the queue head is only ever sent by one thread.
        self._flush_lock = threading.Lock()
        self._connected = False
        self._wakeup = threading.Event()
        self._closed = threading.Event()
        self._sender: Optional[threading.Thread] = None

    @classmethod
    def from_url(cls, redis_url: str, channel: str = EVENT_NAME, **kwargs) -> "NotificationSink":
        client = None
        if redis_url:
            client = Redis.from_url(redis_url, decode_responses=True, socket_connect_timeout=5, socket_timeout=5)
        return cls(client, channel, **kwargs)

    @property
    def enabled(self) -> bool:
        return self.redis_client is not None

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def connect(self) -> bool:
        """Ping Redis once and wake the sender; never raises."""
        if not self.enabled:
            return False
        ok = self._ping()
        if ok:
            logger.info("Notification channel connected")
        self._wake_sender()
        return ok

    def emit(self, owner_id: str, balance: int) -> None:
        """Queue a balance update for the sender thread; returns immediately."""
        if not self.enabled:
            logger.debug("No notification channel configured; dropping balance update for %s", owner_id)
            return
        with self._lock:
            self._pending.append(PendingNotification(owner_id=owner_id, balance=balance))
            pending = len(self._pending)
        logger.debug("Queued balance notification for %s (pending=%d)", owner_id, pending)
        self._wake_sender()

    def flush_pending(self) -> int:
        """Publish queued events in FIFO order; stops at the first failure."""
        flushed = 0
        with self._flush_lock:
            while True:
                with self._lock:
                    if not self._pending:
                        break
                    notification = self._pending[0]
                if not self._publish(notification):
                    break
                with self._lock:
                    self._pending.popleft()
                flushed += 1
        if flushed:
            logger.info("Published %d balance notifications", flushed)
        return flushed

    def _ping(self) -> bool:
        try:
            self.redis_client.ping()
        except RedisError as exc:
            logger.warning("Notification channel unavailable: %s", exc)
            self._connected = False
            return False
        self._connected = True
        return True

    def _publish(self, notification: PendingNotification) -> bool:
        try:
            self.redis_client.publish(self.channel, build_payload(notification))
        except RedisError as exc:
            logger.warning("Failed to publish balance notification for %s: %s", notification.owner_id, exc)
            self._connected = False
            return False
        self._connected = True
        return True

    def _wake_sender(self) -> None:
        if not self.background or self._closed.is_set():
            return
        with self._lock:
            if self._sender is None:
                self._sender = threading.Thread(target=self._run_sender, name="notification-sender", daemon=True)
                self._sender.start()
        self._wakeup.set()

    def _run_sender(self) -> None:
        delay = self.reconnect_delay
        while True:
            self._wakeup.wait()
            if self._closed.is_set():
                return
            # Cleared before draining so an emit racing the drain re-arms the wait.
            self._wakeup.clear()
            while self.pending_count and not self._closed.is_set():
                if (self._connected or self._ping()) and self.flush_pending():
                    delay = self.reconnect_delay
                    continue
                if self._closed.wait(delay):
                    return
                delay = min(delay * 2, self.reconnect_delay_max)

    def close(self) -> None:
        self._closed.set()
        self._wakeup.set()
        sender = self._sender
        if sender is not None and sender.is_alive():
            sender.join(timeout=1)
        if self.pending_count:
            logger.warning("Dropping %d undelivered balance notifications on shutdown", self.pending_count)
        if self.redis_client is not None:
            try:
                self.redis_client.close()
            except RedisError as exc:
                logger.warning("Error closing notification channel: %s", exc)
