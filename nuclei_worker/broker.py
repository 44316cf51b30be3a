from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

import redis

from nuclei_worker.models import Vulnerability

LOGGER = logging.getLogger(__name__)


def connect_redis(redis_url: str) -> redis.Redis:
    # payloads stay raw bytes; undecodable events are rejected by the handler, not the client
    return redis.Redis.from_url(redis_url, decode_responses=False, health_check_interval=30)


class VulnerabilityPublisher:
    """Broadcasts vulnerabilities on a pub/sub channel, fire-and-forget."""

    def __init__(self, client: redis.Redis, channel: str):
        self.client = client
        self.channel = channel

    def publish(self, vulnerability: Vulnerability) -> bool:
        try:
            receivers = self.client.publish(self.channel, vulnerability.to_json())
        except redis.RedisError as exc:
            LOGGER.error("Failed to publish vulnerability %s on %s: %s", vulnerability.id, self.channel, exc)
            return False
        LOGGER.debug("Published vulnerability %s to %s subscriber(s)", vulnerability.id, receivers)
        return True


class MessageConsumer:
    """Pops service events from a Redis list and hands each one to a worker thread.

    At most ``max_workers`` messages are in flight; the loop stops pulling from
    the queue while all workers are busy so messages stay on the bus instead of
    piling up in memory.
    """

    def __init__(
        self,
        client: redis.Redis,
        queue: str,
        max_workers: int = 2,
        poll_timeout: int = 5,
        reconnect_delay: float = 5.0,
    ):
        self.client = client
        self.queue = queue
        self.max_workers = max(1, int(max_workers))
        self.poll_timeout = poll_timeout
        self.reconnect_delay = reconnect_delay
        self._stop = threading.Event()
        self._slots = threading.BoundedSemaphore(self.max_workers)

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def poll(self) -> str | bytes | None:
        item = self.client.blpop([self.queue], timeout=self.poll_timeout)
        if item is None:
            return None
        _, payload = item
        return payload

    def _dispatch(self, handler: Callable[[str | bytes], Any], payload: str | bytes) -> None:
        try:
            handler(payload)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Unhandled error while processing message from %s", self.queue)
        finally:
            self._slots.release()

    def run(self, handler: Callable[[str | bytes], Any]) -> None:
        LOGGER.info("Consuming %s with %s worker(s)", self.queue, self.max_workers)
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="scan-worker") as executor:
            while not self._stop.is_set():
                if not self._slots.acquire(timeout=1):
                    continue
                try:
                    payload = self.poll()
                except redis.RedisError as exc:
                    self._slots.release()
                    LOGGER.error("Polling %s failed: %s, retrying in %ss", self.queue, exc, self.reconnect_delay)
                    self._stop.wait(self.reconnect_delay)
                    continue
                except UnicodeDecodeError as exc:
                    self._slots.release()
                    LOGGER.error("Dropped undecodable message from %s: %s", self.queue, exc)
                    continue
                if payload is None:
                    self._slots.release()
                    continue
                executor.submit(self._dispatch, handler, payload)
        LOGGER.info("Consumer for %s stopped", self.queue)


def enqueue_service(client: redis.Redis, queue: str, payload: str) -> int:
    return client.rpush(queue, payload)
