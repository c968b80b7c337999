from __future__ import annotations

import socket
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from kombu import Connection, Exchange, Queue
from kombu.exceptions import OperationalError

from ..core.errors import QueueUnavailable
from ..logging import get_logger
from ..settings import Settings

log = get_logger("queue")

# nameless direct exchange: routing key == queue name
DEFAULT_EXCHANGE = Exchange("", type="direct")

PUBLISH_RETRY_POLICY = {
    "max_retries": 3,
    "interval_start": 0.5,
    "interval_step": 1.0,
    "interval_max": 4.0,
}


@dataclass(frozen=True)
class QueueSpec:
    name: str
    ttl_ms: Optional[int] = None
    dead_letter: Optional[str] = None

    def arguments(self) -> Dict[str, Any]:
        args: Dict[str, Any] = {}
        if self.ttl_ms:
            args["x-message-ttl"] = self.ttl_ms
        if self.dead_letter:
            args["x-dead-letter-exchange"] = ""
            args["x-dead-letter-routing-key"] = self.dead_letter
        return args

    def to_kombu(self) -> Queue:
        return Queue(
            self.name,
            exchange=DEFAULT_EXCHANGE,
            routing_key=self.name,
            durable=True,
            queue_arguments=self.arguments() or None,
        )


def topology(s: Settings) -> Dict[str, QueueSpec]:
    """Main queue, its dead-letter queue and the completion-notification queue."""
    specs = [
        QueueSpec(s.dead_letter_queue),
        QueueSpec(s.queue_name, ttl_ms=s.message_ttl_ms, dead_letter=s.dead_letter_queue),
        QueueSpec(s.notification_queue, ttl_ms=s.notification_ttl_ms),
    ]
    return {q.name: q for q in specs}


class Delivery:
    """One received message. Exactly one of ack/nack must be called."""

    payload: Any
    headers: Dict[str, Any]
    message_id: Optional[str]

    def ack(self) -> None: ...

    def nack(self, requeue: bool = False) -> None: ...


class JobQueue:
    def publish(
        self,
        destination: str,
        payload: Dict[str, Any],
        *,
        headers: Optional[Dict[str, Any]] = None,
        message_id: Optional[str] = None,
    ) -> None: ...

    def consume(
        self,
        destination: str,
        handler: Callable[[Delivery], None],
        stop: threading.Event,
        poll_timeout: float = 1.0,
    ) -> None: ...

    def stats(self, destination: str) -> Dict[str, Any]: ...

    def close(self) -> None: ...


class KombuDelivery(Delivery):
    def __init__(self, body: Any, message: Any):
        self.payload = body
        self._message = message
        self.headers = dict(message.headers or {})
        self.message_id = (message.properties or {}).get("message_id")

    def ack(self) -> None:
        self._message.ack()

    def nack(self, requeue: bool = False) -> None:
        # with x-dead-letter-* set on the queue, the broker moves rejected messages to the DLQ
        self._message.reject(requeue=requeue)


class KombuJobQueue(JobQueue):
    """
    Durable AMQP queues through kombu. Publishes are persistent, consumers
    take one unacknowledged message at a time (prefetch), and TTL expiry or
    reject-without-requeue dead-letters messages on the broker side.
    Publishes are serialized per instance; ``consume`` blocks its thread and
    owns the connection, so every worker slot gets its own instance.
    """

    def __init__(self, url: str, specs: Dict[str, QueueSpec], *, prefetch_count: int = 1):
        self.connection = Connection(url)
        self.specs = specs
        self.prefetch_count = prefetch_count
        self._queues = {name: spec.to_kombu() for name, spec in specs.items()}
        self._lock = threading.Lock()
        self._errors = (OperationalError,) + tuple(self.connection.connection_errors) + tuple(
            self.connection.channel_errors
        )

    @classmethod
    def from_settings(cls, s: Settings) -> "KombuJobQueue":
        return cls(s.amqp_url, topology(s), prefetch_count=s.prefetch_count)

    def _queue(self, destination: str) -> Queue:
        try:
            return self._queues[destination]
        except KeyError:
            raise QueueUnavailable(f"unknown queue: {destination}") from None

    def declare(self) -> None:
        """Declares every queue; dead-letter targets first so routing never points at nothing."""
        try:
            channel = self.connection.default_channel
            for q in self._queues.values():
                q(channel).declare()
        except self._errors as e:
            raise QueueUnavailable(f"cannot declare queues: {e}") from e

    def publish(self, destination, payload, *, headers=None, message_id=None) -> None:
        queue = self._queue(destination)
        try:
            with self._lock, self.connection.Producer(serializer="json") as producer:
                producer.publish(
                    payload,
                    exchange=DEFAULT_EXCHANGE,
                    routing_key=queue.name,
                    declare=[queue],
                    delivery_mode=2,
                    headers=headers or {},
                    message_id=message_id,
                    retry=True,
                    retry_policy=PUBLISH_RETRY_POLICY,
                )
        except self._errors as e:
            log.error("publish_failed", queue=queue.name, message_id=message_id, error=str(e))
            raise QueueUnavailable(f"cannot publish to {queue.name}: {e}") from e
        log.info("message_published", queue=queue.name, message_id=message_id)

    def consume(self, destination, handler, stop, poll_timeout=1.0) -> None:
        queue = self._queue(destination)

        def on_message(body: Any, message: Any) -> None:
            handler(KombuDelivery(body, message))

        def on_decode_error(message: Any, exc: Exception) -> None:
            log.warning("message_undecodable", queue=queue.name, error=str(exc))
            message.reject(requeue=False)

        try:
            consumer = self.connection.Consumer(
                queues=[queue],
                callbacks=[on_message],
                on_decode_error=on_decode_error,
                accept=["json"],
                auto_declare=True,
            )
            consumer.qos(prefetch_count=self.prefetch_count)
            consumer.consume()
        except self._errors as e:
            raise QueueUnavailable(f"cannot consume from {queue.name}: {e}") from e

        log.info("consumer_started", queue=queue.name, prefetch=self.prefetch_count)
        try:
            while not stop.is_set():
                try:
                    self.connection.drain_events(timeout=poll_timeout)
                except socket.timeout:
                    continue
                except self._errors as e:
                    raise QueueUnavailable(f"lost connection while consuming {queue.name}: {e}") from e
        finally:
            try:
                consumer.cancel()
            except self._errors:
                pass
            log.info("consumer_stopped", queue=queue.name)

    def stats(self, destination: str) -> Dict[str, Any]:
        queue = self._queue(destination)
        try:
            with self._lock:
                ok = queue(self.connection.default_channel).queue_declare(passive=True)
        except self._errors as e:
            raise QueueUnavailable(f"cannot inspect {queue.name}: {e}") from e
        return {"name": queue.name, "messageCount": ok.message_count, "consumerCount": ok.consumer_count}

    def close(self) -> None:
        self.connection.release()
