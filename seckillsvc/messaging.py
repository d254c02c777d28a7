"""Publishing seckill order messages to RabbitMQ, directly or through a buffered worker pool."""

import dataclasses
import json
import logging
import queue
import threading
import time
from dataclasses import dataclass

import pika

logger = logging.getLogger(__name__)

EXCHANGE_TYPE_DIRECT = "direct"
EXCHANGE_TYPE_FANOUT = "fanout"
EXCHANGE_TYPE_TOPIC = "topic"

SECKILL_ORDER_ROUTING_KEY = "seckill.order"
SECKILL_DELAY_ROUTING_KEY = "seckill.delay"

CONTENT_TYPE_JSON = "application/json"
DELIVERY_MODE_PERSISTENT = 2

DEFAULT_BUFFER_SIZE = 10000
DEFAULT_WORKER_COUNT = 4
DEFAULT_RETRY_COUNT = 3
DEFAULT_RETRY_INTERVAL_SECONDS = 1
MAX_RETRY_BACKOFF_SECONDS = 10


@dataclass
class SeckillOrderMessage:
    """A successful seckill reservation handed to the order pipeline."""

    order_id: str
    user_id: int
    seckill_product_id: int
    product_id: int
    quantity: int
    amount: int
    seckill_price: int
    created_at: int
    is_delay: bool = False

    def to_json(self) -> str:
        """Serialise the wire fields; the delay flag is internal and left out."""
        return json.dumps(
            {
                "order_id": self.order_id,
                "user_id": self.user_id,
                "seckill_product_id": self.seckill_product_id,
                "product_id": self.product_id,
                "quantity": self.quantity,
                "amount": self.amount,
                "seckill_price": self.seckill_price,
                "created_at": self.created_at,
            },
            ensure_ascii=False,
        )


class BufferFullError(Exception):
    """The async producer's buffer is full and the message was not queued."""

    def __init__(self, order_id: str, buffer_size: int):
        self.order_id = order_id
        self.buffer_size = buffer_size
        super().__init__(
            f"async producer buffer full: orderId={order_id}, bufferSize={buffer_size}"
        )


def _default_connection(url):
    return pika.BlockingConnection(pika.URLParameters(url))


def _quiet_close(resource) -> None:
    if resource is None:
        return
    try:
        resource.close()
    except Exception:  # closing a broken connection may fail; nothing left to do
        pass


class Producer:
    """Synchronous publisher on a durable direct exchange; reconnects on demand."""

    def __init__(self, url, exchange, routing_key, *, connection_factory=None):
        self.url = url
        self.exchange = exchange
        self.routing_key = routing_key
        self._factory = connection_factory or _default_connection
        self._lock = threading.Lock()
        self._connection = None
        self._channel = None
        self._closed = False
        with self._lock:
            self._connect()
        logger.info("RabbitMQ producer created: exchange=%s, routingKey=%s", exchange, routing_key)

    def _connect(self) -> None:
        try:
            connection = self._factory(self.url)
        except Exception as exc:
            raise ConnectionError(f"failed to connect to RabbitMQ: {exc}") from exc
        try:
            channel = connection.channel()
        except Exception as exc:
            _quiet_close(connection)
            raise ConnectionError(f"failed to open channel: {exc}") from exc
        try:
            channel.exchange_declare(
                exchange=self.exchange,
                exchange_type=EXCHANGE_TYPE_DIRECT,
                durable=True,
                auto_delete=False,
                internal=False,
            )
        except Exception as exc:
            _quiet_close(channel)
            _quiet_close(connection)
            raise ConnectionError(f"failed to declare exchange: {exc}") from exc
        self._connection = connection
        self._channel = channel

    def _ensure_connected(self) -> None:
        if self._closed:
            raise ConnectionError("producer is closed")
        channel_ok = self._channel is not None and getattr(self._channel, "is_open", True)
        conn_ok = self._connection is not None and getattr(self._connection, "is_open", True)
        if channel_ok and conn_ok:
            return
        logger.warning("RabbitMQ connection lost, reconnecting")
        _quiet_close(self._channel)
        _quiet_close(self._connection)
        self._channel = None
        self._connection = None
        self._connect()
        logger.info("RabbitMQ producer reconnected")

    def _publish(self, routing_key, message, kind) -> None:
        body = message.to_json().encode("utf-8")
        with self._lock:
            self._ensure_connected()
            properties = pika.BasicProperties(
                content_type=CONTENT_TYPE_JSON,
                delivery_mode=DELIVERY_MODE_PERSISTENT,
                timestamp=int(time.time()),
            )
            try:
                self._channel.basic_publish(
                    exchange=self.exchange,
                    routing_key=routing_key,
                    body=body,
                    properties=properties,
                )
            except Exception as exc:
                self._channel = None
                logger.error("send %s message failed: orderId=%s, err=%s",
                             kind, message.order_id, exc)
                raise ConnectionError(f"failed to publish {kind} message: {exc}") from exc
        logger.info("%s message sent: orderId=%s", kind, message.order_id)

    def send_seckill_order(self, message) -> None:
        """Publish an order message with the configured routing key."""
        self._publish(self.routing_key, message, "seckill")

    def send_delay_order(self, message) -> None:
        """Publish a timeout-check message to the delay queue."""
        self._publish(SECKILL_DELAY_ROUTING_KEY, message, "delay")

    def close(self) -> None:
        with self._lock:
            self._closed = True
            _quiet_close(self._channel)
            _quiet_close(self._connection)
            self._channel = None
            self._connection = None


class AsyncProducer:
    """Buffers messages in a bounded queue; worker threads publish them with retries."""

    _POLL_SECONDS = 0.05

    def __init__(self, producer, buffer_size=0, worker_count=0, retry_count=0,
                 retry_interval_sec=0, *, sleep=time.sleep):
        self.producer = producer
        self.buffer_size = buffer_size if buffer_size > 0 else DEFAULT_BUFFER_SIZE
        self.worker_count = worker_count if worker_count > 0 else DEFAULT_WORKER_COUNT
        self.retry_count = retry_count if retry_count > 0 else DEFAULT_RETRY_COUNT
        interval = retry_interval_sec if retry_interval_sec > 0 else DEFAULT_RETRY_INTERVAL_SECONDS
        self.retry_base = float(interval)
        self._sleep = sleep
        self._queue = queue.Queue(maxsize=self.buffer_size)
        self._done = threading.Event()
        self._close_lock = threading.Lock()
        self._closed = False
        self._workers = [
            threading.Thread(target=self._worker, args=(i,), name=f"async-producer-{i}", daemon=True)
            for i in range(self.worker_count)
        ]
        for worker in self._workers:
            worker.start()
        logger.info("AsyncProducer started: bufferSize=%d, workerCount=%d, retryCount=%d",
                    self.buffer_size, self.worker_count, self.retry_count)

    def _enqueue(self, message) -> None:
        try:
            self._queue.put_nowait(message)
        except queue.Full:
            logger.error("AsyncProducer buffer full, message dropped: orderId=%s, bufferSize=%d",
                         message.order_id, self.buffer_size)
            raise BufferFullError(message.order_id, self.buffer_size) from None

    def send_delay_order(self, message) -> None:
        """Queue a copy of the message marked for the delay queue."""
        self._enqueue(dataclasses.replace(message, is_delay=True))

    def send_async(self, message) -> None:
        """Queue the message without blocking; BufferFullError when the buffer is full."""
        self._enqueue(message)

    def _worker(self, worker_id) -> None:
        logger.info("AsyncProducer worker-%d started", worker_id)
        while True:
            try:
                message = self._queue.get(timeout=self._POLL_SECONDS)
            except queue.Empty:
                if self._done.is_set():
                    logger.info("AsyncProducer worker-%d drained and stopped", worker_id)
                    return
                continue
            self._send_with_retry(message)

    def _send_with_retry(self, message) -> None:
        last_error = None
        for attempt in range(self.retry_count):
            if attempt > 0:
                backoff = min(self.retry_base * (1 << (attempt - 1)), MAX_RETRY_BACKOFF_SECONDS)
                logger.info("AsyncProducer retrying: orderId=%s, attempt=%d/%d, backoff=%ss",
                            message.order_id, attempt + 1, self.retry_count, backoff)
                self._sleep(backoff)
            try:
                if message.is_delay:
                    self.producer.send_delay_order(message)
                else:
                    self.producer.send_seckill_order(message)
            except Exception as exc:
                last_error = exc
                logger.error("AsyncProducer send failed: orderId=%s, attempt=%d/%d, err=%s",
                             message.order_id, attempt + 1, self.retry_count, exc)
                continue
            logger.info("AsyncProducer send success: orderId=%s, attempt=%d",
                        message.order_id, attempt + 1)
            return
        logger.error("AsyncProducer message dropped after max retries: orderId=%s, userId=%s, "
                     "seckillProductId=%s, lastErr=%s", message.order_id, message.user_id,
                     message.seckill_product_id, last_error)

    def close(self) -> None:
        """Drain the buffer, stop the workers and close the underlying producer."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        logger.info("AsyncProducer closing...")
        self._done.set()
        for worker in self._workers:
            worker.join()
        self.producer.close()
        logger.info("AsyncProducer closed gracefully")