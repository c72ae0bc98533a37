"""In-process message bus: durable per-agent command queues and a topic event exchange."""
from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Type

from pydantic import BaseModel, ValidationError as PydanticValidationError

from .errors import BusUnavailableError, InfrastructureError, ValidationError
from .models import Command, Event, freeze_payload
from .resilience import RetryPolicy

logger = logging.getLogger(__name__)

CommandHandler = Callable[[Command], Awaitable[Any]]
EventHandler = Callable[[Event], Any]
Connector = Callable[[str], Awaitable[None]]

EVENT_EXCHANGE = "agent-events"


@dataclass(frozen=True)
class BusConfig:
    """Connection and flow-control settings for the bus."""

    url: str = "memory://"
    reconnect: RetryPolicy = RetryPolicy(attempts=10, initial_delay=100, factor=2, max_delay=30000)
    prefetch: int = 1
    publish_timeout: float = 10.0
    subscriber_buffer: int = 1000
    max_dropped: int = 100
    slow_subscriber_threshold: float = 5.0


def topic_matches(pattern: str, routing_key: str) -> bool:
    """AMQP topic matching: ``*`` is exactly one word, ``#`` is zero or more."""
    return _match(pattern.split("."), routing_key.split("."))


def _match(pattern: List[str], words: List[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match(rest, words[1:])
    return False


async def memory_connector(url: str) -> None:
    """Default connector for the in-process broker."""
    if not url.startswith("memory://"):
        raise InfrastructureError(f"Unsupported bus endpoint: {url}")


class CommandQueue:
    """Durable FIFO with explicit acknowledgement."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._ready: Deque[Command] = deque()
        self._unacked: Dict[str, Command] = {}
        self._nonempty = asyncio.Event()

    def __len__(self) -> int:
        return len(self._ready)

    @property
    def unacked(self) -> int:
        return len(self._unacked)

    def put(self, command: Command) -> None:
        self._ready.append(command)
        self._nonempty.set()

    async def get(self) -> Command:
        while not self._ready:
            self._nonempty.clear()
            await self._nonempty.wait()
        command = self._ready.popleft()
        self._unacked[command.id] = command
        return command

    def ack(self, command_id: str) -> None:
        self._unacked.pop(command_id, None)

    def nack(self, command_id: str, requeue: bool = True) -> None:
        command = self._unacked.pop(command_id, None)
        if command is not None and requeue:
            command.retry_count += 1
            self._ready.appendleft(command)
            self._nonempty.set()


@dataclass
class _Consumer:
    agent_id: str
    handler: CommandHandler
    window: asyncio.Semaphore
    tag: str = field(default_factory=lambda: uuid.uuid4().hex)
    loop_task: Optional[asyncio.Task] = None
    deliveries: Set[asyncio.Task] = field(default_factory=set)


@dataclass
class _Subscription:
    id: str
    pattern: str
    handler: EventHandler
    buffer: asyncio.Queue
    worker: Optional[asyncio.Task] = None
    internal: bool = False
    busy: bool = False
    active: bool = True
    dropped: int = 0
    slow: int = 0


class MessageBus:
    """Async message hub: commands go to one agent, events fan out by topic."""

    def __init__(self, config: Optional[BusConfig] = None, connector: Optional[Connector] = None) -> None:
        self._config = config or BusConfig()
        self._connector = connector or memory_connector
        self._queues: Dict[str, CommandQueue] = {}
        self._consumers: Dict[str, _Consumer] = {}
        self._subscriptions: Dict[str, _Subscription] = {}
        self._replies: Dict[str, asyncio.Future] = {}
        self._schemas: Dict[str, Type[BaseModel]] = {}
        self._connected = asyncio.Event()
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closed = False
        self.topology_declarations = 0

    @property
    def config(self) -> BusConfig:
        return self._config

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    @staticmethod
    def queue_name(agent_id: str) -> str:
        return f"{agent_id}-commands"

    # ------------------------------------------------------------------ connection

    async def connect(self) -> None:
        """Connect with exponential backoff, then declare topology."""
        if self._connected.is_set():
            return
        self._closed = False
        await self._connect_with_backoff()

    def connection_lost(self, exc: Optional[BaseException] = None) -> None:
        """Mark the connection as dropped and schedule a reconnect."""
        if self._closed or not self._connected.is_set():
            return
        logger.warning("Message bus connection lost: %s", exc or "closed unexpectedly")
        self._connected.clear()
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        try:
            await self._connect_with_backoff()
        except BusUnavailableError as exc:
            logger.error("Giving up reconnecting to message bus: %s", exc)

    async def _connect_with_backoff(self) -> None:
        policy = self._config.reconnect
        attempt = 0
        while True:
            attempt += 1
            try:
                await self._connector(self._config.url)
            except Exception as exc:  # noqa: BLE001
                if attempt >= policy.attempts:
                    raise BusUnavailableError(
                        f"Could not connect to {self._config.url} after {attempt} attempts: {exc}",
                    ) from exc
                delay = policy.delay_for(attempt)
                logger.warning(
                    "Message bus connect attempt %s failed, retrying in %.0fms: %s", attempt, delay, exc
                )
                await asyncio.sleep(delay / 1000.0)
            else:
                self._declare_topology()
                self._connected.set()
                logger.info("Connected to message bus at %s", self._config.url)
                return

    def _declare_topology(self) -> None:
        """Idempotently (re)declare queues for every consumer and pending command."""
        for agent_id in list(self._consumers):
            self._queue(agent_id)
        self.topology_declarations += 1
        logger.debug(
            "Declared topology: exchange=%s queues=%s bindings=%s",
            EVENT_EXCHANGE,
            len(self._queues),
            len(self._subscriptions),
        )

    async def _await_connection(self, timeout: Optional[float]) -> None:
        if self._closed:
            raise BusUnavailableError("Message bus is shut down")
        if self._connected.is_set():
            return
        deadline = self._config.publish_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(self._connected.wait(), deadline)
        except asyncio.TimeoutError as exc:
            raise BusUnavailableError(
                f"Message bus unavailable after waiting {deadline}s for reconnect",
            ) from exc

    def _queue(self, agent_id: str) -> CommandQueue:
        queue = self._queues.get(agent_id)
        if queue is None:
            queue = CommandQueue(self.queue_name(agent_id))
            self._queues[agent_id] = queue
        return queue

    # ------------------------------------------------------------------ validation

    def register_schema(self, message_type: str, model: Type[BaseModel]) -> None:
        """Validate payloads of commands and events of ``message_type`` before they are published."""
        self._schemas[message_type] = model
        logger.debug("Registered payload schema %s for %s", model.__name__, message_type)

    def _validate(self, message_type: str, payload: Dict[str, Any]) -> None:
        if not message_type:
            raise ValidationError("Message type is required")
        model = self._schemas.get(message_type)
        if model is None:
            return
        try:
            model.model_validate(payload)
        except PydanticValidationError as exc:
            errors = [
                {"loc": ".".join(str(part) for part in error["loc"]), "msg": error["msg"], "type": error["type"]}
                for error in exc.errors()
            ]
            raise ValidationError(
                f"Invalid payload for {message_type}: {errors[0]['loc'] or 'payload'} {errors[0]['msg']}",
                details={"messageType": message_type, "errors": errors},
            ) from exc

    # ------------------------------------------------------------------ commands

    async def publish_command(
        self,
        agent_id: str,
        command_type: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        command_id: Optional[str] = None,
        source: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Enqueue a durable command for ``agent_id`` and return its id."""
        if not agent_id:
            raise ValidationError(f"Command {command_type} has no target agent")
        frozen = freeze_payload(payload)
        self._validate(command_type, frozen)
        await self._await_connection(timeout)
        command = Command(
            type=command_type,
            agent_id=agent_id,
            payload=frozen,
            source=source,
        )
        if command_id is not None:
            command.id = command_id
        self._queue(agent_id).put(command)
        logger.debug("Published command %s (%s) to %s", command.type, command.id, agent_id)
        return command.id

    async def request(
        self,
        agent_id: str,
        command_type: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        command_id: Optional[str] = None,
        source: Optional[str] = None,
        timeout: float = 60.0,
    ) -> Any:
        """Publish a command and wait for the consumer's reply."""
        command_id = command_id or str(uuid.uuid4())
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._replies[command_id] = future
        try:
            await self.publish_command(
                agent_id, command_type, payload, command_id=command_id, source=source, timeout=timeout
            )
            return await asyncio.wait_for(future, timeout)
        finally:
            self._replies.pop(command_id, None)

    async def consume_commands(self, agent_id: str, handler: CommandHandler) -> str:
        """Start the single consumer of ``agent_id``'s queue."""
        if agent_id in self._consumers:
            raise InfrastructureError(f"Agent {agent_id} already has an active command consumer")
        await self._await_connection(None)
        consumer = _Consumer(
            agent_id=agent_id,
            handler=handler,
            window=asyncio.Semaphore(max(1, self._config.prefetch)),
        )
        self._queue(agent_id)
        self._consumers[agent_id] = consumer
        consumer.loop_task = asyncio.create_task(self._consume(consumer))
        logger.info("Started command consumer on queue %s", self.queue_name(agent_id))
        return consumer.tag

    def is_consuming(self, agent_id: str) -> bool:
        return agent_id in self._consumers

    async def stop_consuming(self, agent_id: str) -> None:
        """Stop fetching commands for ``agent_id``.

        Deliveries already handed to the handler run to completion and are
        acknowledged as usual; the owning agent decides whether to cancel them.
        """
        consumer = self._consumers.pop(agent_id, None)
        if consumer is None:
            return
        if consumer.loop_task is not None and consumer.loop_task is not asyncio.current_task():
            consumer.loop_task.cancel()
            await asyncio.gather(consumer.loop_task, return_exceptions=True)
        logger.info("Stopped command consumer on queue %s", self.queue_name(agent_id))

    async def _consume(self, consumer: _Consumer) -> None:
        queue = self._queue(consumer.agent_id)
        while True:
            await self._connected.wait()
            await consumer.window.acquire()
            try:
                command = await queue.get()
            except BaseException:
                consumer.window.release()
                raise
            task = asyncio.create_task(self._deliver(consumer, queue, command))
            consumer.deliveries.add(task)
            task.add_done_callback(consumer.deliveries.discard)

    async def _deliver(self, consumer: _Consumer, queue: CommandQueue, command: Command) -> None:
        reply = self._replies.get(command.id)
        try:
            result = await consumer.handler(command)
        except asyncio.CancelledError:
            queue.nack(command.id, requeue=True)
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Command %s (%s) rejected by %s", command.type, command.id, consumer.agent_id)
            queue.nack(command.id, requeue=False)
            if reply is not None and not reply.done():
                reply.set_exception(exc)
        else:
            queue.ack(command.id)
            if reply is not None and not reply.done():
                reply.set_result(result)
        finally:
            consumer.window.release()

    def queue_depth(self, agent_id: str) -> int:
        queue = self._queues.get(agent_id)
        return len(queue) if queue else 0

    # ------------------------------------------------------------------ events

    async def publish_event(
        self,
        source: str,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Event:
        event = Event(type=event_type, source=source, payload=freeze_payload(payload))
        await self.publish(event, timeout=timeout)
        return event

    async def publish(self, event: Event, *, timeout: Optional[float] = None) -> None:
        """Route a prepared event to every matching subscription."""
        if not event.source:
            raise ValidationError(f"Event {event.type} has no source")
        self._validate(event.type, event.payload)
        await self._await_connection(timeout)
        for subscription in list(self._subscriptions.values()):
            if not subscription.active or not topic_matches(subscription.pattern, event.routing_key):
                continue
            await self._offer(subscription, event)
            # Let the subscriber drain before the next delivery.
            await asyncio.sleep(0)

    async def _offer(self, subscription: _Subscription, event: Event) -> None:
        """Buffer ``event`` for ``subscription``, dropping it if no slot frees up in time.

        A full buffer is given ``slow_subscriber_threshold`` seconds to make
        room, so only a subscriber whose handler lags that long loses events.
        Runtime-internal subscriptions wait up to the publish deadline and are
        never disconnected.
        """
        try:
            subscription.buffer.put_nowait(event)
            return
        except asyncio.QueueFull:
            pass
        wait = self._config.publish_timeout if subscription.internal else self._config.slow_subscriber_threshold
        # A handler publishing into its own full buffer would wait on itself.
        if wait > 0 and subscription.worker is not asyncio.current_task():
            try:
                await asyncio.wait_for(subscription.buffer.put(event), wait)
                return
            except asyncio.TimeoutError:
                pass
        subscription.dropped += 1
        logger.warning(
            "Dropped %s for slow subscriber %s on %s (%s dropped)",
            event.routing_key,
            subscription.id,
            subscription.pattern,
            subscription.dropped,
        )
        if not subscription.internal and subscription.dropped > self._config.max_dropped:
            self._disconnect(subscription, "too slow to accept events")

    async def subscribe(self, pattern: str, handler: EventHandler, *, internal: bool = False) -> str:
        """Bind ``handler`` to events whose routing key matches ``pattern``.

        ``internal`` marks the runtime's own services: they are never
        disconnected for being slow.
        """
        subscription = _Subscription(
            id=uuid.uuid4().hex,
            pattern=pattern,
            handler=handler,
            buffer=asyncio.Queue(maxsize=self._config.subscriber_buffer),
            internal=internal,
        )
        self._subscriptions[subscription.id] = subscription
        subscription.worker = asyncio.create_task(self._dispatch(subscription))
        logger.debug("Subscribed %s to %s", subscription.id, pattern)
        return subscription.id

    async def unsubscribe(self, subscription_id: str) -> bool:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            return False
        self._disconnect(subscription, "unsubscribed")
        return True

    def _disconnect(self, subscription: _Subscription, reason: str) -> None:
        self._subscriptions.pop(subscription.id, None)
        subscription.active = False
        worker = subscription.worker
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()
        if reason not in {"unsubscribed", "shutdown"}:
            logger.warning("Disconnected subscriber %s on %s: %s", subscription.id, subscription.pattern, reason)

    async def _dispatch(self, subscription: _Subscription) -> None:
        loop = asyncio.get_running_loop()
        while subscription.active:
            event = await subscription.buffer.get()
            subscription.busy = True
            started = loop.time()
            try:
                result = subscription.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001
                logger.exception("Subscriber %s rejected %s", subscription.pattern, event.routing_key)
            finally:
                subscription.busy = False
            if loop.time() - started > self._config.slow_subscriber_threshold:
                subscription.slow += 1
                if not subscription.internal and subscription.slow > self._config.max_dropped:
                    self._disconnect(subscription, "handler too slow")

    async def join(self, timeout: float = 5.0) -> None:
        """Wait until every subscription has drained its buffer."""

        async def _idle() -> None:
            while any(
                s.busy or not s.buffer.empty() for s in self._subscriptions.values()
            ):
                await asyncio.sleep(0.005)
            await asyncio.sleep(0)

        await asyncio.wait_for(_idle(), timeout)

    # ------------------------------------------------------------------ lifecycle

    def status(self) -> Dict[str, Any]:
        return {
            "connected": self.is_connected,
            "url": self._config.url,
            "queues": {self.queue_name(a): len(q) for a, q in self._queues.items()},
            "consumers": sorted(self._consumers),
            "subscriptions": len(self._subscriptions),
            "dropped": sum(s.dropped for s in self._subscriptions.values()),
        }

    async def shutdown(self) -> None:
        """Cancel consumers and subscriptions; unacked commands are requeued."""
        self._closed = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
        tasks: List[asyncio.Task] = []
        for consumer in list(self._consumers.values()):
            for task in [consumer.loop_task, *consumer.deliveries]:
                if task is not None and task is not asyncio.current_task():
                    task.cancel()
                    tasks.append(task)
        self._consumers.clear()
        for subscription in list(self._subscriptions.values()):
            if subscription.worker is not None:
                tasks.append(subscription.worker)
            self._disconnect(subscription, "shutdown")
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for future in self._replies.values():
            if not future.done():
                future.set_exception(BusUnavailableError("Message bus is shut down"))
        self._connected.clear()
        logger.info("Message bus shut down")
