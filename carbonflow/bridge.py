# -*- coding: utf-8 -*-
"""
EventBridge - CarbonFlow Graph Service

Connects the agent's action stream to one session's ActionProcessor.

Interception:
    The bridge owns an ordered middleware chain of (predicate, handler)
    pairs with a default handler at the end. :meth:`EventBridge.execute` is
    the single entry point for executing any agent action: the first
    middleware whose predicate accepts the action handles it, anything else
    falls through to the default handler unmodified. ``initialize()``
    registers the carbon-flow middleware, which diverts graph-mutation
    actions to :meth:`EventBridge.dispatch`.

Channel:
    ``dispatch`` stamps a fresh trace id and puts the message on a bounded
    ``asyncio.Queue`` without waiting. A full queue drops the message,
    counts it and publishes a failed acknowledgement. One consumer task
    takes messages in FIFO order, decodes them and hands them to the
    processor, so actions apply in dispatch order on later loop turns.
    Undecodable messages (unknown operation, malformed payload) are logged
    and dropped before reaching the processor.

Acknowledgements:
    Every consumed or dropped message yields one :class:`AckEvent`, kept in
    a bounded history and delivered to ack subscribers.

Example:
    >>> bridge = EventBridge(processor)
    >>> await bridge.initialize()
    >>> trace_id = bridge.dispatch({"type": "carbonflow", "operation": "layout"})
    >>> await bridge.join()
    >>> bridge.acks[-1].trace_id == trace_id
    True

Author: GreenLang Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Set, Union

from carbonflow.actions import ActionMessage, decode_action, is_carbonflow_action
from carbonflow.config import CarbonFlowConfig, get_config
from carbonflow.exceptions import ActionDecodeError
from carbonflow.metrics import (
    record_dropped_action,
    record_processing_error,
    set_channel_depth,
)
from carbonflow.models import AckEvent
from carbonflow.processor import ActionProcessor

logger = logging.getLogger(__name__)

ActionPredicate = Callable[[Any], bool]
ActionHandler = Callable[[Any], Any]
AckListener = Callable[[AckEvent], Any]

CARBONFLOW_MIDDLEWARE = "carbonflow"


def generate_trace_id() -> str:
    """Trace id of the form ``cf-<epoch-ms>-<random>``."""
    return f"cf-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class Middleware:
    """One interception rule of the execution chain."""

    name: str
    predicate: ActionPredicate
    handler: ActionHandler


def _message_field(message: Any, key: str, attr: str) -> Optional[str]:
    if isinstance(message, ActionMessage):
        return getattr(message, attr)
    if isinstance(message, Mapping):
        value = message.get(key)
        return None if value is None else str(value)
    return None


class EventBridge:
    """Bounded action channel between the agent and an ActionProcessor.

    Attributes:
        processor: Processor the consumer hands decoded actions to.
        config: Channel and history sizes.
    """

    def __init__(
        self,
        processor: ActionProcessor,
        config: Optional[CarbonFlowConfig] = None,
        default_handler: Optional[ActionHandler] = None,
        middleware: Optional[List[Middleware]] = None,
    ) -> None:
        """Initialize the bridge.

        Args:
            processor: Processor for carbon-flow actions.
            config: Service configuration, defaults to :func:`get_config`.
            default_handler: Executes actions no middleware claims.
            middleware: Extra interception rules, checked in order before
                the carbon-flow rule.
        """
        self.processor = processor
        self.config = config or get_config()
        self._default_handler = default_handler
        self._chain: List[Middleware] = list(middleware or [])
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.channel_max_size)
        self._acks: Deque[AckEvent] = deque(maxlen=self.config.ack_history_size)
        self._ack_listeners: List[AckListener] = []
        self._consumer_task: Optional[asyncio.Task] = None
        self._initialized = False
        self._dispatched = 0
        self._ack_tasks: Set[asyncio.Future] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> bool:
        """Install the carbon-flow middleware and start the consumer.

        Returns:
            False when the bridge was already initialized (a logged no-op).
        """
        if self._initialized:
            logger.warning("EventBridge already initialized, skipping")
            return False
        self._initialized = True
        self.register(is_carbonflow_action, self.dispatch, name=CARBONFLOW_MIDDLEWARE)
        self._consumer_task = asyncio.get_running_loop().create_task(self._consume())
        logger.info(
            "EventBridge initialized (channel size %d, %d middleware)",
            self.config.channel_max_size, len(self._chain),
        )
        return True

    async def join(self) -> None:
        """Wait until every dispatched message has been consumed."""
        await self._queue.join()

    async def close(self) -> None:
        """Stop the consumer and discard undelivered messages."""
        logger.info("Shutting down EventBridge...")
        if self._consumer_task is not None:
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass
            self._consumer_task = None

        discarded = 0
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
                self._queue.task_done()
                discarded += 1
            except asyncio.QueueEmpty:
                break
        if discarded:
            logger.warning("Discarded %d undelivered action(s) on close", discarded)
        set_channel_depth(0)
        self._initialized = False
        self._chain = [m for m in self._chain if m.name != CARBONFLOW_MIDDLEWARE]
        logger.info("EventBridge shutdown complete")

    # ------------------------------------------------------------------
    # Middleware chain
    # ------------------------------------------------------------------

    def register(
        self,
        predicate: ActionPredicate,
        handler: ActionHandler,
        name: Optional[str] = None,
    ) -> Middleware:
        """Append an interception rule to the chain."""
        rule = Middleware(name=name or getattr(handler, "__name__", "middleware"),
                          predicate=predicate, handler=handler)
        self._chain.append(rule)
        logger.debug("Registered middleware %s", rule.name)
        return rule

    @property
    def middleware(self) -> List[Middleware]:
        return list(self._chain)

    async def execute(self, action: Any) -> Any:
        """Execute an agent action through the middleware chain.

        Returns:
            Whatever the selected handler returns, awaited if needed.
        """
        for rule in self._chain:
            if rule.predicate(action):
                result = rule.handler(action)
                break
        else:
            if self._default_handler is None:
                logger.debug("No handler claimed action, ignoring")
                return None
            result = self._default_handler(action)
        if inspect.isawaitable(result):
            result = await result
        return result

    # ------------------------------------------------------------------
    # Channel
    # ------------------------------------------------------------------

    def dispatch(self, message: Union[ActionMessage, Mapping[str, Any]]) -> str:
        """Stamp a trace id and enqueue the message without waiting.

        Returns:
            The trace id stamped on the message.
        """
        trace_id = generate_trace_id()
        if isinstance(message, ActionMessage):
            stamped: Any = message.model_copy(update={"trace_id": trace_id})
        else:
            stamped = {**message, "traceId": trace_id}

        try:
            self._queue.put_nowait(stamped)
        except asyncio.QueueFull:
            logger.warning("Action channel full, dropping action %s", trace_id)
            record_dropped_action("channel_full")
            self._publish_ack(AckEvent(
                success=False,
                trace_id=trace_id,
                node_id=_message_field(message, "nodeId", "node_id"),
                operation=_message_field(message, "operation", "operation"),
                reason="action channel full",
            ))
            return trace_id

        self._dispatched += 1
        set_channel_depth(self._queue.qsize())
        logger.debug("Dispatched action %s", trace_id)
        return trace_id

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _consume(self) -> None:
        while self._initialized:
            try:
                message = await asyncio.wait_for(
                    self._queue.get(), timeout=self.config.consumer_poll_interval,
                )
            except asyncio.TimeoutError:
                continue
            try:
                self._process(message)
            except Exception:
                logger.error("Action consumer failed on a message", exc_info=True)
                record_processing_error("consumer")
            finally:
                self._queue.task_done()
                set_channel_depth(self._queue.qsize())

    def _process(self, message: Any) -> None:
        trace_id = _message_field(message, "traceId", "trace_id") or generate_trace_id()
        try:
            command = decode_action(message)
        except ActionDecodeError as exc:
            reason = exc.context.get("reason", "malformed_payload")
            logger.warning("Dropping action %s: %s", trace_id, exc.message)
            record_dropped_action(reason)
            self._publish_ack(AckEvent(
                success=False,
                trace_id=trace_id,
                node_id=_message_field(message, "nodeId", "node_id"),
                operation=_message_field(message, "operation", "operation"),
                reason=exc.message,
            ))
            return

        outcome = self.processor.handle_action(command)
        self._publish_ack(AckEvent(
            success=outcome.applied,
            trace_id=trace_id,
            node_id=outcome.node_id or command.node_id,
            operation=outcome.operation,
            reason=outcome.reason,
        ))

    # ------------------------------------------------------------------
    # Acknowledgements
    # ------------------------------------------------------------------

    @property
    def acks(self) -> List[AckEvent]:
        """Recent acknowledgements, oldest first."""
        return list(self._acks)

    def subscribe_acks(self, listener: AckListener) -> Callable[[], None]:
        """Register an acknowledgement listener; returns an unsubscribe callable."""
        self._ack_listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._ack_listeners:
                self._ack_listeners.remove(listener)

        return _unsubscribe

    def _publish_ack(self, ack: AckEvent) -> None:
        self._acks.append(ack)
        logger.debug(
            "Ack %s: success=%s node=%s reason=%s",
            ack.trace_id, ack.success, ack.node_id, ack.reason,
        )
        for listener in list(self._ack_listeners):
            try:
                result = listener(ack)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._ack_tasks.add(task)
                    task.add_done_callback(self._ack_task_done)
            except Exception:
                logger.error("Ack listener %r failed", listener, exc_info=True)

    def _ack_task_done(self, task: asyncio.Future) -> None:
        self._ack_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async ack listener failed", exc_info=exc)

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "initialized": self._initialized,
            "dispatched": self._dispatched,
            "pending": self._queue.qsize(),
            "acks": len(self._acks),
            "ack_listener_tasks": len(self._ack_tasks),
            "middleware": [m.name for m in self._chain],
        }


__all__ = [
    "EventBridge",
    "Middleware",
    "generate_trace_id",
    "CARBONFLOW_MIDDLEWARE",
]
