"""Inter-agent communication protocol: priority queues, broadcasts and request/response."""

import asyncio
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..errors import CommunicationError, MessageTimeoutError, NoCapableAgentsError
from ..logger import get_logger
from .memory import CrewMemory
from .registry import AgentCapability, CapabilityRegistry
from .tasks import AgentInteraction, InteractionType, new_id

_log = get_logger(__name__)

BROADCAST = "broadcast"


class MessageType(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"
    NOTIFICATION = "notification"
    ERROR = "error"
    ASSISTANCE_REQUEST = "assistance_request"
    CAPABILITY_QUERY = "capability_query"


class MessagePriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


_PRIORITY_RANK = {
    MessagePriority.URGENT: 4,
    MessagePriority.HIGH: 3,
    MessagePriority.MEDIUM: 2,
    MessagePriority.LOW: 1,
}

_INTERACTION_TYPES = {
    MessageType.REQUEST: InteractionType.REQUEST,
    MessageType.ASSISTANCE_REQUEST: InteractionType.REQUEST,
    MessageType.CAPABILITY_QUERY: InteractionType.REQUEST,
    MessageType.RESPONSE: InteractionType.RESPONSE,
    MessageType.ERROR: InteractionType.ERROR,
    MessageType.NOTIFICATION: InteractionType.NOTIFICATION,
}


@dataclass
class AgentMessage:
    type: MessageType
    from_agent: str
    to_agent: str             # worker id or BROADCAST
    subject: str = ""
    content: str = ""
    priority: MessagePriority = MessagePriority.MEDIUM
    conversation_id: str = ""
    task_id: Optional[str] = None
    requires_response: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    expires_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: new_id("msg"))
    timestamp: datetime = field(default_factory=datetime.now)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or datetime.now())

    def sort_key(self):
        return (-_PRIORITY_RANK[self.priority], self.timestamp)


@dataclass
class MessageResponse:
    message_id: str
    from_agent: str
    content: str
    success: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


MessageHandler = Callable[[AgentMessage], Awaitable[Optional[MessageResponse]]]


@dataclass
class _PendingRequest:
    future: asyncio.Future
    timer: asyncio.TimerHandle


class CommunicationProtocol:
    """Message bus between registered workers.

    Queues, handlers and pending requests are owned by this instance; worker
    capability data lives in the shared :class:`CapabilityRegistry`.
    """

    def __init__(
        self,
        registry: Optional[CapabilityRegistry] = None,
        memory: Optional[CrewMemory] = None,
        default_timeout: float = 30.0,
    ):
        self.registry = registry if registry is not None else CapabilityRegistry()
        self.memory = memory
        self.default_timeout = default_timeout
        self._queues: Dict[str, List[AgentMessage]] = {}
        self._handlers: Dict[str, Dict[MessageType, MessageHandler]] = {}
        self._pending: Dict[str, _PendingRequest] = {}
        self._deliveries: Set[asyncio.Future] = set()
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        for agent in self.registry.all():
            self._queues.setdefault(agent.agent_id, [])
        self._initialized = True
        _log.info("Communication protocol ready with %d agent(s)", len(self.registry))

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise CommunicationError("Communication protocol not initialized")

    # ── Registration ──────────────────────────────────────────

    def register_agent(self, capability: AgentCapability) -> None:
        self.registry.register(capability)
        self._queues.setdefault(capability.agent_id, [])

    def register_message_handler(self, agent_id: str, message_type: MessageType,
                                 handler: MessageHandler) -> None:
        self._handlers.setdefault(agent_id, {})[message_type] = handler

    def update_agent_status(self, agent_id: str, is_available: Optional[bool] = None,
                            current_load: Optional[int] = None) -> None:
        self.registry.update_status(agent_id, is_available=is_available,
                                    current_load=current_load)

    def get_agent_capabilities(self, agent_id: Optional[str] = None) -> List[AgentCapability]:
        if agent_id is not None:
            agent = self.registry.get(agent_id)
            return [agent] if agent else []
        return self.registry.all()

    def find_capable_agents(self, required: List[str]) -> List[str]:
        """Ids of available workers matching every tag, least loaded first."""
        return [a.agent_id for a in self.registry.find_capable(required)]

    # ── Sending ───────────────────────────────────────────────

    async def send_message(self, message: AgentMessage) -> str:
        """Persist, queue and try to deliver ``message``. Returns its id."""
        self._require_initialized()
        await self._store_message(message)

        if message.to_agent == BROADCAST:
            await self._broadcast(message)
        else:
            self._enqueue(message.to_agent, message)
            await self._deliver(message)
        return message.id

    async def send_and_wait_for_response(self, message: AgentMessage,
                                         timeout: Optional[float] = None) -> Optional[MessageResponse]:
        """Send and wait for the matching response.

        Returns None right away for messages that do not require a response.
        Raises :class:`MessageTimeoutError` when nothing arrives in time.
        """
        self._require_initialized()
        if not message.requires_response:
            await self.send_message(message)
            return None

        timeout = self.default_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        timer = loop.call_later(timeout, self._expire, message.id, timeout)
        # Registered before sending: a handler may answer during delivery.
        self._pending[message.id] = _PendingRequest(future, timer)

        delivery = asyncio.ensure_future(self.send_message(message))
        self._deliveries.add(delivery)
        delivery.add_done_callback(self._deliveries.discard)

        try:
            await asyncio.wait({delivery, future}, return_when=asyncio.FIRST_COMPLETED)
            if delivery.done() and not delivery.cancelled() and delivery.exception() is not None:
                raise delivery.exception()
            return await future
        finally:
            # no-op once answered or expired; drops the timer when the caller gave up
            self._discard_pending(message.id)

    async def respond_to_message(self, original_message_id: str,
                                 response: MessageResponse) -> None:
        await self._store_response(original_message_id, response)
        pending = self._pending.pop(original_message_id, None)
        if pending is None:
            return
        pending.timer.cancel()
        if not pending.future.done():
            pending.future.set_result(response)

    async def request_assistance(
        self,
        from_agent: str,
        capabilities: List[str],
        content: str,
        subject: str = "Assistance request",
        timeout: Optional[float] = None,
        conversation_id: str = "",
        task_id: Optional[str] = None,
        priority: MessagePriority = MessagePriority.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
    ) -> List[MessageResponse]:
        """Ask every capable worker for help; collect responses that arrive in time."""
        self._require_initialized()
        candidates = [a for a in self.find_capable_agents(capabilities) if a != from_agent]
        if not candidates:
            raise NoCapableAgentsError(capabilities)

        async def ask(agent_id: str) -> Optional[MessageResponse]:
            return await self.send_and_wait_for_response(AgentMessage(
                type=MessageType.ASSISTANCE_REQUEST,
                from_agent=from_agent,
                to_agent=agent_id,
                subject=subject,
                content=content,
                priority=priority,
                conversation_id=conversation_id,
                task_id=task_id,
                requires_response=True,
                metadata={"requested_capabilities": list(capabilities),
                          "context": dict(context or {})},
            ), timeout)

        outcomes = await asyncio.gather(*(ask(a) for a in candidates), return_exceptions=True)
        responses: List[MessageResponse] = []
        for agent_id, outcome in zip(candidates, outcomes):
            if isinstance(outcome, MessageResponse):
                responses.append(outcome)
            elif isinstance(outcome, BaseException):
                _log.warning("Assistance request to %s failed: %s", agent_id, outcome)
        return responses

    # ── Queues ────────────────────────────────────────────────

    def get_pending_messages(self, agent_id: str) -> List[AgentMessage]:
        queue = self._queues.get(agent_id, [])
        now = datetime.now()
        live = [m for m in queue if not m.is_expired(now)]
        if len(live) != len(queue):
            _log.info("Dropped %d expired message(s) for %s", len(queue) - len(live), agent_id)
            self._queues[agent_id] = live
        return list(live)

    def mark_messages_processed(self, agent_id: str, message_ids: List[str]) -> None:
        done = set(message_ids)
        queue = self._queues.get(agent_id)
        if queue is not None:
            self._queues[agent_id] = [m for m in queue if m.id not in done]

    def _enqueue(self, agent_id: str, message: AgentMessage) -> None:
        queue = self._queues.setdefault(agent_id, [])
        if any(m.id == message.id for m in queue):
            return
        key = message.sort_key()
        index = len(queue)
        for i, queued in enumerate(queue):
            if queued.sort_key() > key:
                index = i
                break
        queue.insert(index, message)

    async def _broadcast(self, message: AgentMessage) -> None:
        for agent_id in self.registry.ids():
            if agent_id == message.from_agent:
                continue
            try:
                copy = dataclasses.replace(message, to_agent=agent_id)
                self._enqueue(agent_id, copy)
                await self._deliver(copy)
            except Exception as e:
                _log.warning("Broadcast %s to %s failed: %s", message.id, agent_id, e)

    async def _deliver(self, message: AgentMessage) -> None:
        """Hand ``message`` to its handler; it stays queued when delivery fails."""
        handler = self._handlers.get(message.to_agent, {}).get(message.type)
        if handler is None:
            _log.warning("No handler for message type %s on agent %s",
                         message.type.value, message.to_agent)
            return
        try:
            response = await handler(message)
            if message.requires_response and response is not None:
                await self.respond_to_message(message.id, response)
            self.mark_messages_processed(message.to_agent, [message.id])
        except Exception as e:
            _log.error("Failed to deliver message %s to %s: %s", message.id, message.to_agent, e)

    # ── Pending requests ──────────────────────────────────────

    def _expire(self, message_id: str, timeout: float) -> None:
        pending = self._pending.pop(message_id, None)
        if pending is None or pending.future.done():
            return
        _log.warning("No response to message %s after %gs", message_id, timeout)
        pending.future.set_exception(MessageTimeoutError(message_id, timeout))

    def _discard_pending(self, message_id: str) -> None:
        pending = self._pending.pop(message_id, None)
        if pending is not None:
            pending.timer.cancel()
            if not pending.future.done():
                pending.future.cancel()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ── Persistence ───────────────────────────────────────────

    async def _store_message(self, message: AgentMessage) -> None:
        if self.memory is None:
            return
        try:
            await self.memory.store_interaction(AgentInteraction(
                id=message.id,
                from_agent=message.from_agent,
                to_agent=None if message.to_agent == BROADCAST else message.to_agent,
                type=_INTERACTION_TYPES[message.type],
                content=message.content,
                timestamp=message.timestamp,
                task_id=message.task_id or "communication",
                metadata={
                    "subject": message.subject,
                    "priority": message.priority.value,
                    "requires_response": message.requires_response,
                    **message.metadata,
                },
            ))
        except Exception as e:
            _log.error("Failed to store message %s: %s", message.id, e)

    async def _store_response(self, message_id: str, response: MessageResponse) -> None:
        if self.memory is None:
            return
        try:
            await self.memory.store_interaction(AgentInteraction(
                id=f"response_{response.message_id}",
                from_agent=response.from_agent,
                type=InteractionType.RESPONSE,
                content=response.content,
                timestamp=response.timestamp,
                task_id="communication",
                metadata={"original_message_id": message_id,
                          "success": response.success, **response.metadata},
            ))
        except Exception as e:
            _log.error("Failed to store response to %s: %s", message_id, e)

    async def shutdown(self) -> None:
        """Reject every pending request and drop queues and handlers."""
        for pending in list(self._pending.values()):
            pending.timer.cancel()
            if not pending.future.done():
                pending.future.set_exception(
                    CommunicationError("Communication protocol shutting down"))
        self._pending.clear()
        self._queues.clear()
        self._handlers.clear()
        self._initialized = False
