"""
Communication Manager: How Agents in a Swarm Talk.

Owns every communication channel of every live session and routes
AgentMessages over them. Channels live in an explicit ChannelRegistry
partitioned by session id, so nothing here is process-global and each
session's routing table can be dropped in one step.

Concurrency model:
  - send_message() fans a message out to all recipients concurrently and
    collects one outcome per recipient (deliver-and-collect)
  - Async handlers are awaited under a bounded semaphore and a per-delivery
    timeout, so a slow worker never stalls delivery to the others
  - Recipients without a registered handler get the message queued for
    later retrieval ("offline"), which counts as delivered
  - A failing or timed-out handler is recorded in failed_deliveries; it
    never fails the whole send
"""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter, deque
from typing import Any, Callable, Coroutine, Optional

import structlog
from pydantic import BaseModel, Field

from swarmcore.config import SwarmConfig
from swarmcore.errors import CommunicationError
from swarmcore.models import (
    BROADCAST,
    SYSTEM_AGENT_ID,
    AgentMessage,
    CapabilityQueryPayload,
    CommunicationChannel,
    CoordinationPayload,
    DataSharePayload,
    MessageResponse,
    StatusUpdatePayload,
    SubTask,
    SwarmSession,
    TaskRequestPayload,
    now_ms,
)

logger = structlog.get_logger(__name__)

# Sync or async callables receiving one AgentMessage.
MessageHandler = Callable[[AgentMessage], Any] | Callable[[AgentMessage], Coroutine[Any, Any, Any]]

_DELIVERED = "delivered"
_QUEUED = "queued"
_FAILED = "failed"


class CommunicationStats(BaseModel):
    total_messages: int = 0
    channel_count: int = 0
    average_response_time_ms: float = 0.0
    messages_by_type: dict[str, int] = Field(default_factory=dict)


class ChannelRegistry:
    """Session-partitioned table of channels and channel-eligible members."""

    def __init__(self) -> None:
        self._channels: dict[str, dict[str, CommunicationChannel]] = {}
        self._members: dict[str, frozenset[str]] = {}

    def open_session(self, session_id: str, members: list[str]) -> None:
        self._channels.setdefault(session_id, {})
        self._members[session_id] = frozenset(members)

    def has_session(self, session_id: str) -> bool:
        return session_id in self._channels

    def members(self, session_id: str) -> frozenset[str]:
        return self._members.get(session_id, frozenset())

    def add(self, channel: CommunicationChannel) -> None:
        if channel.session_id not in self._channels:
            raise CommunicationError(f"Session {channel.session_id} has no open channels")
        outsiders = set(channel.participants) - self._members[channel.session_id]
        if outsiders:
            raise CommunicationError(
                f"Channel participants {sorted(outsiders)} are not active agents "
                f"of session {channel.session_id}"
            )
        table = self._channels[channel.session_id]
        if channel.type == "broadcast" and self.broadcast_channel(channel.session_id) is not None:
            raise CommunicationError(f"Session {channel.session_id} already has a broadcast channel")
        if channel.type == "direct":
            a, b = channel.participants
            if self.direct_channel(channel.session_id, a, b) is not None:
                raise CommunicationError(f"Direct channel {a}<->{b} already exists")
        table[channel.channel_id] = channel

    def channels(self, session_id: str) -> list[CommunicationChannel]:
        return list(self._channels.get(session_id, {}).values())

    def broadcast_channel(self, session_id: str) -> Optional[CommunicationChannel]:
        for channel in self._channels.get(session_id, {}).values():
            if channel.type == "broadcast":
                return channel
        return None

    def direct_channel(self, session_id: str, a: str, b: str) -> Optional[CommunicationChannel]:
        pair = {a, b}
        for channel in self._channels.get(session_id, {}).values():
            if channel.type == "direct" and set(channel.participants) == pair:
                return channel
        return None

    def drop_session(self, session_id: str) -> int:
        self._members.pop(session_id, None)
        return len(self._channels.pop(session_id, {}))


class CommunicationManager:
    """Channels, handlers, offline queues and delivery statistics."""

    def __init__(
        self,
        config: Optional[SwarmConfig] = None,
        registry: Optional[ChannelRegistry] = None,
    ) -> None:
        self._timeout = config.delivery_timeout if config else 5.0
        self._queue_limit = config.offline_queue_limit if config else 500
        self._semaphore = asyncio.Semaphore(config.max_concurrent_deliveries if config else 16)
        self._registry = registry or ChannelRegistry()
        self._handlers: dict[str, MessageHandler] = {}
        self._offline: dict[str, deque[AgentMessage]] = {}
        self._type_counts: dict[str, Counter] = {}
        # message_id -> (session_id, sent timestamp) for messages awaiting a reply
        self._awaiting_response: dict[str, tuple[str, int]] = {}
        self._response_times: dict[str, list[int]] = {}

    @property
    def registry(self) -> ChannelRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Channel lifecycle
    # ------------------------------------------------------------------

    async def initialize_swarm_communication(self, session: SwarmSession) -> list[CommunicationChannel]:
        """Open the broadcast channel and one direct channel per worker."""
        sid = session.session_id
        if self._registry.has_session(sid):
            return self._registry.channels(sid)

        self._registry.open_session(sid, session.active_agents)
        try:
            self._registry.add(CommunicationChannel(
                channel_id=f"broadcast_{sid}",
                session_id=sid,
                participants=list(session.active_agents),
                type="broadcast",
                topic="swarm_coordination",
            ))
            for agent_id in session.active_agents:
                if agent_id == session.coordinator_agent:
                    continue
                self._registry.add(CommunicationChannel(
                    channel_id=f"direct_{sid}_{session.coordinator_agent}_{agent_id}",
                    session_id=sid,
                    participants=[session.coordinator_agent, agent_id],
                    type="direct",
                    topic="task_coordination",
                ))
        except CommunicationError:
            self._registry.drop_session(sid)
            raise

        channels = self._registry.channels(sid)
        logger.info("communication.initialized", session_id=sid, channels=len(channels))
        return channels

    async def create_group_channel(
        self,
        session_id: str,
        participants: list[str],
        topic: str = "group_coordination",
    ) -> CommunicationChannel:
        channel = CommunicationChannel(
            channel_id=f"group_{uuid.uuid4().hex[:12]}",
            session_id=session_id,
            participants=list(dict.fromkeys(participants)),
            type="group",
            topic=topic,
        )
        self._registry.add(channel)
        logger.info(
            "communication.group_created",
            session_id=session_id,
            channel_id=channel.channel_id,
            participants=len(channel.participants),
        )
        return channel

    def get_session_channels(self, session_id: str) -> list[CommunicationChannel]:
        return self._registry.channels(session_id)

    def cleanup_session_channels(self, session_id: str) -> int:
        """Drop every channel and per-session counter of *session_id*."""
        removed = self._registry.drop_session(session_id)
        self._type_counts.pop(session_id, None)
        self._response_times.pop(session_id, None)
        for msg_id in [m for m, (sid, _) in self._awaiting_response.items() if sid == session_id]:
            del self._awaiting_response[msg_id]
        purged = self._purge_queued(session_id, message_type="task_request")
        logger.info(
            "communication.cleaned_up",
            session_id=session_id,
            channels=removed,
            purged_assignments=purged,
        )
        return removed

    # ------------------------------------------------------------------
    # Handlers and offline queues
    # ------------------------------------------------------------------

    def register_message_handler(self, agent_id: str, handler: MessageHandler) -> None:
        """Attach the live delivery path for ``agent_id``.

        Sync handlers are called inline on the event loop, so they may
        schedule tasks but must not block: ``delivery_timeout`` only bounds
        the awaitable a handler returns. Slow work belongs in a coroutine
        handler or a task the handler spawns.
        """
        self._handlers[agent_id] = handler
        logger.debug("communication.handler_registered", agent_id=agent_id)

    def unregister_message_handler(self, agent_id: str) -> None:
        if self._handlers.pop(agent_id, None) is not None:
            logger.debug("communication.handler_unregistered", agent_id=agent_id)

    def is_agent_reachable(self, agent_id: str) -> bool:
        return agent_id in self._handlers

    def get_message_queue_size(self, agent_id: str) -> int:
        return len(self._offline.get(agent_id, ()))

    def drain_queued_messages(self, agent_id: str, session_id: Optional[str] = None) -> list[AgentMessage]:
        """Remove and return messages queued for an offline agent."""
        queue = self._offline.get(agent_id)
        if not queue:
            return []
        taken = [m for m in queue if session_id is None or m.session_id == session_id]
        kept = [m for m in queue if not (session_id is None or m.session_id == session_id)]
        queue.clear()
        queue.extend(kept)
        return taken

    async def flush_offline_queue(self, agent_id: str) -> int:
        """Hand queued messages to the agent's now-registered handler."""
        if agent_id not in self._handlers:
            return 0
        delivered = 0
        for message in self.drain_queued_messages(agent_id):
            if await self._deliver(message, agent_id) == _DELIVERED:
                delivered += 1
        return delivered

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(self, message: AgentMessage) -> MessageResponse:
        """Deliver *message* and report per-recipient outcomes."""
        sid = message.session_id
        if not self._registry.has_session(sid):
            raise CommunicationError(f"No channels open for session {sid}")

        members = self._registry.members(sid)
        if message.is_broadcast:
            channel = self._registry.broadcast_channel(sid)
            recipients = [p for p in channel.participants if p != message.from_agent_id] if channel else []
        else:
            channel = self._registry.direct_channel(sid, message.from_agent_id, message.to_agent_id)
            recipients = [message.to_agent_id]

        routable = [r for r in recipients if r in members or r == SYSTEM_AGENT_ID]
        unroutable = [r for r in recipients if r not in routable]
        for agent_id in unroutable:
            logger.warning("communication.unknown_recipient", session_id=sid, agent_id=agent_id)

        self._track(message)
        outcomes = await asyncio.gather(*(self._deliver(message, r) for r in routable))
        delivered = [r for r, o in zip(routable, outcomes) if o != _FAILED]
        queued = [r for r, o in zip(routable, outcomes) if o == _QUEUED]
        failed = [r for r, o in zip(routable, outcomes) if o == _FAILED] + unroutable

        if delivered and channel is not None:
            channel.last_activity = now_ms()
            channel.message_count += 1

        response = MessageResponse(
            success=not failed,
            message_id=message.id,
            delivered_to=delivered,
            failed_deliveries=failed,
            queued_for=queued,
        )
        logger.debug(
            "communication.sent",
            session_id=sid,
            message_type=message.message_type,
            sender=message.from_agent_id,
            recipient=message.to_agent_id,
            delivered=len(delivered),
            failed=len(failed),
        )
        return response

    @staticmethod
    def build_task_assignment(
        session_id: str,
        agent_id: str,
        subtask: SubTask,
        attempt: int = 1,
    ) -> AgentMessage:
        payload = TaskRequestPayload(
            subtask=subtask.model_copy(deep=True),
            deadline=now_ms() + subtask.estimated_duration * 60_000,
            attempt=attempt,
        )
        return AgentMessage.create(
            payload,
            from_agent_id=SYSTEM_AGENT_ID,
            to_agent_id=agent_id,
            session_id=session_id,
            priority="high",
            requires_response=True,
        )

    async def send_task_assignment(
        self,
        session_id: str,
        agent_id: str,
        subtask: SubTask,
        attempt: int = 1,
    ) -> MessageResponse:
        message = self.build_task_assignment(session_id, agent_id, subtask, attempt)
        return await self.send_message(message)

    async def send_coordination_message(
        self,
        session_id: str,
        from_agent_id: str,
        instruction: str,
        data: Optional[dict[str, Any]] = None,
    ) -> MessageResponse:
        message = AgentMessage.create(
            CoordinationPayload(instruction=instruction, data=data or {}),
            from_agent_id=from_agent_id,
            to_agent_id=BROADCAST,
            session_id=session_id,
        )
        return await self.send_message(message)

    async def send_status_update(
        self,
        session_id: str,
        from_agent_id: str,
        status: str,
        details: Optional[dict[str, Any]] = None,
        subtask_id: Optional[str] = None,
    ) -> MessageResponse:
        message = AgentMessage.create(
            StatusUpdatePayload(status=status, details=details or {}, subtask_id=subtask_id),
            from_agent_id=from_agent_id,
            to_agent_id=BROADCAST,
            session_id=session_id,
            priority="low",
        )
        return await self.send_message(message)

    async def request_capability_info(
        self,
        session_id: str,
        from_agent_id: str,
        target_agent_ids: list[str],
    ) -> list[MessageResponse]:
        responses = []
        for target in target_agent_ids:
            message = AgentMessage.create(
                CapabilityQueryPayload(),
                from_agent_id=from_agent_id,
                to_agent_id=target,
                session_id=session_id,
                requires_response=True,
            )
            responses.append(await self.send_message(message))
        return responses

    async def share_data(
        self,
        session_id: str,
        from_agent_id: str,
        to_agent_id: str,
        data: Any,
        data_type: str,
    ) -> MessageResponse:
        message = AgentMessage.create(
            DataSharePayload(data_type=data_type, data=data, size=len(repr(data))),
            from_agent_id=from_agent_id,
            to_agent_id=to_agent_id,
            session_id=session_id,
        )
        return await self.send_message(message)

    async def notify_swarm_dissolution(self, session: SwarmSession) -> MessageResponse:
        """Broadcast final results and metrics, then tear down all channels."""
        sid = session.session_id
        message = AgentMessage.create(
            StatusUpdatePayload(
                status="swarm_dissolved",
                details={"session_id": sid, "final_status": session.status},
                final_results=list(session.results),
                performance_metrics=session.performance_metrics,
            ),
            from_agent_id=SYSTEM_AGENT_ID,
            to_agent_id=BROADCAST,
            session_id=sid,
            priority="high",
        )
        if self._registry.has_session(sid):
            response = await self.send_message(message)
        else:
            response = MessageResponse(success=True, message_id=message.id)
        self.cleanup_session_channels(sid)
        return response

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_session_communication_stats(self, session_id: str) -> CommunicationStats:
        channels = self._registry.channels(session_id)
        samples = self._response_times.get(session_id, [])
        return CommunicationStats(
            total_messages=sum(c.message_count for c in channels),
            channel_count=len(channels),
            average_response_time_ms=(sum(samples) / len(samples)) if samples else 0.0,
            messages_by_type=dict(self._type_counts.get(session_id, Counter())),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _deliver(self, message: AgentMessage, agent_id: str) -> str:
        handler = self._handlers.get(agent_id)
        if handler is None:
            self._enqueue(message, agent_id)
            return _QUEUED

        async with self._semaphore:
            try:
                result = handler(message)
                if asyncio.iscoroutine(result) or asyncio.isfuture(result):
                    await asyncio.wait_for(result, timeout=self._timeout)
                return _DELIVERED
            except asyncio.TimeoutError:
                logger.warning(
                    "communication.delivery_timeout",
                    agent_id=agent_id,
                    message_id=message.id,
                    timeout=self._timeout,
                )
            except Exception:
                logger.error(
                    "communication.delivery_failed",
                    agent_id=agent_id,
                    message_id=message.id,
                    exc_info=True,
                )
        return _FAILED

    def _enqueue(self, message: AgentMessage, agent_id: str) -> None:
        queue = self._offline.setdefault(agent_id, deque(maxlen=self._queue_limit))
        if len(queue) == queue.maxlen:
            logger.warning("communication.offline_queue_full", agent_id=agent_id, dropped=queue[0].id)
        queue.append(message)
        logger.debug("communication.queued", agent_id=agent_id, message_type=message.message_type)

    def _purge_queued(self, session_id: str, message_type: str) -> int:
        purged = 0
        for queue in self._offline.values():
            kept = [m for m in queue if not (m.session_id == session_id and m.message_type == message_type)]
            purged += len(queue) - len(kept)
            queue.clear()
            queue.extend(kept)
        return purged

    def _track(self, message: AgentMessage) -> None:
        sid = message.session_id
        self._type_counts.setdefault(sid, Counter())[message.message_type] += 1
        if message.requires_response:
            self._awaiting_response[message.id] = (sid, message.timestamp)
        if message.response_to_message_id:
            original = self._awaiting_response.pop(message.response_to_message_id, None)
            if original is not None and original[0] == sid:
                self._response_times.setdefault(sid, []).append(
                    max(0, message.timestamp - original[1])
                )
