"""Tests for the inter-agent communication protocol."""

import asyncio
from datetime import datetime, timedelta

import pytest

from taskcrew.crew.memory import ContextStore, CrewMemory
from taskcrew.crew.messages import (
    BROADCAST,
    AgentMessage,
    CommunicationProtocol,
    MessagePriority,
    MessageResponse,
    MessageType,
)
from taskcrew.crew.registry import AgentCapability
from taskcrew.errors import CommunicationError, MessageTimeoutError, NoCapableAgentsError


def _msg(to="research", sender="supervisor", type=MessageType.REQUEST, **kwargs):
    return AgentMessage(type=type, from_agent=sender, to_agent=to, **kwargs)


def _protocol(registry, memory=None, **kwargs):
    protocol = CommunicationProtocol(registry, memory=memory or CrewMemory(), **kwargs)
    asyncio.run(protocol.initialize())
    return protocol


def _answering(agent_id, content="ok"):
    async def handler(message):
        return MessageResponse(message_id=message.id, from_agent=agent_id, content=content)
    return handler


class BrokenStore(ContextStore):
    async def get(self, key, default=None):
        raise OSError("disk gone")

    async def set(self, key, value):
        raise OSError("disk gone")

    async def delete(self, key):
        raise OSError("disk gone")

    async def keys(self, prefix=""):
        raise OSError("disk gone")


class TestInitialization:

    def test_send_before_initialize(self, registry):
        protocol = CommunicationProtocol(registry)
        with pytest.raises(CommunicationError, match="not initialized"):
            asyncio.run(protocol.send_message(_msg()))

    def test_initialize_creates_queues(self, registry):
        protocol = _protocol(registry)
        assert protocol.is_initialized
        assert protocol.get_pending_messages("librarian") == []


class TestQueues:

    def test_priority_order_with_stable_ties(self, registry):
        protocol = _protocol(registry)
        base = datetime.now()

        async def send_all():
            for i, prio in enumerate([MessagePriority.LOW, MessagePriority.URGENT,
                                      MessagePriority.MEDIUM, MessagePriority.URGENT]):
                await protocol.send_message(_msg(subject=f"m{i}", priority=prio,
                                                 timestamp=base + timedelta(seconds=i)))

        asyncio.run(send_all())
        subjects = [m.subject for m in protocol.get_pending_messages("research")]
        assert subjects == ["m1", "m3", "m2", "m0"]

    def test_duplicate_ids_are_not_requeued(self, registry):
        protocol = _protocol(registry)
        message = _msg()
        asyncio.run(protocol.send_message(message))
        asyncio.run(protocol.send_message(message))
        assert len(protocol.get_pending_messages("research")) == 1

    def test_expired_messages_are_pruned(self, registry):
        protocol = _protocol(registry)
        past = datetime.now() - timedelta(seconds=1)
        asyncio.run(protocol.send_message(_msg(subject="old", expires_at=past)))
        asyncio.run(protocol.send_message(_msg(subject="fresh")))
        assert [m.subject for m in protocol.get_pending_messages("research")] == ["fresh"]

    def test_mark_processed(self, registry):
        protocol = _protocol(registry)
        message_id = asyncio.run(protocol.send_message(_msg()))
        protocol.mark_messages_processed("research", [message_id])
        assert protocol.get_pending_messages("research") == []

    def test_handled_message_leaves_queue(self, registry):
        protocol = _protocol(registry)
        seen = []

        async def handler(message):
            seen.append(message.id)

        protocol.register_message_handler("research", MessageType.NOTIFICATION, handler)
        message_id = asyncio.run(protocol.send_message(_msg(type=MessageType.NOTIFICATION)))
        assert seen == [message_id]
        assert protocol.get_pending_messages("research") == []

    def test_handler_failure_keeps_message_queued(self, registry):
        protocol = _protocol(registry)

        async def handler(message):
            raise RuntimeError("handler crashed")

        protocol.register_message_handler("research", MessageType.REQUEST, handler)
        asyncio.run(protocol.send_message(_msg()))
        assert len(protocol.get_pending_messages("research")) == 1


class TestBroadcast:

    def test_every_worker_but_sender_gets_a_copy(self, registry):
        protocol = _protocol(registry)
        asyncio.run(protocol.send_message(_msg(to=BROADCAST, type=MessageType.NOTIFICATION)))
        assert protocol.get_pending_messages("supervisor") == []
        for agent_id in ("research", "librarian"):
            [copy] = protocol.get_pending_messages(agent_id)
            assert copy.to_agent == agent_id

    def test_one_failing_recipient_does_not_block_others(self, registry):
        protocol = _protocol(registry)
        received = []

        async def crash(message):
            raise RuntimeError("research is broken")

        async def record(message):
            received.append(message.to_agent)

        protocol.register_message_handler("research", MessageType.NOTIFICATION, crash)
        protocol.register_message_handler("librarian", MessageType.NOTIFICATION, record)
        asyncio.run(protocol.send_message(_msg(to=BROADCAST, type=MessageType.NOTIFICATION)))
        assert received == ["librarian"]


class TestRequestResponse:

    def test_response_from_handler(self, registry):
        protocol = _protocol(registry)
        protocol.register_message_handler("research", MessageType.REQUEST, _answering("research"))
        response = asyncio.run(protocol.send_and_wait_for_response(
            _msg(requires_response=True), timeout=1.0))
        assert response.content == "ok"
        assert protocol.pending_count == 0

    def test_no_response_required_returns_none(self, registry):
        protocol = _protocol(registry)
        assert asyncio.run(protocol.send_and_wait_for_response(_msg())) is None

    def test_timeout(self, registry):
        protocol = _protocol(registry)
        with pytest.raises(MessageTimeoutError):
            asyncio.run(protocol.send_and_wait_for_response(
                _msg(requires_response=True), timeout=0.02))
        assert protocol.pending_count == 0

    def test_late_response_after_timeout_is_ignored(self, registry):
        protocol = _protocol(registry)
        message = _msg(requires_response=True)

        async def scenario():
            with pytest.raises(MessageTimeoutError):
                await protocol.send_and_wait_for_response(message, timeout=0.01)
            await protocol.respond_to_message(
                message.id, MessageResponse(message.id, "research", "too late"))

        asyncio.run(scenario())
        assert protocol.pending_count == 0

    def test_caller_giving_up_clears_pending_request(self, registry):
        protocol = _protocol(registry, default_timeout=30.0)

        async def scenario():
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(
                    protocol.send_and_wait_for_response(_msg(requires_response=True)), 0.01)
            return protocol.pending_count

        assert asyncio.run(scenario()) == 0

    def test_response_from_outside_the_handler(self, registry):
        protocol = _protocol(registry)
        message = _msg(requires_response=True)

        async def scenario():
            waiter = asyncio.ensure_future(
                protocol.send_and_wait_for_response(message, timeout=1.0))
            await asyncio.sleep(0.01)
            await protocol.respond_to_message(
                message.id, MessageResponse(message.id, "research", "later"))
            return await waiter

        assert asyncio.run(scenario()).content == "later"

    def test_shutdown_rejects_pending(self, registry):
        protocol = _protocol(registry)

        async def scenario():
            waiter = asyncio.ensure_future(protocol.send_and_wait_for_response(
                _msg(requires_response=True), timeout=5.0))
            await asyncio.sleep(0.01)
            await protocol.shutdown()
            return await waiter

        with pytest.raises(CommunicationError, match="shutting down"):
            asyncio.run(scenario())
        assert not protocol.is_initialized
        assert "research" in protocol.registry


class TestAssistance:

    def test_collects_responses_from_capable_workers(self, registry):
        protocol = _protocol(registry)
        protocol.register_message_handler(
            "research", MessageType.ASSISTANCE_REQUEST, _answering("research", "from research"))
        protocol.register_message_handler(
            "librarian", MessageType.ASSISTANCE_REQUEST, _answering("librarian", "from librarian"))
        responses = asyncio.run(protocol.request_assistance(
            "supervisor", ["search"], "help me find papers", timeout=1.0))
        assert sorted(r.content for r in responses) == ["from librarian", "from research"]

    def test_silent_workers_are_skipped(self, registry):
        protocol = _protocol(registry)
        protocol.register_message_handler(
            "librarian", MessageType.ASSISTANCE_REQUEST, _answering("librarian"))
        responses = asyncio.run(protocol.request_assistance(
            "supervisor", ["search"], "help", timeout=0.02))
        assert [r.from_agent for r in responses] == ["librarian"]

    def test_sender_is_excluded(self, registry):
        protocol = _protocol(registry)
        with pytest.raises(NoCapableAgentsError):
            asyncio.run(protocol.request_assistance("supervisor", ["task_planning"], "help"))

    def test_no_capable_workers(self, registry):
        protocol = _protocol(registry)
        with pytest.raises(NoCapableAgentsError, match="translate"):
            asyncio.run(protocol.request_assistance("supervisor", ["translate"], "help"))


class TestRegistrationAndPersistence:

    def test_register_agent_shares_registry(self, registry):
        protocol = _protocol(registry)
        protocol.register_agent(AgentCapability("translator", ["translate"]))
        assert "translator" in registry
        assert protocol.find_capable_agents(["translate"]) == ["translator"]

    def test_update_status(self, registry):
        protocol = _protocol(registry)
        protocol.update_agent_status("librarian", is_available=False)
        assert protocol.find_capable_agents(["search"]) == ["research"]
        assert protocol.get_agent_capabilities("librarian")[0].is_available is False
        assert protocol.get_agent_capabilities("ghost") == []

    def test_messages_are_stored(self, registry):
        memory = CrewMemory()
        protocol = _protocol(registry, memory=memory)
        asyncio.run(protocol.send_message(_msg(task_id="t1", content="hello")))
        [stored] = asyncio.run(memory.get_interactions("t1"))
        assert stored.content == "hello"
        assert stored.to_agent == "research"

    def test_storage_failure_does_not_block_delivery(self, registry):
        protocol = _protocol(registry, memory=CrewMemory(BrokenStore()))
        protocol.register_message_handler("research", MessageType.REQUEST, _answering("research"))
        response = asyncio.run(protocol.send_and_wait_for_response(
            _msg(requires_response=True), timeout=1.0))
        assert response.content == "ok"
