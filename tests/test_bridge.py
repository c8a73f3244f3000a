"""Tests for the EventBridge action channel and middleware chain."""

import asyncio

import pytest

from carbonflow.actions import ActionMessage
from carbonflow.bridge import CARBONFLOW_MIDDLEWARE, EventBridge, generate_trace_id
from carbonflow.config import CarbonFlowConfig
from carbonflow.models import ActionOutcome

from conftest import action


class SpyProcessor:
    """Records the commands it receives and applies nothing."""

    def __init__(self):
        self.commands = []

    def handle_action(self, command):
        self.commands.append(command)
        return ActionOutcome(operation=command.operation.value, applied=True,
                             node_id=command.node_id)


@pytest.fixture
def bridge(processor, carbonflow_config):
    return EventBridge(processor, config=carbonflow_config)


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, bridge):
        assert await bridge.initialize() is True
        assert await bridge.initialize() is False

        assert [m.name for m in bridge.middleware] == [CARBONFLOW_MIDDLEWARE]
        await bridge.close()

    @pytest.mark.asyncio
    async def test_close_discards_and_unregisters(self, bridge, store):
        bridge.dispatch(action("create", {"id": "a", "stage": "usage"}))
        await bridge.close()

        assert bridge.pending == 0
        assert bridge.middleware == []
        assert not bridge.initialized
        assert len(store) == 0

        assert await bridge.initialize() is True
        await bridge.close()

    def test_trace_id_format(self):
        trace_id = generate_trace_id()
        prefix, millis, suffix = trace_id.split("-")
        assert prefix == "cf"
        assert millis.isdigit()
        assert len(suffix) == 8


# =============================================================================
# Channel
# =============================================================================


class TestChannel:
    """Tests for FIFO delivery, backpressure and decode drops."""

    @pytest.mark.asyncio
    async def test_actions_apply_in_dispatch_order(self, bridge, store):
        await bridge.initialize()

        first = bridge.dispatch(action("create", {"id": "a", "stage": "raw_material"}))
        bridge.dispatch(action("create", {"id": "b", "stage": "manufacturing"}))
        last = bridge.dispatch(action("connect", {"source": "a", "target": "b"}))
        assert len(store) == 0

        await bridge.join()

        assert [n.id for n in store.nodes] == ["a", "b"]
        assert store.successors("a") == ["b"]
        assert [ack.trace_id for ack in bridge.acks][0] == first
        assert bridge.acks[-1].trace_id == last
        assert all(ack.success for ack in bridge.acks)
        await bridge.close()

    @pytest.mark.asyncio
    async def test_full_channel_drops_with_failed_ack(self, processor, store):
        config = CarbonFlowConfig(channel_max_size=2)
        bridge = EventBridge(processor, config=config)

        bridge.dispatch(action("create", {"id": "a", "stage": "usage"}))
        bridge.dispatch(action("create", {"id": "b", "stage": "usage"}))
        dropped = bridge.dispatch(action("create", {"id": "c", "stage": "usage"}, node_id="c"))

        [ack] = bridge.acks
        assert ack.trace_id == dropped
        assert ack.success is False
        assert ack.reason == "action channel full"
        assert ack.node_id == "c"
        assert ack.operation == "create"

        await bridge.initialize()
        await bridge.join()
        assert [n.id for n in store.nodes] == ["a", "b"]
        assert bridge.get_statistics()["dispatched"] == 2
        await bridge.close()

    @pytest.mark.asyncio
    async def test_undecodable_action_never_reaches_processor(self, carbonflow_config):
        spy = SpyProcessor()
        bridge = EventBridge(spy, config=carbonflow_config)
        await bridge.initialize()

        bridge.dispatch({"type": "carbonflow", "operation": "teleport", "nodeId": "x"})
        bridge.dispatch(action("create", {"stage": "recycling"}))
        bridge.dispatch(action("layout"))
        await bridge.join()

        assert [c.operation.value for c in spy.commands] == ["layout"]
        failed = [ack for ack in bridge.acks if not ack.success]
        assert len(failed) == 2
        assert failed[0].operation == "teleport"
        assert failed[0].node_id == "x"
        assert "unknown operation" in failed[0].reason
        await bridge.close()

    @pytest.mark.asyncio
    async def test_rejected_action_acks_failure(self, bridge):
        await bridge.initialize()
        trace_id = bridge.dispatch(action("update", {"id": "ghost", "quantity": 1}))
        await bridge.join()

        ack = bridge.acks[-1]
        assert ack.trace_id == trace_id
        assert ack.success is False
        assert ack.node_id == "ghost"
        assert ack.reason == "node 'ghost' not found"
        await bridge.close()

    @pytest.mark.asyncio
    async def test_action_message_is_stamped(self, carbonflow_config):
        spy = SpyProcessor()
        bridge = EventBridge(spy, config=carbonflow_config)
        await bridge.initialize()

        trace_id = bridge.dispatch(ActionMessage(operation="layout"))
        await bridge.join()

        assert spy.commands[0].trace_id == trace_id
        await bridge.close()


# =============================================================================
# Middleware
# =============================================================================


class TestExecute:
    """Tests for the interception chain."""

    @pytest.mark.asyncio
    async def test_carbonflow_actions_are_diverted(self, processor, store, carbonflow_config):
        seen = []
        bridge = EventBridge(processor, config=carbonflow_config, default_handler=seen.append)
        await bridge.initialize()

        trace_id = await bridge.execute(action("create", {"id": "a", "stage": "usage"}))
        await bridge.execute({"type": "chat", "text": "hello"})
        await bridge.join()

        assert trace_id.startswith("cf-")
        assert seen == [{"type": "chat", "text": "hello"}]
        assert store.has_node("a")
        await bridge.close()

    @pytest.mark.asyncio
    async def test_no_default_handler(self, bridge):
        assert await bridge.execute({"type": "chat"}) is None

    @pytest.mark.asyncio
    async def test_async_handlers_are_awaited(self, processor, carbonflow_config):
        async def default(action):
            await asyncio.sleep(0)
            return "handled"

        bridge = EventBridge(processor, config=carbonflow_config, default_handler=default)
        assert await bridge.execute({"type": "chat"}) == "handled"

    @pytest.mark.asyncio
    async def test_earlier_middleware_wins(self, processor, carbonflow_config):
        claimed = []
        bridge = EventBridge(processor, config=carbonflow_config)
        bridge.register(lambda a: a.get("operation") == "layout", claimed.append, name="audit")
        await bridge.initialize()

        await bridge.execute(action("layout"))
        await bridge.join()

        assert len(claimed) == 1
        assert bridge.acks == []
        assert [m.name for m in bridge.middleware] == ["audit", CARBONFLOW_MIDDLEWARE]
        await bridge.close()


class TestAckListeners:
    @pytest.mark.asyncio
    async def test_subscribe_and_unsubscribe(self, bridge):
        received = []
        unsubscribe = bridge.subscribe_acks(received.append)
        await bridge.initialize()

        bridge.dispatch(action("layout"))
        await bridge.join()
        unsubscribe()
        bridge.dispatch(action("layout"))
        await bridge.join()

        assert len(received) == 1
        assert len(bridge.acks) == 2
        await bridge.close()

    @pytest.mark.asyncio
    async def test_ack_history_is_bounded(self, processor):
        bridge = EventBridge(processor, config=CarbonFlowConfig(ack_history_size=2))
        await bridge.initialize()
        for _ in range(3):
            bridge.dispatch(action("layout"))
        await bridge.join()

        assert len(bridge.acks) == 2
        await bridge.close()

    @pytest.mark.asyncio
    async def test_async_listener_tasks_are_tracked(self, bridge, caplog):
        delivered = asyncio.Event()

        async def broken(ack):
            delivered.set()
            raise RuntimeError("listener bug")

        bridge.subscribe_acks(broken)
        await bridge.initialize()
        bridge.dispatch(action("layout"))
        await bridge.join()
        await delivered.wait()
        for _ in range(3):
            await asyncio.sleep(0)

        assert bridge.get_statistics()["ack_listener_tasks"] == 0
        assert "Async ack listener failed" in caplog.text
        await bridge.close()
