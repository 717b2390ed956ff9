"""Tests for Connection: registry, calls, dispatch and failure handling.

These tests verify:
1. CREATE/DISPOSE frames maintain the object tree
2. Disposal is bottom-up and notifies each proxy while it is still resolvable
3. Responses complete the matching call, errors are typed
4. Transport close fails pending calls and disposes everything
5. Protocol desync closes the connection with ProtocolError
"""

import asyncio
import json
import logging

import pytest

from conftest import FakeDriver, QueueTransport, build_page_tree, create_connection, settle

from browserwire.channel_owner import ChannelOwner
from browserwire.config import ConnectionConfig
from browserwire.connection import Connection
from browserwire.error import ProtocolError, TargetClosedError, TimeoutError
from browserwire.listeners import EventType
from browserwire.objects import Browser, BrowserContext, Frame, Page
from browserwire.wire import ControlOp, WireControl


@pytest.mark.asyncio
class TestRegistry:
    """Tests for creating and disposing proxies."""

    async def test_create_builds_tree(self) -> None:
        connection, driver = create_connection()
        tree = await build_page_tree(driver, connection)

        assert isinstance(tree["browser"], Browser)
        assert isinstance(tree["context"], BrowserContext)
        assert isinstance(tree["page"], Page)
        assert tree["page"].parent is tree["context"]
        assert tree["context"].parent is tree["browser"]
        assert tree["browser"].parent is connection.root
        assert "page@1" in tree["context"].children
        assert connection.get_stats() == {"objects": 5, "pending_calls": 0}

        await connection.close()

    async def test_unknown_type_falls_back_to_channel_owner(self) -> None:
        connection, driver = create_connection()
        driver.create("thing@1", "Tracing")
        obj = await connection.wait_for_object("thing@1", timeout=1000)
        assert type(obj) is ChannelOwner
        assert obj.type == "Tracing"
        await connection.close()

    async def test_register_type(self) -> None:
        class Tracing(ChannelOwner):
            pass

        connection, driver = create_connection()
        connection.register_type("Tracing", Tracing)
        driver.create("tracing@1", "Tracing")
        obj = await connection.wait_for_object("tracing@1", timeout=1000)
        assert isinstance(obj, Tracing)
        await connection.close()

    async def test_create_duplicate_guid(self) -> None:
        connection, _ = create_connection()
        connection.create("browser@1", "Browser")
        with pytest.raises(ProtocolError, match="already exists"):
            connection.create("browser@1", "Browser")
        await connection.close()

    async def test_create_with_unknown_parent(self) -> None:
        connection, _ = create_connection()
        with pytest.raises(ProtocolError, match="Cannot find parent"):
            connection.create("page@1", "Page", "context@404")
        assert "page@1" not in connection
        await connection.close()

    async def test_disposed_guid_is_never_revived(self) -> None:
        connection, _ = create_connection()
        connection.create("browser@1", "Browser")
        connection.dispose("browser@1")
        with pytest.raises(ProtocolError):
            connection.create("browser@1", "Browser")
        await connection.close()

    async def test_dispose_unknown_guid_is_noop(self) -> None:
        connection, _ = create_connection()
        connection.dispose("nothing@1")
        connection.dispose("nothing@1")
        assert not connection.is_closed
        await connection.close()

    async def test_get_object_unknown(self) -> None:
        connection, _ = create_connection()
        with pytest.raises(ProtocolError, match="doesn't exist"):
            connection.get_object("page@404")
        assert connection.find_object("page@404") is None
        await connection.close()

    async def test_dispose_cascades_bottom_up(self) -> None:
        """Disposing a parent disposes all descendants, children first."""
        connection, driver = create_connection()
        tree = await build_page_tree(driver, connection)
        order: list[str] = []
        resolvable: list[bool] = []

        for name in ("context", "frame", "page"):
            obj = tree[name]

            def on_disposed(reason: object, obj: ChannelOwner = obj) -> None:
                order.append(obj.guid)
                resolvable.append(obj.guid in connection)

            obj.on(EventType.DISPOSED, on_disposed)

        driver.dispose("context@1")
        await settle(connection)

        assert set(order) == {"context@1", "frame@1", "page@1"}
        assert order[-1] == "context@1"
        assert all(resolvable)
        for name in ("context", "frame", "page"):
            assert tree[name].disposed
            assert tree[name].guid not in connection
        assert "context@1" not in tree["browser"].children
        assert tree["browser"].contexts() == []
        assert not tree["browser"].disposed
        await connection.close()

    async def test_disposal_reason_is_target_closed(self) -> None:
        connection, driver = create_connection()
        tree = await build_page_tree(driver, connection)
        reasons: list[object] = []
        tree["page"].on(EventType.DISPOSED, reasons.append)

        tree["page"].dispose()
        assert len(reasons) == 1
        assert isinstance(reasons[0], TargetClosedError)
        assert not tree["page"].listeners.has_listeners(EventType.DISPOSED)
        await connection.close()

    async def test_method_form_create_and_dispose(self) -> None:
        connection, driver = create_connection()
        driver.push({
            "guid": "",
            "method": "__create__",
            "params": {"type": "Browser", "guid": "browser@1", "initializer": {}},
        })
        browser = await connection.wait_for_object("browser@1", timeout=1000)
        assert browser.parent is connection.root

        driver.push({"guid": "browser@1", "method": "__dispose__"})
        await settle(connection)
        assert browser.disposed
        await connection.close()


@pytest.mark.asyncio
class TestCalls:
    """Tests for request/response correlation."""

    async def test_call_returns_result(self) -> None:
        connection, driver = create_connection()
        connection.create("browser@1", "Browser")

        task = asyncio.create_task(connection.call("browser@1", "version", {"full": True}))
        request = await driver.next_request()
        assert request == {
            "id": 1,
            "guid": "browser@1",
            "method": "version",
            "params": {"full": True},
        }
        assert connection.get_stats()["pending_calls"] == 1

        driver.respond(request["id"], {"value": "1.0"})
        assert await asyncio.wait_for(task, timeout=1.0) == {"value": "1.0"}
        assert connection.get_stats()["pending_calls"] == 0
        await connection.close()

    async def test_ids_are_fresh_and_requests_leave_in_order(self) -> None:
        connection, driver = create_connection()
        connection.create("browser@1", "Browser")

        first = connection.send_request("browser@1", "a")
        second = connection.send_request("browser@1", "b")
        r1 = await driver.next_request()
        r2 = await driver.next_request()
        assert (r1["method"], r2["method"]) == ("a", "b")
        assert r1["id"] != r2["id"]

        # Responses may arrive out of order
        driver.respond(r2["id"], "B")
        driver.respond(r1["id"], "A")
        assert await asyncio.wait_for(second.wait(), timeout=1.0) == "B"
        assert await asyncio.wait_for(first.wait(), timeout=1.0) == "A"
        await connection.close()

    async def test_error_response_is_protocol_error(self) -> None:
        connection, driver = create_connection()
        connection.create("browser@1", "Browser")

        task = asyncio.create_task(connection.call("browser@1", "newContext"))
        request = await driver.next_request()
        driver.fail(request["id"], "Browser has been closed")

        with pytest.raises(ProtocolError, match="Browser has been closed"):
            await asyncio.wait_for(task, timeout=1.0)
        await connection.close()

    async def test_remote_timeout_is_timeout_error(self) -> None:
        connection, driver = create_connection()
        connection.create("browser@1", "Browser")

        task = asyncio.create_task(connection.call("browser@1", "waitForSelector"))
        request = await driver.next_request()
        driver.fail(request["id"], "Timeout 500ms exceeded.", name="TimeoutError")

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(task, timeout=1.0)
        await connection.close()

    async def test_unknown_response_id_is_ignored(self, caplog: pytest.LogCaptureFixture) -> None:
        connection, driver = create_connection()
        with caplog.at_level(logging.WARNING, logger="browserwire.connection"):
            driver.respond(99, "stray")
            await settle(connection)
        assert "Cannot find command to respond: 99" in caplog.text
        assert not connection.is_closed
        await connection.close()

    async def test_event_for_unknown_guid_is_dropped(self, caplog: pytest.LogCaptureFixture) -> None:
        connection, driver = create_connection()
        with caplog.at_level(logging.WARNING, logger="browserwire.connection"):
            driver.event("page@404", "close")
            await settle(connection)
        assert "page@404" in caplog.text
        assert not connection.is_closed
        await connection.close()

    async def test_pending_call_fails_when_target_disposed(self) -> None:
        connection, driver = create_connection()
        tree = await build_page_tree(driver, connection)

        task = asyncio.create_task(tree["page"].send("title"))
        await driver.next_request()
        driver.dispose("page@1")

        with pytest.raises(TargetClosedError):
            await asyncio.wait_for(task, timeout=1.0)
        assert not connection.is_closed
        await connection.close()

    async def test_send_to_disposed_target(self) -> None:
        connection, _ = create_connection()
        connection.create("browser@1", "Browser")
        connection.dispose("browser@1")
        with pytest.raises(TargetClosedError):
            connection.send_request("browser@1", "close")
        await connection.close()

    async def test_log_messages(self, caplog: pytest.LogCaptureFixture) -> None:
        transport = QueueTransport()
        connection = Connection(
            transport,
            ConnectionConfig(log_messages=True),
        )
        connection.start()
        connection.create("browser@1", "Browser")

        with caplog.at_level(logging.DEBUG, logger="browserwire.connection"):
            waiter = connection.send_request("browser@1", "version")
            request = json.loads(await asyncio.wait_for(transport.outbox.get(), timeout=1.0))
            transport.feed(json.dumps({"id": request["id"], "result": "1.0"}))
            assert await asyncio.wait_for(waiter.wait(), timeout=1.0) == "1.0"

        assert "SEND message:" in caplog.text
        assert "RECEIVE message:" in caplog.text
        await connection.close()


@pytest.mark.asyncio
class TestConnectionClose:
    """Tests for transport loss and explicit close."""

    async def test_transport_close_fails_everything(self) -> None:
        connection, driver = create_connection()
        tree = await build_page_tree(driver, connection)
        closed: list[object] = []
        connection.listeners.add(EventType.CLOSE, closed.append)

        task = asyncio.create_task(tree["browser"].send("version"))
        await driver.next_request()
        driver.disconnect()

        with pytest.raises(TargetClosedError):
            await asyncio.wait_for(task, timeout=1.0)

        assert connection.is_closed
        assert len(closed) == 1
        for obj in tree.values():
            assert obj.disposed
            assert obj.guid not in connection
        assert connection.get_stats() == {"objects": 0, "pending_calls": 0}

    async def test_closed_connection_rejects_requests(self) -> None:
        connection, driver = create_connection()
        connection.create("browser@1", "Browser")
        driver.disconnect()
        await settle(connection)

        with pytest.raises(TargetClosedError):
            connection.send_request("browser@1", "version")
        with pytest.raises(TargetClosedError):
            connection.create("browser@2", "Browser")
        with pytest.raises(TargetClosedError):
            await connection.wait_for_object("browser@2")

    async def test_close_is_idempotent(self) -> None:
        connection, _ = create_connection()
        await connection.close()
        await connection.close()
        assert connection.is_closed
        assert isinstance(connection.close_reason, TargetClosedError)

    async def test_context_manager(self) -> None:
        transport = QueueTransport()
        async with Connection(transport) as connection:
            connection.create("browser@1", "Browser")
            assert not connection.is_closed
        assert connection.is_closed
        assert transport.closed

    async def test_failed_send_closes_connection(self) -> None:
        connection, driver = create_connection()
        connection.create("browser@1", "Browser")
        driver.transport.closed = True

        waiter = connection.send_request("browser@1", "version")
        with pytest.raises(TargetClosedError):
            await asyncio.wait_for(waiter.wait(), timeout=1.0)
        assert connection.is_closed


@pytest.mark.asyncio
class TestProtocolDesync:
    """Tests for undecodable frames."""

    async def test_attributable_decode_failure_fails_only_that_call(self) -> None:
        connection, driver = create_connection()
        connection.create("browser@1", "Browser")

        waiter = connection.send_request("browser@1", "version")
        request = await driver.next_request()
        driver.push({"id": request["id"], "guid": 5, "method": "version"})

        with pytest.raises(ProtocolError):
            await asyncio.wait_for(waiter.wait(), timeout=1.0)
        assert not connection.is_closed
        await connection.close()

    async def test_unattributable_decode_failure_closes_connection(self) -> None:
        connection, driver = create_connection()
        tree = await build_page_tree(driver, connection)
        reasons: list[object] = []
        tree["page"].on(EventType.DISPOSED, reasons.append)

        waiter = connection.send_request("browser@1", "version")
        await driver.next_request()
        driver.transport.feed("{not json")

        with pytest.raises(ProtocolError):
            await asyncio.wait_for(waiter.wait(), timeout=1.0)
        assert connection.is_closed
        assert isinstance(connection.close_reason, ProtocolError)
        assert len(reasons) == 1 and isinstance(reasons[0], ProtocolError)
        assert isinstance(driver.transport.abort_reason, ProtocolError)

    async def test_duplicate_create_frame_closes_connection(self) -> None:
        connection, driver = create_connection()
        driver.create("browser@1", "Browser")
        driver.create("browser@1", "Browser")
        await settle(connection)

        assert connection.is_closed
        assert isinstance(connection.close_reason, ProtocolError)

    async def test_create_without_type_is_protocol_error(self) -> None:
        connection, _ = create_connection()
        with pytest.raises(ProtocolError, match="has no type"):
            connection.dispatch(WireControl(ControlOp.CREATE, "browser@1"))
        assert "browser@1" not in connection
        await connection.close()


@pytest.mark.asyncio
class TestWaitForObject:
    """Tests for wait_for_object()."""

    async def test_existing_object_returns_immediately(self) -> None:
        connection, _ = create_connection()
        browser = connection.create("browser@1", "Browser")
        assert await connection.wait_for_object("browser@1") is browser
        await connection.close()

    async def test_timeout(self) -> None:
        connection, _ = create_connection()
        with pytest.raises(TimeoutError, match="Timeout 50ms exceeded."):
            await connection.wait_for_object("browser@1", timeout=50)
        await connection.close()

    async def test_connection_close_wins(self) -> None:
        connection, driver = create_connection()
        task = asyncio.create_task(connection.wait_for_object("browser@1", timeout=5000))
        await asyncio.sleep(0.01)
        driver.disconnect()
        with pytest.raises(TargetClosedError):
            await asyncio.wait_for(task, timeout=1.0)

    async def test_frame_lookup(self) -> None:
        connection, driver = create_connection()
        tree = await build_page_tree(driver, connection)
        assert isinstance(tree["frame"], Frame)
        assert tree["page"].main_frame is tree["frame"]
        await connection.close()


class CountingTransport(QueueTransport):
    """QueueTransport that records how its receive() calls ended."""

    def __init__(self) -> None:
        super().__init__()
        self.receives = 0
        self.cancelled_receives = 0

    async def receive(self) -> str:
        self.receives += 1
        try:
            return await super().receive()
        except asyncio.CancelledError:
            self.cancelled_receives += 1
            raise


@pytest.mark.asyncio
class TestReadLoop:
    """Tests for the inbound read loop."""

    async def test_idle_loop_keeps_one_receive_pending(self) -> None:
        """An idle connection never cancels an in-flight receive()."""
        transport = CountingTransport()
        connection = Connection(transport)
        connection.start()
        await asyncio.sleep(0.3)
        assert transport.receives == 1
        assert transport.cancelled_receives == 0
        await connection.close()

    async def test_frames_after_idle_gaps_arrive_in_order(self) -> None:
        transport = CountingTransport()
        connection = Connection(transport)
        connection.start()
        driver = FakeDriver(transport)
        connection.create("page@1", "Page")
        seen: list[object] = []
        connection.get_object("page@1").on(EventType.LOAD, lambda _: seen.append("load"))
        connection.get_object("page@1").on(EventType.CRASH, lambda _: seen.append("crash"))

        driver.event("page@1", "load")
        await asyncio.sleep(0.15)
        driver.event("page@1", "crash")
        driver.event("page@1", "load")
        await settle(connection)

        assert seen == ["load", "crash", "load"]
        assert transport.cancelled_receives == 0
        await connection.close()

    async def test_abort_wakes_pending_receive(self) -> None:
        connection, driver = create_connection()
        connection.create("browser@1", "Browser")
        driver.transport.closed = True

        waiter = connection.send_request("browser@1", "version")
        with pytest.raises(TargetClosedError):
            await asyncio.wait_for(waiter.wait(), timeout=1.0)
        await asyncio.sleep(0.02)
        assert connection._read_loop_task is not None
        assert connection._read_loop_task.done()
