"""Tests for WorkerChannel correlation, callbacks, faults, timeouts and cancellation.

The worker end of the transport is driven by hand so that response order
and timing are under the test's control.
"""

import asyncio
import logging
import time

import pytest

from framecall._internal.codegen import CALLBACK_PLACEHOLDER
from framecall._internal.pending import CancelToken
from framecall._internal.rpc_protocol import WorkerChannel
from framecall._internal.values import Name
from framecall.errors import RemoteExecutionError, RequestTimeout, TransportFault


async def next_request(worker, timeout=2.0):
    return await asyncio.wait_for(asyncio.to_thread(worker.recv), timeout)


async def settle(channel, timeout=2.0):
    deadline = time.monotonic() + timeout
    while len(channel.pending) and time.monotonic() < deadline:
        await asyncio.sleep(0.01)


class FailingTransport:
    def __init__(self):
        self.closed = False

    def send(self, obj, transfer=None):
        if obj is not None:
            raise OSError("pipe broken")

    def recv(self):
        while not self.closed:
            time.sleep(0.01)
        raise ConnectionError("closed")

    def close(self):
        self.closed = True


class TestCorrelation:
    @pytest.mark.asyncio
    async def test_out_of_order_responses(self, channel_pair):
        channel, worker = channel_pair
        first = asyncio.create_task(channel.request({"type": "run", "code": "a"}))
        second = asyncio.create_task(channel.request({"type": "run", "code": "b"}))

        sent = [await next_request(worker), await next_request(worker)]
        by_code = {msg["code"]: msg["id"] for msg in sent}
        worker.send({"id": by_code["b"], "type": "run", "result": "B"})
        worker.send({"id": by_code["a"], "type": "run", "result": "A"})

        assert await first == "A"
        assert await second == "B"
        assert len(channel.pending) == 0

    @pytest.mark.asyncio
    async def test_ids_increase(self, channel_pair):
        channel, worker = channel_pair
        tasks = [asyncio.create_task(channel.request({"type": "run", "code": str(i)})) for i in range(3)]

        ids = []
        for _ in tasks:
            msg = await next_request(worker)
            ids.append(msg["id"])
            worker.send({"id": msg["id"], "type": "run", "result": msg["code"]})

        assert sorted(ids) == [0, 1, 2]
        assert await asyncio.gather(*tasks) == ["0", "1", "2"]

    @pytest.mark.asyncio
    async def test_error_response_rejects_and_removes(self, channel_pair):
        channel, worker = channel_pair
        channel._next_id = 7
        task = asyncio.create_task(channel.request({"type": "run", "code": "x"}))

        msg = await next_request(worker)
        assert msg["id"] == 7
        worker.send({"id": 7, "type": "run", "error": "boom"})

        with pytest.raises(RemoteExecutionError) as excinfo:
            await task
        assert str(excinfo.value) == "boom"
        assert excinfo.value.request_id == 7
        assert 7 not in channel.pending

    @pytest.mark.asyncio
    async def test_name_results_rehydrated(self, channel_pair):
        channel, worker = channel_pair
        task = asyncio.create_task(channel.request({"type": "run", "code": "x"}))

        msg = await next_request(worker)
        worker.send({"id": msg["id"], "type": "run", "result": {"name": "x", "_kind": "name", "partial": True}})

        result = await task
        assert isinstance(result, Name)
        assert result.partial


class TestCallbacks:
    @pytest.mark.asyncio
    async def test_callbacks_precede_resolution(self, channel_pair):
        channel, worker = channel_pair
        events = []
        task = asyncio.create_task(
            channel.request({"type": "run", "code": f"stream({CALLBACK_PLACEHOLDER})"}, callback=events.append)
        )

        msg = await next_request(worker)
        token = msg["usesCallback"]
        assert token == f"{CALLBACK_PLACEHOLDER}{msg['id']}_default"
        assert msg["code"] == f"stream({token})"

        for value in (1, 2):
            worker.send({"id": msg["id"], "type": "run", "result": value, "isCallbackResult": True})
        worker.send({"id": msg["id"], "type": "run", "result": "done"})

        assert await task == "done"
        assert events == [1, 2]
        assert msg["id"] not in channel.pending

    @pytest.mark.asyncio
    async def test_async_callback_tasks_are_tracked(self, channel_pair, caplog):
        channel, worker = channel_pair
        seen = []

        async def on_value(value):
            seen.append(value)
            if value == "bad":
                raise ValueError("bad value")

        task = asyncio.create_task(
            channel.request({"type": "run", "code": f"stream({CALLBACK_PLACEHOLDER})"}, callback=on_value)
        )
        msg = await next_request(worker)
        for value in ("ok", "bad"):
            worker.send({"id": msg["id"], "type": "run", "result": value, "isCallbackResult": True})
        worker.send({"id": msg["id"], "type": "run", "result": "done"})

        assert await task == "done"
        for _ in range(5):
            await asyncio.sleep(0)

        assert seen == ["ok", "bad"]
        assert len(channel.callback_tasks) == 0
        assert "asynchronous callback failed" in caplog.text

    @pytest.mark.asyncio
    async def test_concurrent_callbacks_not_cross_wired(self, channel_pair):
        channel, worker = channel_pair
        a_events, b_events = [], []
        code = f"stream({CALLBACK_PLACEHOLDER})"
        task_a = asyncio.create_task(channel.request({"type": "run", "code": code}, callback=a_events.append))
        task_b = asyncio.create_task(channel.request({"type": "run", "code": code}, callback=b_events.append))

        msgs = [await next_request(worker), await next_request(worker)]
        assert msgs[0]["usesCallback"] != msgs[1]["usesCallback"]
        assert msgs[0]["code"] != msgs[1]["code"]

        ids = {msg["id"] for msg in msgs}
        b_id = max(ids)
        worker.send({"id": b_id, "type": "run", "result": "for-b", "isCallbackResult": True})
        for request_id in sorted(ids):
            worker.send({"id": request_id, "type": "run", "result": None})
        await asyncio.gather(task_a, task_b)

        assert a_events == []
        assert b_events == ["for-b"]

    @pytest.mark.asyncio
    async def test_async_callback_is_scheduled(self, channel_pair):
        channel, worker = channel_pair
        received = asyncio.Event()

        async def on_value(value):
            received.set()

        task = asyncio.create_task(channel.request({"type": "run", "code": "x"}, callback=on_value))
        msg = await next_request(worker)
        worker.send({"id": msg["id"], "type": "run", "result": 1, "isCallbackResult": True})
        await asyncio.wait_for(received.wait(), 2)
        worker.send({"id": msg["id"], "type": "run", "result": None})
        await task

    @pytest.mark.asyncio
    async def test_callback_ignored_for_non_run(self, channel_pair, caplog):
        channel, worker = channel_pair
        with caplog.at_level(logging.WARNING, logger="framecall"):
            task = asyncio.create_task(
                channel.request({"type": "setGlobal", "value": {"name": "x", "value": 1}}, callback=print)
            )
            msg = await next_request(worker)

        assert "usesCallback" not in msg
        assert "Ignoring callback" in caplog.text
        worker.send({"id": msg["id"], "type": "setGlobal", "result": None})
        await task

    @pytest.mark.asyncio
    async def test_callback_flag_without_callback_is_terminal(self, channel_pair):
        channel, worker = channel_pair
        task = asyncio.create_task(channel.request({"type": "run", "code": "x"}))

        msg = await next_request(worker)
        worker.send({"id": msg["id"], "type": "run", "result": 5, "isCallbackResult": True})

        assert await task == 5


class TestFaults:
    @pytest.mark.asyncio
    async def test_unmatched_id_aborts_channel(self, channel_pair, caplog):
        channel, worker = channel_pair
        task = asyncio.create_task(channel.request({"type": "run", "code": "x"}))
        await next_request(worker)

        with caplog.at_level(logging.ERROR, logger="framecall"):
            worker.send({"id": 99, "type": "run", "result": 1})
            with pytest.raises(TransportFault):
                await task

        assert "'99' not found" in caplog.text
        assert channel.fault is not None
        with pytest.raises(TransportFault):
            await channel.request({"type": "run", "code": "y"})

    @pytest.mark.asyncio
    async def test_worker_fault_without_id(self, channel_pair):
        channel, worker = channel_pair
        task = asyncio.create_task(channel.request({"type": "run", "code": "x"}))
        await next_request(worker)

        worker.send({"id": None, "type": "fault", "error": "worker exploded"})

        with pytest.raises(TransportFault, match="worker exploded"):
            await task

    @pytest.mark.asyncio
    async def test_fault_naming_an_id_rejects_only_that_request(self, channel_pair):
        channel, worker = channel_pair
        bad = asyncio.create_task(channel.request({"type": "run", "code": "bad"}))
        good = asyncio.create_task(channel.request({"type": "run", "code": "good"}))
        msgs = {m["code"]: m["id"] for m in [await next_request(worker), await next_request(worker)]}

        worker.send({"id": None, "type": "fault", "faultId": msgs["bad"], "error": "undecodable"})
        worker.send({"id": msgs["good"], "type": "run", "result": "ok"})

        with pytest.raises(RemoteExecutionError, match="undecodable"):
            await bad
        assert await good == "ok"
        assert channel.fault is None

    @pytest.mark.asyncio
    async def test_worker_closing_channel(self, channel_pair):
        channel, worker = channel_pair
        task = asyncio.create_task(channel.request({"type": "run", "code": "x"}))
        await next_request(worker)

        worker.send(None)

        with pytest.raises(TransportFault, match="closed by worker"):
            await task

    @pytest.mark.asyncio
    async def test_send_failure_rejects_request(self):
        channel = WorkerChannel(FailingTransport())
        try:
            with pytest.raises(TransportFault, match="pipe broken"):
                await channel.request({"type": "run", "code": "x"})
            assert len(channel.pending) == 0
        finally:
            channel.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_rejects_pending(self, channel_pair):
        channel, worker = channel_pair
        task = asyncio.create_task(channel.request({"type": "run", "code": "x"}))
        await next_request(worker)

        channel.shutdown()

        with pytest.raises(TransportFault):
            await task
        assert await next_request(worker) is None


class TestTimeoutsAndCancellation:
    @pytest.mark.asyncio
    async def test_request_times_out(self, channel_pair):
        channel, worker = channel_pair
        task = asyncio.create_task(channel.request({"type": "run", "code": "slow"}, timeout=0.05))
        msg = await next_request(worker)

        with pytest.raises(RequestTimeout) as excinfo:
            await asyncio.wait_for(task, 2)
        assert excinfo.value.request_id == msg["id"]

        # A late answer is dropped without faulting the channel.
        worker.send({"id": msg["id"], "type": "run", "result": "late"})
        follow_up = asyncio.create_task(channel.request({"type": "run", "code": "next"}))
        next_msg = await next_request(worker)
        worker.send({"id": next_msg["id"], "type": "run", "result": "fine"})

        assert await follow_up == "fine"
        assert channel.fault is None

    @pytest.mark.asyncio
    async def test_explicit_sweep(self, channel_pair):
        channel, worker = channel_pair
        task = asyncio.create_task(channel.request({"type": "run", "code": "x"}, timeout=50))
        msg = await next_request(worker)

        assert channel.sweep_expired(now=time.monotonic()) == []
        assert channel.sweep_expired(now=time.monotonic() + 100) == [msg["id"]]
        with pytest.raises(RequestTimeout):
            await task

    @pytest.mark.asyncio
    async def test_default_timeout(self, transport_pair):
        host, worker = transport_pair
        channel = WorkerChannel(host, default_timeout=0.05, sweep_interval=0.02)
        try:
            with pytest.raises(RequestTimeout):
                await asyncio.wait_for(channel.request({"type": "run", "code": "x"}), 2)
        finally:
            channel.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_token(self, channel_pair):
        channel, worker = channel_pair
        token = CancelToken()
        task = asyncio.create_task(channel.request({"type": "run", "code": "x"}, cancel_token=token))
        msg = await next_request(worker)

        token.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert channel.pending.was_retired(msg["id"])

    @pytest.mark.asyncio
    async def test_already_cancelled_token_sends_nothing(self, channel_pair):
        channel, _ = channel_pair
        token = CancelToken()
        token.cancel()

        with pytest.raises(asyncio.CancelledError):
            await channel.request({"type": "run", "code": "x"}, cancel_token=token)
        assert channel.outbox.empty()

    @pytest.mark.asyncio
    async def test_task_cancellation_retires_request(self, channel_pair):
        channel, worker = channel_pair
        task = asyncio.create_task(channel.request({"type": "run", "code": "x"}))
        msg = await next_request(worker)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert channel.pending.was_retired(msg["id"])
        worker.send({"id": msg["id"], "type": "run", "result": "late"})
        await settle(channel)
        assert channel.fault is None
