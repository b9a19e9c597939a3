"""
Tests for the AsyncSkypack request engine against a loopback fake device.

Per-attempt deadlines are shortened so the retry scenarios finish quickly;
elapsed-time assertions are expressed in multiples of that deadline.
"""

import asyncio
import time
from unittest.mock import MagicMock

import pytest

from skypack.connection import AsyncSkypack
from skypack.constants import ATTEMPT_TIMEOUT, KIND_SET_TARGET, KIND_TELEMETRY, MAX_ATTEMPTS
from skypack.correlation import IdGenerator, Waiter
from skypack.errors import (
    CorrelationConflictError,
    DeviceIOError,
    DeviceTimeoutError,
    EncodeError,
    InternalError,
)
from skypack.handle import AsyncRequestHandle
from skypack.packet import ResponseRecord
from tests.devices import SAMPLE_TELEMETRY

TIMEOUT = 0.2


def _client(dev, **kwargs) -> AsyncSkypack:
    kwargs.setdefault("attempt_timeout", TIMEOUT)
    return AsyncSkypack(dev.host, dev.port, bind_host="127.0.0.1", **kwargs)


class TestInit:
    def test_defaults(self):
        client = AsyncSkypack()
        assert client.attempts == MAX_ATTEMPTS == 3
        assert client.attempt_timeout == ATTEMPT_TIMEOUT == 1.0
        assert not client.connected
        assert client.local_address is None

    @pytest.mark.parametrize(
        "kwargs,match",
        [
            ({"host": ""}, "host cannot be empty"),
            ({"port": 0}, "port must be between"),
            ({"port": 65536}, "port must be between"),
            ({"attempts": 0}, "attempts must be at least 1"),
            ({"attempt_timeout": 0}, "attempt_timeout must be positive"),
        ],
    )
    def test_invalid_params(self, kwargs, match):
        with pytest.raises(ValueError, match=match):
            AsyncSkypack(**kwargs)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_open_close(self, device):
        client = _client(device)
        await client.open()
        assert client.connected
        assert client.local_address[0] == "127.0.0.1"
        assert client.local_address[1] > 0
        await client.close()
        assert not client.connected

    @pytest.mark.asyncio
    async def test_perform_before_open(self, device):
        client = _client(device)
        with pytest.raises(DeviceIOError, match="not open"):
            await client.perform(KIND_TELEMETRY)

    @pytest.mark.asyncio
    async def test_reopen_after_close_rejected(self, device):
        client = _client(device)
        await client.open()
        await client.close()
        with pytest.raises(DeviceIOError, match="closed"):
            await client.open()

    @pytest.mark.asyncio
    async def test_bind_failure(self, device):
        client = AsyncSkypack(device.host, device.port, bind_host="203.0.113.1")
        with pytest.raises(DeviceIOError, match="Cannot open UDP channel"):
            await client.open()

    @pytest.mark.asyncio
    async def test_close_fails_pending_with_internal_error(self, make_device):
        dev = make_device(silent=True)
        async with _client(dev, attempt_timeout=5.0) as client:
            handle = client.get_telemetry()
            await asyncio.sleep(0.05)
            assert client.pending == 1
            await client.close()
            with pytest.raises(InternalError):
                await handle
            assert client.pending == 0


class TestRequestResponse:
    @pytest.mark.asyncio
    async def test_immediate_response_single_attempt(self, make_device):
        """Telemetry answered on the first attempt returns that payload."""
        dev = make_device(respond=lambda req: SAMPLE_TELEMETRY)
        async with _client(dev, ids=IdGenerator(seed=5000)) as client:
            start = time.monotonic()
            resp = await client.perform(KIND_TELEMETRY)
            elapsed = time.monotonic() - start

        assert resp == ResponseRecord(KIND_TELEMETRY, 5000, 0, SAMPLE_TELEMETRY)
        assert dev.attempts_for(KIND_TELEMETRY, 5000) == 1
        assert elapsed < TIMEOUT
        assert client.pending == 0

    @pytest.mark.asyncio
    async def test_success_on_third_attempt(self, make_device):
        """First two datagrams lost; the third attempt's reply is accepted."""
        dev = make_device(drop_first=2)
        async with _client(dev, ids=IdGenerator(seed=77)) as client:
            start = time.monotonic()
            resp = await client.perform(KIND_SET_TARGET, {"items": []})
            elapsed = time.monotonic() - start

            assert resp.kind == KIND_SET_TARGET
            assert resp.id == 77
            assert dev.attempts_for(KIND_SET_TARGET, 77) == 3
            assert 2 * TIMEOUT * 0.9 <= elapsed < 3 * TIMEOUT
            assert client.pending == 0

    @pytest.mark.asyncio
    async def test_same_id_reused_across_attempts(self, make_device):
        dev = make_device(drop_first=1)
        async with _client(dev) as client:
            await client.perform(KIND_TELEMETRY)
        assert len(dev.requests) == 2
        assert dev.requests[0] == dev.requests[1]

    @pytest.mark.asyncio
    async def test_timeout_after_all_attempts(self, make_device):
        """No reply ever: DeviceTimeoutError after exactly 3 sends, entry removed."""
        dev = make_device(silent=True)
        async with _client(dev, ids=IdGenerator(seed=31)) as client:
            start = time.monotonic()
            with pytest.raises(DeviceTimeoutError) as exc_info:
                await client.perform(KIND_TELEMETRY)
            elapsed = time.monotonic() - start

            assert exc_info.value.attempts == 3
            assert exc_info.value.timeout == TIMEOUT
            assert 3 * TIMEOUT * 0.9 <= elapsed < 4 * TIMEOUT
            assert client.pending == 0
            assert (KIND_TELEMETRY, 31) not in client._table

        await asyncio.sleep(0.05)
        assert dev.attempts_for(KIND_TELEMETRY, 31) == 3

    @pytest.mark.asyncio
    async def test_late_response_after_timeout_dropped(self, make_device):
        """A reply for an already timed-out id is dropped by the receiver."""
        dev = make_device(silent=True)
        async with _client(dev, attempts=1, ids=IdGenerator(seed=400)) as client:
            with pytest.raises(DeviceTimeoutError):
                await client.perform(KIND_TELEMETRY)

            client_addr = next(iter(dev.clients))
            dropped_before = client._protocol.dropped
            dev.reply(ResponseRecord(KIND_TELEMETRY, 400, 0, {"late": True}), client_addr)
            await asyncio.sleep(0.1)

            assert client._protocol.dropped == dropped_before + 1
            assert client.pending == 0
            assert client.connected

            # Still fully usable
            dev.silent = False
            resp = await client.perform(KIND_TELEMETRY)
            assert resp.id == 401

    @pytest.mark.asyncio
    async def test_reply_to_first_attempt_after_resend_accepted(self, make_device):
        """A slow reply to attempt 1 arriving after attempt 2 was sent still completes."""
        dev = make_device(delay=TIMEOUT * 1.5)
        async with _client(dev, ids=IdGenerator(seed=9)) as client:
            resp = await client.perform(KIND_TELEMETRY)
            assert resp.id == 9
            assert dev.attempts_for(KIND_TELEMETRY, 9) == 2

    @pytest.mark.asyncio
    async def test_remote_status_returned_not_raised(self, make_device):
        dev = make_device(status=-7)
        async with _client(dev) as client:
            resp = await client.perform(KIND_TELEMETRY)
        assert resp.status == -7
        assert not resp.ok

    @pytest.mark.asyncio
    async def test_concurrent_requests_no_cross_talk(self, make_device):
        dev = make_device(delay=0.02)
        async with _client(dev, attempt_timeout=2.0) as client:
            payloads = [{"n": i} for i in range(50)]
            responses = await asyncio.gather(*(client.perform(KIND_SET_TARGET, p) for p in payloads))

            for payload, resp in zip(payloads, responses):
                assert resp.payload["echo"] == payload
                assert resp.payload["id"] == resp.id
            assert len({r.id for r in responses}) == 50
            assert client.pending == 0


class TestFailures:
    @pytest.mark.asyncio
    async def test_send_failure_not_retried(self, make_device):
        dev = make_device()
        async with _client(dev) as client:
            real_sock = client._sock
            fake = MagicMock()
            fake.sendto.side_effect = OSError("network unreachable")
            client._sock = fake
            try:
                with pytest.raises(DeviceIOError, match="network unreachable") as exc_info:
                    await client.perform(KIND_TELEMETRY)
            finally:
                client._sock = real_sock

            assert isinstance(exc_info.value.__cause__, OSError)
            assert fake.sendto.call_count == 1
            assert client.pending == 0

    @pytest.mark.asyncio
    async def test_encode_error_registers_nothing(self, device):
        async with _client(device) as client:
            with pytest.raises(EncodeError):
                await client.perform(KIND_SET_TARGET, {"bad": object()})
            assert client.pending == 0
        assert device.requests == []

    @pytest.mark.asyncio
    async def test_collision_rejected(self, device):
        async with _client(device, ids=IdGenerator(seed=10)) as client:
            squatter = Waiter()
            client._table.insert((KIND_TELEMETRY, 10), squatter)

            with pytest.raises(CorrelationConflictError):
                await client.perform(KIND_TELEMETRY)

            # The earlier registration is untouched
            assert client._table.take((KIND_TELEMETRY, 10)) is squatter
            assert not squatter.done()

    @pytest.mark.asyncio
    async def test_perform_from_other_loop_rejected(self, device):
        async with _client(device) as client:
            def _other_loop():
                return asyncio.run(client.perform(KIND_TELEMETRY))

            with pytest.raises(RuntimeError, match="event loop"):
                await asyncio.get_running_loop().run_in_executor(None, _other_loop)


class TestHandles:
    @pytest.mark.asyncio
    async def test_get_telemetry_handle(self, make_device):
        dev = make_device(respond=lambda req: SAMPLE_TELEMETRY)
        async with _client(dev) as client:
            handle = client.get_telemetry()
            assert isinstance(handle, AsyncRequestHandle)
            resp = await handle
            assert handle.is_finished()
            assert resp.payload == SAMPLE_TELEMETRY

    @pytest.mark.asyncio
    async def test_fetch_telemetry(self, make_device):
        dev = make_device(respond=lambda req: SAMPLE_TELEMETRY)
        async with _client(dev) as client:
            resp = await client.fetch_telemetry()
        assert resp.kind == KIND_TELEMETRY
        assert dev.requests[0].payload is None

    @pytest.mark.asyncio
    async def test_set_target_state_payload(self, device):
        async with _client(device) as client:
            handle = client.set_target_state((47.1, 8.5, 420.0), (1.0, 2.0, 0.0), 1718000000.5)
            resp = await handle.wait()

        assert resp.kind == KIND_SET_TARGET
        sent = device.requests[0]
        assert sent.kind == KIND_SET_TARGET
        assert sent.payload == {
            "items": [
                {
                    "id": 1,
                    "frame": "lla",
                    "pos": [47.1, 8.5, 420.0],
                    "vel": [1.0, 2.0, 0.0],
                    "rpy": [0.0, 0.0, 0.0],
                    "ts": 1718000000.5,
                }
            ]
        }

    @pytest.mark.asyncio
    async def test_handle_pollable_while_pending(self, make_device):
        dev = make_device(delay=0.1)
        async with _client(dev) as client:
            handle = client.get_telemetry()
            assert not handle.is_finished()
            await asyncio.sleep(0.3)
            assert handle.is_finished()
            assert (await handle.wait()).ok

    @pytest.mark.asyncio
    async def test_cancel_stops_retries_and_cleans_up(self, make_device):
        dev = make_device(silent=True)
        async with _client(dev, ids=IdGenerator(seed=600)) as client:
            handle = client.get_telemetry()
            await asyncio.sleep(TIMEOUT / 2)
            assert client.pending == 1

            handle.cancel()
            with pytest.raises(InternalError, match="cancelled"):
                await handle

            assert client.pending == 0
            await asyncio.sleep(TIMEOUT * 2)
            assert dev.attempts_for(KIND_TELEMETRY, 600) == 1

    @pytest.mark.asyncio
    async def test_cancelling_waiter_does_not_cancel_request(self, make_device):
        dev = make_device(delay=0.1)
        async with _client(dev) as client:
            handle = client.get_telemetry()
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(handle.wait(), timeout=0.01)
            resp = await handle
            assert resp.ok

    @pytest.mark.asyncio
    async def test_failed_background_request_surfaces_on_wait(self, make_device):
        dev = make_device(silent=True)
        async with _client(dev, attempts=1) as client:
            handle = client.get_telemetry()
            with pytest.raises(DeviceTimeoutError):
                await handle


class TestTrace:
    @pytest.mark.asyncio
    async def test_trace_logs_both_directions(self, device, caplog):
        async with _client(device, trace=True) as client:
            with caplog.at_level("INFO", logger="skypack"):
                await client.perform(KIND_TELEMETRY)
        assert "TRACE>" in caplog.text
        assert "TRACE<" in caplog.text
