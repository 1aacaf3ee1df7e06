import asyncio
import json

import pytest

from wizlight_protocol import (
    RetrySchedule,
    WizConnectionError,
    WizExchange,
    WizTimeoutError,
    send,
)
from tests.helpers import FAST_SCHEDULE, PATIENT_SCHEDULE, start_fake_bulb, wait_until

GET_PILOT = b'{"method":"getPilot","params":{}}'


class TestSend:
    async def test_fast_path_sends_one_datagram(self, fake_bulb):
        data, addr = await send(GET_PILOT, "127.0.0.1", port=fake_bulb.port, schedule=PATIENT_SCHEDULE)
        reply = json.loads(data)
        assert reply["result"]["mac"] == fake_bulb.mac
        assert addr == ("127.0.0.1", fake_bulb.port)
        # wait past the deadline; no retransmission may follow the response
        await asyncio.sleep(PATIENT_SCHEDULE.timeout + 0.1)
        assert len(fake_bulb.received) == 1

    async def test_error_reply_is_returned_as_response(self, fake_bulb):
        fake_bulb.errors["getPilot"] = (-32601, "Method not found")
        data, _ = await send(GET_PILOT, "127.0.0.1", port=fake_bulb.port, schedule=FAST_SCHEDULE)
        assert json.loads(data)["error"]["code"] == -32601

    async def test_retransmits_until_response(self):
        bulb = await start_fake_bulb(drop_first=2)
        try:
            data, _ = await send(GET_PILOT, "127.0.0.1", port=bulb.port, schedule=FAST_SCHEDULE)
            assert json.loads(data)["method"] == "getPilot"
            assert len(bulb.received) == 3
            assert all(request == json.loads(GET_PILOT) for request, _ in bulb.received)
        finally:
            bulb.transport.close()

    async def test_timeout_after_all_attempts(self, silent_bulb):
        loop = asyncio.get_running_loop()
        start = loop.time()
        with pytest.raises(WizTimeoutError):
            await send(GET_PILOT, "127.0.0.1", port=silent_bulb.port, schedule=FAST_SCHEDULE)
        elapsed = loop.time() - start
        assert elapsed >= FAST_SCHEDULE.timeout - 0.01
        assert elapsed < FAST_SCHEDULE.timeout + 0.5
        assert len(silent_bulb.received) == FAST_SCHEDULE.max_attempts
        # nothing is sent after the deadline
        await asyncio.sleep(0.2)
        assert len(silent_bulb.received) == FAST_SCHEDULE.max_attempts

    async def test_retransmission_gaps_follow_schedule(self, silent_bulb):
        with pytest.raises(WizTimeoutError):
            await send(GET_PILOT, "127.0.0.1", port=silent_bulb.port, schedule=FAST_SCHEDULE)
        times = silent_bulb.receive_times
        offsets = [t - times[0] for t in times]
        for actual, expected in zip(offsets, FAST_SCHEDULE.offsets):
            assert actual >= expected - 0.01
        gaps = [b - a for a, b in zip(times, times[1:])]
        assert max(gaps) < FAST_SCHEDULE.max_interval + 0.1

    async def test_commit_schedule_sends_fewer_attempts(self, silent_bulb):
        schedule = RetrySchedule(max_attempts=3, first_interval=0.03, max_interval=0.12, timeout=0.2)
        with pytest.raises(WizTimeoutError):
            await send(GET_PILOT, "127.0.0.1", port=silent_bulb.port, schedule=schedule)
        assert len(silent_bulb.received) == 3

    async def test_socket_creation_failure(self, monkeypatch):
        loop = asyncio.get_running_loop()

        async def failing_endpoint(*args, **kwargs):
            raise OSError("no sockets left")

        monkeypatch.setattr(loop, "create_datagram_endpoint", failing_endpoint)
        with pytest.raises(WizConnectionError):
            await send(GET_PILOT, "127.0.0.1", port=38899, schedule=FAST_SCHEDULE)

    async def test_cancel_stops_retransmission(self, silent_bulb):
        task = asyncio.create_task(
            send(GET_PILOT, "127.0.0.1", port=silent_bulb.port, schedule=FAST_SCHEDULE)
        )
        assert await wait_until(lambda: len(silent_bulb.received) >= 1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        count = len(silent_bulb.received)
        await asyncio.sleep(FAST_SCHEDULE.timeout)
        assert len(silent_bulb.received) == count


class TestExchange:
    async def test_completes_exactly_once_with_duplicates(self):
        bulb = await start_fake_bulb(duplicates=3)
        try:
            exchange = WizExchange(GET_PILOT, "127.0.0.1", port=bulb.port, schedule=PATIENT_SCHEDULE)
            data, addr = await exchange.run()
            assert exchange.done
            assert exchange.attempts_sent == 1
            # late duplicates arriving after completion change nothing
            await asyncio.sleep(0.1)
            assert exchange.final_result.result() == (data, addr)
            assert len(bulb.received) == 1
        finally:
            bulb.transport.close()

    async def test_run_only_once(self, fake_bulb):
        exchange = WizExchange(GET_PILOT, "127.0.0.1", port=fake_bulb.port, schedule=FAST_SCHEDULE)
        await exchange.run()
        with pytest.raises(RuntimeError):
            await exchange.run()

    async def test_concurrent_exchanges_to_different_devices(self, silent_bulb, fake_bulb):
        slow = asyncio.create_task(
            send(GET_PILOT, "127.0.0.1", port=silent_bulb.port, schedule=FAST_SCHEDULE)
        )
        data, _ = await send(GET_PILOT, "127.0.0.1", port=fake_bulb.port, schedule=FAST_SCHEDULE)
        assert not slow.done()
        assert json.loads(data)["result"]["mac"] == fake_bulb.mac
        with pytest.raises(WizTimeoutError):
            await slow
