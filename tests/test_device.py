import asyncio

import pytest

from wizlight_protocol import (
    PilotState,
    RetrySchedule,
    WizDevice,
    WizError,
    WizMethodNotFound,
    WizProtocolError,
    WizPushManager,
    WizResponseError,
    WizTimeoutError,
)
from tests.helpers import (
    BULB_MAC,
    FAST_COMMIT_SCHEDULE,
    FAST_SCHEDULE,
    send_udp,
    start_fake_bulb,
    sync_pilot,
    wait_until,
)


def make_device(bulb, **kwargs) -> WizDevice:
    return WizDevice(
        "127.0.0.1",
        port=bulb.port,
        schedule=FAST_SCHEDULE,
        commit_schedule=FAST_COMMIT_SCHEDULE,
        **kwargs,
    )


class TestCommands:
    async def test_get_pilot(self, fake_bulb):
        device = make_device(fake_bulb)
        state = await device.get_pilot()
        assert isinstance(state, PilotState)
        assert state.state is True
        assert state.dimming == 50
        assert device.state is state
        assert fake_bulb.received[0][0] == {"method": "getPilot", "params": {}}

    async def test_set_pilot(self, fake_bulb):
        device = make_device(fake_bulb)
        result = await device.set_pilot({"state": True, "dimming": 40})
        assert result == {"success": True}
        assert fake_bulb.requests_for("setPilot") == [
            {"method": "setPilot", "params": {"state": True, "dimming": 40}}
        ]

    async def test_set_pilot_uses_commit_schedule(self, silent_bulb):
        device = make_device(silent_bulb)
        with pytest.raises(WizTimeoutError):
            await device.set_pilot({"state": False})
        assert len(silent_bulb.received) == FAST_COMMIT_SCHEDULE.max_attempts

    async def test_method_not_found(self, fake_bulb):
        device = make_device(fake_bulb)
        with pytest.raises(WizMethodNotFound) as exc_info:
            await device.get_model_config()
        assert exc_info.value.code == -32601

    async def test_method_not_found_is_a_response_error(self, fake_bulb):
        device = make_device(fake_bulb)
        with pytest.raises(WizResponseError):
            await device.send_command("pulse", {"delta": -20})

    async def test_other_error_code(self, fake_bulb):
        fake_bulb.errors["getPilot"] = (-32600, "Invalid Request")
        device = make_device(fake_bulb)
        with pytest.raises(WizResponseError) as exc_info:
            await device.get_pilot()
        assert exc_info.value.code == -32600
        assert not isinstance(exc_info.value, WizMethodNotFound)

    async def test_system_config_and_device_info(self, fake_bulb):
        device = make_device(fake_bulb)
        assert (await device.get_system_config())["fwVersion"] == "1.25.0"
        assert (await device.get_device_info())["devMac"] == BULB_MAC

    async def test_get_mac_is_cached(self, fake_bulb):
        device = make_device(fake_bulb)
        assert await device.get_mac() == BULB_MAC
        assert await device.get_mac() == BULB_MAC
        assert fake_bulb.methods() == ["getSystemConfig"]

    async def test_get_mac_missing(self, fake_bulb):
        fake_bulb.results["getSystemConfig"] = {"homeId": 1}
        device = make_device(fake_bulb)
        with pytest.raises(WizProtocolError):
            await device.get_mac()

    async def test_commands_to_one_device_are_serialized(self):
        bulb = await start_fake_bulb(reply_delay=0.05)
        try:
            device = make_device(bulb)
            await asyncio.gather(device.get_pilot(), device.get_system_config(), device.get_device_info())
            assert len(bulb.received) == 3
            gaps = [b - a for a, b in zip(bulb.receive_times, bulb.receive_times[1:])]
            assert all(gap >= 0.04 for gap in gaps)
        finally:
            bulb.transport.close()


class TestPush:
    async def test_without_push_manager(self, fake_bulb):
        device = make_device(fake_bulb)
        with pytest.raises(WizError):
            await device.start_push()

    async def test_push_routing(self, fake_bulb):
        push_manager = WizPushManager(
            listen_port=0,
            device_port=fake_bulb.port,
            source_ip="127.0.0.1",
            registration_schedule=FAST_COMMIT_SCHEDULE,
        )
        device = make_device(fake_bulb, push_manager=push_manager)
        updates = []
        try:
            assert await device.start_push(lambda state, sender_ip: updates.append(state))
            assert push_manager.subscriptions == [BULB_MAC]
            assert await wait_until(lambda: len(fake_bulb.requests_for("registration")) >= 1)
            send_udp(sync_pilot(BULB_MAC, dimming=12), push_manager.bound_port)
            assert await wait_until(lambda: len(updates) == 1)
            assert updates[0].dimming == 12
            assert device.state is updates[0]
            await device.stop_push()
            assert push_manager.subscriptions == []
            assert not push_manager.is_running
        finally:
            await push_manager.stop()

    async def test_push_start_failure(self, fake_bulb, monkeypatch):
        monkeypatch.setattr("wizlight_protocol.push_manager.select_source_ip", lambda target_ip: None)
        push_manager = WizPushManager(listen_port=0)
        device = make_device(fake_bulb, push_manager=push_manager)
        assert not await device.start_push()
        assert push_manager.subscriptions == []
        assert push_manager.fail_reason is not None

    async def test_registration_waits_for_device_lock(self):
        # retransmits late enough that each delayed reply arrives before the first resend
        schedule = RetrySchedule(max_attempts=2, first_interval=0.6, max_interval=0.6, timeout=1.2)
        bulb = await start_fake_bulb(reply_delay=0.15)
        push_manager = WizPushManager(
            listen_port=0,
            device_port=bulb.port,
            source_ip="127.0.0.1",
            registration_interval=60.0,
            registration_schedule=schedule,
        )
        device = WizDevice("127.0.0.1", port=bulb.port, push_manager=push_manager,
                           schedule=schedule, commit_schedule=schedule)
        try:
            assert await device.start_push()
            await asyncio.gather(
                device.set_pilot({"state": True}),
                wait_until(lambda: len(bulb.requests_for("registration")) == 1),
            )
            assert sorted(bulb.methods()) == ["getSystemConfig", "registration", "setPilot"]
            # each request only goes out after the reply to the previous one
            gaps = [b - a for a, b in zip(bulb.receive_times, bulb.receive_times[1:])]
            assert all(gap >= 0.12 for gap in gaps)
        finally:
            await push_manager.stop()
            bulb.transport.close()
