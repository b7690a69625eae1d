import pytest

from signage.services.realtime import StatusFanout
from signage.services.sessions import (
    ConnectionSession,
    DashboardIdentity,
    DeviceIdentity,
    SessionRegistry,
    device_group,
    tenant_dashboards_group,
    tenant_devices_group,
)


@pytest.fixture
def sessions():
    return SessionRegistry()


async def add_session(sessions, ws, identity):
    session = ConnectionSession(ws, identity)
    await sessions.add(session)
    return session


class TestSessionRegistry:
    @pytest.mark.asyncio
    async def test_groups_follow_identity_kind(self, sessions, fake_socket):
        dashboard = await add_session(sessions, fake_socket(), DashboardIdentity("t1", "u1"))
        device = await add_session(sessions, fake_socket(), DeviceIdentity("t1", "pk-1", "hw-1"))

        assert sessions.members(tenant_dashboards_group("t1")) == [dashboard]
        assert sessions.members(tenant_devices_group("t1")) == [device]
        assert sessions.members(device_group("pk-1")) == [device]

    @pytest.mark.asyncio
    async def test_remove_drops_empty_groups(self, sessions, fake_socket):
        session = await add_session(sessions, fake_socket(), DeviceIdentity("t1", "pk-1", "hw-1"))

        assert await sessions.remove(session) is True
        assert await sessions.remove(session) is False
        assert sessions.device_sessions("pk-1") == []
        assert len(sessions) == 0

    @pytest.mark.asyncio
    async def test_independent_registries(self, fake_socket):
        first, second = SessionRegistry(), SessionRegistry()
        await add_session(first, fake_socket(), DashboardIdentity("t1", "u1"))

        assert len(first) == 1
        assert len(second) == 0


class TestStatusFanout:
    @pytest.mark.asyncio
    async def test_delivers_only_to_same_tenant_dashboards(self, sessions, fake_socket):
        mine, theirs, device = fake_socket(), fake_socket(), fake_socket()
        await add_session(sessions, mine, DashboardIdentity("t1", "u1"))
        await add_session(sessions, theirs, DashboardIdentity("t2", "u2"))
        await add_session(sessions, device, DeviceIdentity("t1", "pk-1", "hw-1"))

        delivered = await StatusFanout(sessions).publish_status("t1", "pk-1", "offline", reason="heartbeat_timeout")

        assert delivered == 1
        payload = mine.payloads("status-change")[0]
        assert payload["deviceId"] == "pk-1"
        assert payload["status"] == "offline"
        assert payload["reason"] == "heartbeat_timeout"
        assert "timestamp" in payload
        assert theirs.sent == []
        assert device.sent == []

    @pytest.mark.asyncio
    async def test_reason_omitted_when_absent(self, sessions, fake_socket):
        ws = fake_socket()
        await add_session(sessions, ws, DashboardIdentity("t1", "u1"))

        await StatusFanout(sessions).publish_status("t1", "pk-1", "online")

        assert "reason" not in ws.payloads("status-change")[0]

    @pytest.mark.asyncio
    async def test_failed_send_drops_stale_dashboard_only(self, sessions, fake_socket):
        healthy, broken = fake_socket(), fake_socket()
        broken.fail_sends = True
        await add_session(sessions, healthy, DashboardIdentity("t1", "u1"))
        stale = await add_session(sessions, broken, DashboardIdentity("t1", "u2"))

        delivered = await StatusFanout(sessions).publish_status("t1", "pk-1", "online")

        assert delivered == 1
        assert len(healthy.events("status-change")) == 1
        assert sessions.get(stale.id) is None
        assert len(sessions) == 1
