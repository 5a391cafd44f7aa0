import pytest

from services.realtime_service.events import status_changed_event
from services.realtime_service.hub import RealtimeHub
from shared.security.actors import ActorRole


class FakeConnection:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket is closed")
        self.sent.append(data)


@pytest.fixture
def room_hub():
    return RealtimeHub()


def test_subscribe_acknowledges_with_role(room_hub):
    conn = FakeConnection()
    ack = room_hub.subscribe(42, conn, "restaurant")
    assert ack == {"type": "subscribed", "orderId": 42, "role": "restaurant"}
    assert room_hub.role_of(42, conn) is ActorRole.RESTAURANT
    assert room_hub.room_size(42) == 1


async def test_events_only_reach_their_own_room(room_hub):
    watcher, bystander = FakeConnection(), FakeConnection()
    room_hub.subscribe(1, watcher, "student")
    room_hub.subscribe(2, bystander, "student")

    delivered = await room_hub.publish(1, status_changed_event(1, "preparing"))

    assert delivered == 1
    assert [e["status"] for e in watcher.sent] == ["preparing"]
    assert bystander.sent == []


async def test_dead_connection_does_not_block_the_room(room_hub):
    alive, dead, also_alive = FakeConnection(), FakeConnection(fail=True), FakeConnection()
    for conn in (alive, dead, also_alive):
        room_hub.subscribe(9, conn, "student")

    delivered = await room_hub.publish(9, status_changed_event(9, "ready"))

    assert delivered == 2
    assert len(alive.sent) == len(also_alive.sent) == 1
    # The failed socket is dropped so the next publish skips it
    assert room_hub.role_of(9, dead) is None
    assert room_hub.room_size(9) == 2


async def test_publish_can_skip_the_sender(room_hub):
    courier, student = FakeConnection(), FakeConnection()
    room_hub.subscribe(5, courier, "courier")
    room_hub.subscribe(5, student, "student")

    await room_hub.publish(5, {"type": "location", "orderId": 5}, exclude=courier)

    assert courier.sent == []
    assert student.sent == [{"type": "location", "orderId": 5}]


async def test_publish_to_empty_room_is_a_noop(room_hub):
    assert await room_hub.publish(404, status_changed_event(404, "canceled")) == 0


def test_empty_rooms_are_pruned(room_hub):
    conn = FakeConnection()
    room_hub.subscribe(1, conn, "student")
    room_hub.subscribe(2, conn, "student")
    assert room_hub.room_count == 2

    assert room_hub.unsubscribe(1, conn) is True
    assert room_hub.unsubscribe(1, conn) is False
    assert room_hub.room_count == 1

    assert room_hub.disconnect(conn) == 1
    assert room_hub.room_count == 0


def test_resubscribe_updates_role(room_hub):
    conn = FakeConnection()
    room_hub.subscribe(3, conn, "student")
    room_hub.subscribe(3, conn, "courier")
    assert room_hub.room_size(3) == 1
    assert room_hub.role_of(3, conn) is ActorRole.COURIER


def test_unknown_role_is_rejected(room_hub):
    with pytest.raises(ValueError):
        room_hub.subscribe(3, FakeConnection(), "admin")
