import fakeredis
import pytest
import redis

from backend import BackendUnavailableError, MemoryBackend, RedisBackend, load_rooms
from redis_keys import REDIS_ROOMS_KEY, REDIS_STATE_KEY
from schemas.rooms import Room


class UnreachableRedis:
    async def get(self, *args, **kwargs):
        raise redis.ConnectionError("Connection refused")

    async def set(self, *args, **kwargs):
        raise redis.ConnectionError("Connection refused")


def make_rooms():
    return {
        "abc123": Room.model_validate({
            "id": "abc123",
            "host": "p1",
            "players": [{"id": "p1", "name": "Alice", "index": 0}],
            "gameStarted": False,
            "created": 1700000000000,
        })
    }


@pytest.fixture
def redis_client():
    # A private server per test, fakeredis otherwise shares data between clients
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture(params=["memory", "redis"])
def any_backend(request, redis_client):
    if request.param == "memory":
        return MemoryBackend()
    return RedisBackend(redis_client)


async def test_get_rooms_empty_when_nothing_registered(any_backend):
    assert await any_backend.get_rooms() == {}


async def test_save_rooms_overwrites_whole_registry(any_backend):
    await any_backend.save_rooms(make_rooms())
    await any_backend.save_rooms({"zzz": Room(id="zzz", host="p9")})

    rooms = await any_backend.get_rooms()
    assert list(rooms) == ["zzz"]
    assert rooms["zzz"].host == "p9"


async def test_rooms_keep_client_fields(any_backend):
    room = Room.model_validate({"id": "r", "host": "p1", "players": [], "deck": [1, 2, 3]})
    await any_backend.save_rooms({"r": room})

    stored = (await any_backend.get_rooms())["r"]
    assert stored.model_dump(by_alias=True)["deck"] == [1, 2, 3]


async def test_last_state_absent_then_last_write_wins(any_backend):
    assert await any_backend.get_last_state("room1") is None

    await any_backend.set_last_state("room1", {"phase": "bidding", "turn": 1})
    await any_backend.set_last_state("room1", {"phase": "playing", "turn": 2})

    assert await any_backend.get_last_state("room1") == {"phase": "playing", "turn": 2}


async def test_delete_last_state(any_backend):
    await any_backend.set_last_state("room1", {"turn": 1})
    await any_backend.delete_last_state("room1")
    assert await any_backend.get_last_state("room1") is None


async def test_memory_backend_does_not_alias_caller_objects():
    backend = MemoryBackend()
    state = {"hand": [1, 2]}
    await backend.set_last_state("room1", state)
    state["hand"].append(3)

    assert await backend.get_last_state("room1") == {"hand": [1, 2]}


async def test_memory_backend_expires_snapshots():
    clock = [1000.0]
    backend = MemoryBackend(state_ttl=10, clock=lambda: clock[0])

    await backend.set_last_state("room1", {"turn": 1})
    clock[0] += 9
    assert await backend.get_last_state("room1") == {"turn": 1}

    # Each write restarts the window
    await backend.set_last_state("room1", {"turn": 2})
    clock[0] += 9
    assert await backend.get_last_state("room1") == {"turn": 2}

    clock[0] += 2
    assert await backend.get_last_state("room1") is None


async def test_redis_backend_sets_ttl_on_every_write(redis_client):
    backend = RedisBackend(redis_client, state_ttl=3 * 24 * 60 * 60)
    await backend.set_last_state("room1", {"turn": 1})

    ttl = await redis_client.ttl(REDIS_STATE_KEY.format(slug="room1"))
    assert 0 < ttl <= 3 * 24 * 60 * 60
    assert await redis_client.ttl(REDIS_ROOMS_KEY) == -2


async def test_redis_backend_corrupt_snapshot_is_absent(redis_client):
    backend = RedisBackend(redis_client)
    await redis_client.set(REDIS_STATE_KEY.format(slug="room1"), "{not json")

    assert await backend.get_last_state("room1") is None


async def test_redis_backend_corrupt_registry_is_empty(redis_client):
    backend = RedisBackend(redis_client)
    await redis_client.set(REDIS_ROOMS_KEY, "[1, 2")

    assert await backend.get_rooms() == {}


def test_load_rooms_skips_corrupt_entries():
    raw = '{"good": {"id": "good", "players": []}, "bad": {"players": "nope"}}'
    rooms = load_rooms(raw)
    assert list(rooms) == ["good"]


def test_load_rooms_non_object_document():
    assert load_rooms('"just a string"') == {}


async def test_redis_backend_wraps_connection_errors():
    backend = RedisBackend(UnreachableRedis())

    with pytest.raises(BackendUnavailableError):
        await backend.get_last_state("room1")
    with pytest.raises(BackendUnavailableError):
        await backend.set_last_state("room1", {"turn": 1})
