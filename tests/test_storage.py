import sys
import random
import asyncio
from collections import Counter
from pathlib import Path

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import assignments as core  # noqa: E402
import storage  # noqa: E402

FAMILY = ["mom", "dad", "chris", "char", "mitch", "tamsin", "sean", "paulette", "shannon"]


@pytest.fixture(autouse=True)
def db(tmp_path, monkeypatch):
    engine = storage.make_engine(f"sqlite+aiosqlite:///{tmp_path / 'santa.db'}")
    monkeypatch.setattr(storage, "engine", engine)
    monkeypatch.setattr(storage, "Session", async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession))
    monkeypatch.setattr(storage, "_draw_locks", {})
    asyncio.run(storage.init_db())
    yield
    asyncio.run(engine.dispose())


async def room_with(names, k=1, owner_id=1):
    room = await storage.create_room(owner_id, "Stewart Family Christmas", k)
    for i, name in enumerate(names):
        await storage.join_room(room, 100 + i, name)
    return room


def test_sanitize_db_url() -> None:
    url = storage.sanitize_db_url("postgres://u:p@host:5432/db?statement_cache_size=0")
    assert url.startswith("postgresql+psycopg://u:p@host:5432/db?")
    assert "statement_cache_size" not in url
    assert "sslmode=require" in url
    assert storage.sanitize_db_url("sqlite+aiosqlite:///./santa.db") == "sqlite+aiosqlite:///./santa.db"


def test_create_room_validates_gift_count() -> None:
    with pytest.raises(ValueError):
        asyncio.run(storage.create_room(1, "x", 4))


def test_create_room_limit(monkeypatch) -> None:
    monkeypatch.setattr(storage, "MAX_ROOMS_PER_OWNER", 1)

    async def scenario():
        await storage.create_room(1)
        with pytest.raises(storage.RoomLimitReached):
            await storage.create_room(1)

    asyncio.run(scenario())


def test_room_full(monkeypatch) -> None:
    monkeypatch.setattr(storage, "MAX_PARTICIPANTS_PER_ROOM", 3)

    async def scenario():
        room = await room_with(["a", "b", "c"])
        with pytest.raises(storage.RoomFull):
            await storage.join_room(room, 999, "d")

    asyncio.run(scenario())


def test_rejoin_updates_name() -> None:
    async def scenario():
        room = await room_with(["a", "b", "c"])
        await storage.join_room(room, 100, "Alice")
        return await storage.joined_participants(room.id)

    names = [p.name for p in asyncio.run(scenario())]
    assert len(names) == 3
    assert "Alice" in names and "a" not in names


def test_generate_persist_and_verify_family() -> None:
    async def scenario():
        room = await room_with(FAMILY, k=2)
        result = await storage.generate_for_room(room.id, rng=random.Random(1))
        persisted = await storage.load_assignments(room.id)
        report = await storage.verify_room(room.id)
        fresh = await storage.get_room(room.code)
        return result, persisted, report, fresh

    result, persisted, report, fresh = asyncio.run(scenario())
    assert len(result) == 18
    assert sorted(persisted, key=lambda a: (a.giver_id, a.gift_number)) == \
        sorted(result, key=lambda a: (a.giver_id, a.gift_number))
    assert report.is_valid
    assert report.group_name == "Stewart Family Christmas"
    assert report.total_participants == 9
    assert fresh.drawn


def test_generate_refuses_when_assignments_exist() -> None:
    async def scenario():
        room = await room_with(["a", "b", "c", "d"])
        await storage.generate_for_room(room.id)
        with pytest.raises(storage.AssignmentsExist):
            await storage.generate_for_room(room.id)
        return await storage.count_assignments(room.id)

    assert asyncio.run(scenario()) == 4


def test_concurrent_draws_only_one_lands() -> None:
    async def scenario():
        room = await room_with(["a", "b", "c", "d"], k=2)
        results = await asyncio.gather(
            storage.generate_for_room(room.id),
            storage.generate_for_room(room.id),
            return_exceptions=True,
        )
        return results, await storage.count_assignments(room.id)

    results, count = asyncio.run(scenario())
    assert sum(isinstance(r, storage.AssignmentsExist) for r in results) == 1
    assert count == 8


def test_generate_too_few_participants_persists_nothing() -> None:
    async def scenario():
        room = await room_with(["a", "b"])
        with pytest.raises(core.InsufficientParticipants):
            await storage.generate_for_room(room.id)
        return await storage.count_assignments(room.id), await storage.get_room(room.code)

    count, room = asyncio.run(scenario())
    assert count == 0
    assert not room.drawn


def test_generate_ignores_participants_not_joined() -> None:
    async def scenario():
        room = await room_with(["a", "b", "c", "d"])
        async with storage.Session() as s:
            await s.execute(
                update(storage.Participant)
                .where(storage.Participant.user_id == 103)
                .values(status="invited")
            )
            await s.commit()
        result = await storage.generate_for_room(room.id)
        joined = await storage.joined_participants(room.id)
        return result, joined

    result, joined = asyncio.run(scenario())
    assert len(joined) == 3
    assert len(result) == 3
    ids = {p.id for p in joined}
    assert {a.giver_id for a in result} == ids
    assert {a.receiver_id for a in result} == ids


def test_clear_then_regenerate() -> None:
    async def scenario():
        room = await room_with(["a", "b", "c", "d", "e"], k=3)
        await storage.generate_for_room(room.id)
        removed = await storage.clear_assignments(room.id)
        after_clear = await storage.get_room(room.code)
        empty_report = await storage.verify_room(room.id)
        again = await storage.generate_for_room(room.id)
        return removed, after_clear, empty_report, again

    removed, after_clear, empty_report, again = asyncio.run(scenario())
    assert removed == 15
    assert not after_clear.drawn
    assert not empty_report.is_valid
    assert empty_report.total_assignments == 0
    assert len(again) == 15


def test_join_and_leave_blocked_after_draw() -> None:
    async def scenario():
        room = await room_with(["a", "b", "c"])
        await storage.generate_for_room(room.id)
        with pytest.raises(storage.AlreadyDrawn):
            await storage.join_room(room, 999, "late")
        with pytest.raises(storage.AlreadyDrawn):
            await storage.leave_room(room, 100)

    asyncio.run(scenario())


def test_leave_before_draw() -> None:
    async def scenario():
        room = await room_with(["a", "b", "c"])
        left = await storage.leave_room(room, 101)
        missing = await storage.leave_room(room, 555)
        return left, missing, await storage.joined_participants(room.id)

    left, missing, joined = asyncio.run(scenario())
    assert left and not missing
    assert [p.name for p in joined] == ["a", "c"]


def test_verify_room_reports_corruption() -> None:
    async def scenario():
        room = await room_with(["a", "b", "c", "d"], k=2)
        result = await storage.generate_for_room(room.id, rng=random.Random(2))
        victim = result[0]
        async with storage.Session() as s:
            await s.execute(
                update(storage.AssignmentRow)
                .where(
                    storage.AssignmentRow.room_id == room.id,
                    storage.AssignmentRow.giver_id == victim.giver_id,
                    storage.AssignmentRow.gift_number == victim.gift_number,
                )
                .values(receiver_id=victim.giver_id)
            )
            await s.commit()
        return await storage.verify_room(room.id)

    report = asyncio.run(scenario())
    assert report.has_self_assignments
    assert not report.is_valid


def test_assignments_for_participant_and_listing() -> None:
    async def scenario():
        room = await room_with(FAMILY, k=3)
        await storage.generate_for_room(room.id)
        me = await storage.get_member(room.id, 100)
        mine = await storage.assignments_for_participant(room.id, me.id)
        everything = await storage.all_assignments(room.id)
        return me, mine, everything

    me, mine, everything = asyncio.run(scenario())
    assert [n for _, n in mine] == [1, 2, 3]
    assert len({name for name, _ in mine}) == 3
    assert me.name not in {name for name, _ in mine}

    assert len(everything) == 27
    assert set(everything[0]) == {"giverName", "giverEmail", "receiverName", "giftNumber"}
    assert [r["giverName"] for r in everything] == sorted(r["giverName"] for r in everything)
    assert Counter(r["receiverName"] for r in everything) == Counter({n: 3 for n in FAMILY})


def test_user_active_room() -> None:
    async def scenario():
        room = await room_with(["a", "b", "c"])
        return room, await storage.get_user_active_room(101), await storage.get_user_active_room(12345)

    room, active, none = asyncio.run(scenario())
    assert active.code == room.code
    assert none is None


def test_runtime_lock() -> None:
    async def scenario():
        first = await storage.acquire_runtime_lock("123456:ABCDEF")
        second = await storage.acquire_runtime_lock("123456:ABCDEF")
        await storage.release_runtime_lock("123456:ABCDEF")
        third = await storage.acquire_runtime_lock("123456:ABCDEF")
        return first, second, third

    assert asyncio.run(scenario()) == (True, False, True)


def test_set_gifts_per_participant_validates_choice() -> None:
    async def scenario():
        room = await room_with(["a", "b", "c"], k=1)
        with pytest.raises(ValueError):
            await storage.set_gifts_per_participant(room.id, 4)
        with pytest.raises(ValueError):
            await storage.set_gifts_per_participant(room.id, 0)
        return await storage.get_room(room.code)

    assert asyncio.run(scenario()).gifts_per_participant == 1


def test_set_gifts_per_participant_refused_after_draw() -> None:
    async def scenario():
        room = await room_with(["a", "b", "c", "d"], k=1)
        await storage.generate_for_room(room.id)
        with pytest.raises(storage.AlreadyDrawn):
            await storage.set_gifts_per_participant(room.id, 2)
        await storage.clear_assignments(room.id)
        return await storage.set_gifts_per_participant(room.id, 2)

    assert asyncio.run(scenario()).gifts_per_participant == 2


def test_lowering_gifts_lets_small_room_draw() -> None:
    async def scenario():
        room = await room_with(["a", "b", "c"], k=3)
        with pytest.raises(core.InsufficientParticipants) as exc:
            await storage.generate_for_room(room.id)
        await storage.set_gifts_per_participant(room.id, 2)
        result = await storage.generate_for_room(room.id)
        return str(exc.value), result, await storage.verify_room(room.id)

    message, result, report = asyncio.run(scenario())
    assert message == "Need at least 4 participants for 3 gifts per person (got 3)"
    assert len(result) == 6
    assert report.is_valid
    assert report.gifts_per_participant == 2


def test_draw_locks_one_per_room() -> None:
    async def scenario():
        first = await room_with(["a", "b", "c"])
        second = await room_with(["d", "e", "f"], owner_id=2)
        for _ in range(3):
            await storage.generate_for_room(first.id)
            await storage.clear_assignments(first.id)
        await storage.set_gifts_per_participant(second.id, 2)
        await storage.generate_for_room(second.id)
        return first, second

    first, second = asyncio.run(scenario())
    assert set(storage._draw_locks) == {first.id, second.id}
