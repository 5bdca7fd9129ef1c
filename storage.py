# storage.py — rooms, participants and assignment triples (SQLAlchemy async)

import os
import uuid
import random
import asyncio
import hashlib
import logging
import secrets
import string
from typing import Optional, List, Tuple, Dict
from datetime import datetime, timedelta, UTC

from sqlalchemy import (
    select, func, Integer, BigInteger, Boolean, ForeignKey,
    String as SAString, UniqueConstraint, delete
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, aliased
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import NullPool
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode

import assignments as core

logger = logging.getLogger(__name__)

# ============================================================
# ENV + URL sanitize
# ============================================================
def sanitize_db_url(url: str) -> str:
    if not url.startswith(("postgres://", "postgresql://", "postgresql+psycopg://")):
        return url
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+psycopg://", 1)
    elif url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    parts = urlsplit(url)
    q = dict(parse_qsl(parts.query, keep_blank_values=True))
    bad = {
        "prepared_statement_cache_size",
        "statement_cache_size",
        "prepared_statements",
        "server_prepared_statements",
    }
    for k in list(q):
        if k in bad:
            q.pop(k, None)
    q.setdefault("sslmode", "require")
    return urlunsplit(parts._replace(query=urlencode(q)))

DATABASE_URL = sanitize_db_url(os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./santa.db"))

MAX_ROOMS_PER_OWNER = int(os.environ.get("MAX_ROOMS_PER_OWNER", "5"))
MAX_PARTICIPANTS_PER_ROOM = int(os.environ.get("MAX_PARTICIPANTS_PER_ROOM", "50"))

# ============================================================
# Errors
# ============================================================
class StorageError(Exception):
    pass

class RoomLimitReached(StorageError):
    pass

class RoomFull(StorageError):
    pass

class AlreadyDrawn(StorageError):
    pass

class AssignmentsExist(StorageError):
    pass

# ============================================================
# DB models
# ============================================================
class Base(DeclarativeBase): pass

class Room(Base):
    __tablename__ = "rooms"
    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(SAString(10), unique=True, index=True)
    owner_id: Mapped[int] = mapped_column(BigInteger)
    title: Mapped[str] = mapped_column(SAString(64), default="Secret Santa")
    gifts_per_participant: Mapped[int] = mapped_column(Integer, default=1)
    drawn: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC))

class Participant(Base):
    __tablename__ = "participants"
    id: Mapped[str] = mapped_column(SAString(32), primary_key=True, default=lambda: uuid.uuid4().hex)
    room_id: Mapped[int] = mapped_column(ForeignKey("rooms.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[int] = mapped_column(BigInteger, index=True)
    name: Mapped[str] = mapped_column(SAString(64))
    email: Mapped[Optional[str]] = mapped_column(SAString(254), nullable=True)
    status: Mapped[str] = mapped_column(SAString(16), default="joined")
    joined_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC))
    __table_args__ = (UniqueConstraint("room_id", "user_id", name="uq_room_user"),)

class AssignmentRow(Base):
    __tablename__ = "assignments"
    id: Mapped[int] = mapped_column(primary_key=True)
    room_id: Mapped[int] = mapped_column(ForeignKey("rooms.id", ondelete="CASCADE"), index=True)
    giver_id: Mapped[str] = mapped_column(ForeignKey("participants.id", ondelete="CASCADE"), index=True)
    receiver_id: Mapped[str] = mapped_column(ForeignKey("participants.id", ondelete="CASCADE"), index=True)
    gift_number: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC))
    __table_args__ = (UniqueConstraint("room_id", "giver_id", "gift_number", name="uq_giver_gift"),)

class RuntimeLock(Base):
    __tablename__ = "runtime_lock"
    id: Mapped[int] = mapped_column(primary_key=True)
    bot_token_hash: Mapped[str] = mapped_column(SAString(64), unique=True, index=True)
    started_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC))

# ============================================================
# Engine / Session
# ============================================================
def make_engine(url: str):
    connect_args: Dict[str, object] = {}
    if url.startswith("postgresql+psycopg://"):
        # Disable server-side prepared statements so PgBouncer in transaction
        # pooling mode doesn't invalidate cached statements between requests.
        connect_args["prepare_threshold"] = None
    return create_async_engine(
        url,
        echo=False,
        connect_args=connect_args,
        poolclass=NullPool,  # безопасно за PgBouncer
    )

engine = make_engine(DATABASE_URL)
Session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

async def init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

# ============================================================
# Rooms / participants
# ============================================================
def gen_code(n: int = 6) -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(n))

def to_core(p: Participant) -> core.Participant:
    return core.Participant(id=p.id, name=p.name, email=p.email)

async def create_room(owner_id: int, title: str = "Secret Santa", gifts_per_participant: int = 1) -> Room:
    if gifts_per_participant not in core.GIFTS_PER_PARTICIPANT_CHOICES:
        raise ValueError("gifts_per_participant must be 1, 2 or 3")
    async with Session() as s:
        cnt = (await s.execute(
            select(func.count()).select_from(Room).where(Room.owner_id == owner_id)
        )).scalar()
        if cnt >= MAX_ROOMS_PER_OWNER:
            raise RoomLimitReached(f"Room limit reached ({MAX_ROOMS_PER_OWNER})")
        room = Room(code=gen_code(), owner_id=owner_id, title=title[:64],
                    gifts_per_participant=gifts_per_participant)
        s.add(room)
        await s.commit()
    return room

async def set_gifts_per_participant(room_id: int, gifts_per_participant: int) -> Room:
    if gifts_per_participant not in core.GIFTS_PER_PARTICIPANT_CHOICES:
        raise ValueError("gifts_per_participant must be 1, 2 or 3")
    async with _draw_lock(room_id):
        async with Session() as s:
            room = await s.get(Room, room_id)
            if room is None:
                raise LookupError(f"Room {room_id} not found")
            if room.drawn:
                raise AlreadyDrawn("The draw has already happened; reset it before changing gifts per person")
            room.gifts_per_participant = gifts_per_participant
            await s.commit()
    logger.info("Room %s now has %d gifts per participant", room_id, gifts_per_participant)
    return room

async def get_room(code: str) -> Optional[Room]:
    async with Session() as s:
        return (await s.execute(select(Room).where(Room.code == code))).scalar_one_or_none()

async def get_member(room_id: int, user_id: int) -> Optional[Participant]:
    async with Session() as s:
        return (await s.execute(
            select(Participant).where(Participant.room_id == room_id, Participant.user_id == user_id)
        )).scalar_one_or_none()

async def get_user_active_room(user_id: int) -> Optional[Room]:
    async with Session() as s:
        p = (await s.execute(
            select(Participant).where(Participant.user_id == user_id)
            .order_by(Participant.joined_at.desc())
            .limit(1)
        )).scalar_one_or_none()
        if not p: return None
        return (await s.execute(select(Room).where(Room.id == p.room_id))).scalar_one_or_none()

async def join_room(room: Room, user_id: int, name: str, email: Optional[str] = None) -> Participant:
    async with Session() as s:
        me = (await s.execute(
            select(Participant).where(Participant.room_id == room.id, Participant.user_id == user_id)
        )).scalar_one_or_none()
        if me:
            me.name = name[:64]
            if email is not None:
                me.email = email
            await s.commit()
            return me
        fresh = await s.get(Room, room.id)
        if fresh is None or fresh.drawn:
            raise AlreadyDrawn("The draw has already happened in this room")
        count = (await s.execute(
            select(func.count()).select_from(Participant).where(Participant.room_id == room.id)
        )).scalar()
        if count >= MAX_PARTICIPANTS_PER_ROOM:
            raise RoomFull(f"Room is full ({MAX_PARTICIPANTS_PER_ROOM} participants)")
        me = Participant(room_id=room.id, user_id=user_id, name=name[:64], email=email)
        s.add(me)
        await s.commit()
    return me

async def leave_room(room: Room, user_id: int) -> bool:
    async with Session() as s:
        fresh = await s.get(Room, room.id)
        if fresh is not None and fresh.drawn:
            raise AlreadyDrawn("Can't leave after the draw; ask the owner to reset it first")
        me = (await s.execute(
            select(Participant).where(Participant.room_id == room.id, Participant.user_id == user_id)
        )).scalar_one_or_none()
        if not me:
            return False
        await s.delete(me)
        await s.commit()
    return True

async def joined_participants(room_id: int) -> List[core.Participant]:
    async with Session() as s:
        rows = (await s.execute(
            select(Participant)
            .where(Participant.room_id == room_id, Participant.status == "joined")
            .order_by(Participant.joined_at, Participant.id)
        )).scalars().all()
    return [to_core(p) for p in rows]

# ============================================================
# Assignments
# ============================================================
# one lock per room for the life of the process, never evicted
_draw_locks: Dict[int, asyncio.Lock] = {}

def _draw_lock(room_id: int) -> asyncio.Lock:
    return _draw_locks.setdefault(room_id, asyncio.Lock())

async def count_assignments(room_id: int) -> int:
    async with Session() as s:
        return (await s.execute(
            select(func.count()).select_from(AssignmentRow).where(AssignmentRow.room_id == room_id)
        )).scalar()

async def generate_for_room(room_id: int, rng: Optional[random.Random] = None) -> List[core.Assignment]:
    async with _draw_lock(room_id):
        if await count_assignments(room_id):
            raise AssignmentsExist("Assignments already exist for this room; reset them first")
        async with Session() as s:
            room = await s.get(Room, room_id)
            if room is None:
                raise LookupError(f"Room {room_id} not found")
            participants = [to_core(p) for p in (await s.execute(
                select(Participant)
                .where(Participant.room_id == room_id, Participant.status == "joined")
                .order_by(Participant.joined_at, Participant.id)
            )).scalars().all()]

            result = core.generate(participants, room.gifts_per_participant, rng=rng)

            # очистка + вставка одной транзакцией
            await s.execute(delete(AssignmentRow).where(AssignmentRow.room_id == room_id))
            s.add_all([
                AssignmentRow(room_id=room_id, giver_id=a.giver_id, receiver_id=a.receiver_id,
                              gift_number=a.gift_number)
                for a in result
            ])
            room.drawn = True
            try:
                await s.commit()
            except IntegrityError:
                await s.rollback()
                raise AssignmentsExist("Assignments were generated concurrently for this room")
    logger.info("Room %s drawn: %d assignments", room_id, len(result))
    return result

async def clear_assignments(room_id: int) -> int:
    async with _draw_lock(room_id):
        async with Session() as s:
            res = await s.execute(delete(AssignmentRow).where(AssignmentRow.room_id == room_id))
            room = await s.get(Room, room_id)
            if room is not None:
                room.drawn = False
            await s.commit()
    logger.info("Room %s reset: %d assignments removed", room_id, res.rowcount)
    return res.rowcount

async def load_assignments(room_id: int) -> List[core.Assignment]:
    async with Session() as s:
        rows = (await s.execute(
            select(AssignmentRow).where(AssignmentRow.room_id == room_id)
            .order_by(AssignmentRow.giver_id, AssignmentRow.gift_number)
        )).scalars().all()
    return [core.Assignment(r.giver_id, r.receiver_id, r.gift_number) for r in rows]

async def verify_room(room_id: int) -> core.VerificationReport:
    async with Session() as s:
        room = await s.get(Room, room_id)
    if room is None:
        raise LookupError(f"Room {room_id} not found")
    participants = await joined_participants(room_id)
    return core.verify(participants, await load_assignments(room_id), room.gifts_per_participant,
                       group_name=room.title)

async def assignments_for_participant(room_id: int, participant_id: str) -> List[Tuple[str, int]]:
    async with Session() as s:
        rows = (await s.execute(
            select(Participant.name, AssignmentRow.gift_number)
            .select_from(AssignmentRow)
            .join(Participant, AssignmentRow.receiver_id == Participant.id)
            .where(AssignmentRow.room_id == room_id, AssignmentRow.giver_id == participant_id)
            .order_by(AssignmentRow.gift_number)
        )).all()
    return [(name, gift_number) for name, gift_number in rows]

async def all_assignments(room_id: int) -> List[Dict[str, object]]:
    giver = aliased(Participant)
    receiver = aliased(Participant)
    async with Session() as s:
        rows = (await s.execute(
            select(giver.name, giver.email, receiver.name, AssignmentRow.gift_number)
            .select_from(AssignmentRow)
            .join(giver, AssignmentRow.giver_id == giver.id)
            .join(receiver, AssignmentRow.receiver_id == receiver.id)
            .where(AssignmentRow.room_id == room_id)
            .order_by(giver.name, AssignmentRow.gift_number)
        )).all()
    return [
        {"giverName": g, "giverEmail": e, "receiverName": r, "giftNumber": n}
        for g, e, r, n in rows
    ]

# ============================================================
# Runtime lock (single-instance polling)
# ============================================================
def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None: return None
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)

async def acquire_runtime_lock(token: str, ttl_seconds: int = 600) -> bool:
    h = hashlib.sha256(token.encode()).hexdigest()
    now = datetime.now(UTC)
    ttl_ago = now - timedelta(seconds=ttl_seconds)
    async with Session() as s:
        existing = (await s.execute(select(RuntimeLock).where(RuntimeLock.bot_token_hash == h))).scalar_one_or_none()
        if existing:
            started = _aware(existing.started_at)
            if started and started < ttl_ago:
                await s.delete(existing)
                await s.commit()
            else:
                return False
        s.add(RuntimeLock(bot_token_hash=h, started_at=now))
        try:
            await s.commit()
            return True
        except IntegrityError:
            await s.rollback()
            return False

async def release_runtime_lock(token: str):
    h = hashlib.sha256(token.encode()).hexdigest()
    async with Session() as s:
        row = (await s.execute(select(RuntimeLock).where(RuntimeLock.bot_token_hash == h))).scalar_one_or_none()
        if row:
            await s.delete(row)
            await s.commit()
