"""SQLAlchemy-backed conversation and reminder stores.

Uses SQLAlchemy 2.0 with an async driver (asyncpg in production, aiosqlite
for local runs and tests). Messages live in their own table so appending is
an insert, never a rewrite of the whole history.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import ForeignKey, String, Text, case, delete, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, selectinload
from sqlalchemy.types import DateTime

from nudge.errors import InvalidTransitionError
from nudge.models.conversation import (
    DEFAULT_CONVERSATION_TITLE,
    Conversation,
    Message,
    MessageRole,
    generate_title,
)
from nudge.models.reminder import Reminder, ReminderStatus, can_transition
from nudge.services.conversation_store import cuid
from nudge.services.reminder_store import UPDATABLE_FIELDS
from nudge.utils.dates import ensure_utc, utc_now
from nudge.utils.logging import get_logger

logger = get_logger(__name__)


# ──────────────────────────────────────────────────────────────────────
# Declarative metadata
# ──────────────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    type_annotation_map = {datetime: DateTime(timezone=True)}


class ConversationRow(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    phone_number: Mapped[str | None] = mapped_column(String(16), index=True)
    title: Mapped[str] = mapped_column(String(200))
    message_count: Mapped[int] = mapped_column(default=0)
    created_at: Mapped[datetime]
    updated_at: Mapped[datetime]
    last_message_at: Mapped[datetime]

    messages: Mapped[list["MessageRow"]] = relationship(
        order_by="MessageRow.position",
        cascade="all, delete-orphan",
        lazy="raise",
    )


class MessageRow(Base):
    __tablename__ = "conversation_messages"

    conversation_id: Mapped[str] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"),
        primary_key=True,
    )
    position: Mapped[int] = mapped_column(primary_key=True)
    role: Mapped[str] = mapped_column(String(16))
    content: Mapped[str] = mapped_column(Text)
    timestamp: Mapped[datetime]


class ReminderRow(Base):
    __tablename__ = "reminders"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    conversation_id: Mapped[str] = mapped_column(String(32), index=True)
    phone_number: Mapped[str] = mapped_column(String(16), index=True)
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text)
    scheduled_for: Mapped[datetime] = mapped_column(index=True)
    status: Mapped[str] = mapped_column(String(16), default=ReminderStatus.PENDING.value, index=True)
    claimed_by: Mapped[str | None] = mapped_column(String(32))
    claimed_at: Mapped[datetime | None]
    created_at: Mapped[datetime]
    updated_at: Mapped[datetime]


# ──────────────────────────────────────────────────────────────────────
# Engine / session factory
# ──────────────────────────────────────────────────────────────────────
def build_async_url(url: str) -> str:
    """Point plain Postgres URLs at the asyncpg driver."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


class Database:
    """Owns the engine and session factory for one database."""

    def __init__(self, url: str, engine: AsyncEngine | None = None):
        self.engine = engine or create_async_engine(build_async_url(url))
        self.session_maker = async_sessionmaker(self.engine, expire_on_commit=False)

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    def session(self) -> AsyncSession:
        return self.session_maker()


# ──────────────────────────────────────────────────────────────────────
# Row <-> model mapping
# ──────────────────────────────────────────────────────────────────────
def _optional_utc(value: datetime | None) -> datetime | None:
    return ensure_utc(value) if value is not None else None


def _to_conversation(row: ConversationRow) -> Conversation:
    return Conversation(
        id=row.id,
        user_id=row.user_id,
        phone_number=row.phone_number,
        title=row.title,
        messages=[
            Message(role=MessageRole(m.role), content=m.content, timestamp=ensure_utc(m.timestamp))
            for m in row.messages
        ],
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
        last_message_at=ensure_utc(row.last_message_at),
    )


def _to_reminder(row: ReminderRow) -> Reminder:
    return Reminder(
        id=row.id,
        user_id=row.user_id,
        conversation_id=row.conversation_id,
        phone_number=row.phone_number,
        title=row.title,
        description=row.description,
        scheduled_for=ensure_utc(row.scheduled_for),
        status=ReminderStatus(row.status),
        claimed_by=row.claimed_by,
        claimed_at=_optional_utc(row.claimed_at),
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


# ──────────────────────────────────────────────────────────────────────
# Conversations
# ──────────────────────────────────────────────────────────────────────
class SqlConversationStore:
    """Conversation store on top of SQLAlchemy."""

    def __init__(self, database: Database, clock: Callable[[], datetime] = utc_now):
        self.database = database
        self._clock = clock

    def _select(self):
        return select(ConversationRow).options(selectinload(ConversationRow.messages))

    async def create(self, user_id: str, phone_number: str | None = None) -> Conversation:
        now = self._clock()
        row = ConversationRow(
            id=cuid(),
            user_id=user_id,
            phone_number=phone_number,
            title=DEFAULT_CONVERSATION_TITLE,
            message_count=0,
            created_at=now,
            updated_at=now,
            last_message_at=now,
        )
        async with self.database.session() as session, session.begin():
            session.add(row)

        logger.info(f"Conversation created with ID: {row.id}")
        return Conversation(
            id=row.id,
            user_id=user_id,
            phone_number=phone_number,
            created_at=now,
            updated_at=now,
            last_message_at=now,
        )

    async def find_by_id(self, conversation_id: str) -> Conversation | None:
        async with self.database.session() as session:
            row = (await session.execute(self._select().where(ConversationRow.id == conversation_id))).scalar()
            return _to_conversation(row) if row else None

    async def find_by_user_id(self, user_id: str) -> list[Conversation]:
        stmt = (
            self._select()
            .where(ConversationRow.user_id == user_id)
            .order_by(ConversationRow.last_message_at.desc())
        )
        async with self.database.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_conversation(row) for row in rows]

    async def find_by_phone_number(self, phone_number: str) -> Conversation | None:
        stmt = (
            self._select()
            .where(ConversationRow.phone_number == phone_number)
            .order_by(ConversationRow.created_at)
            .limit(1)
        )
        async with self.database.session() as session:
            row = (await session.execute(stmt)).scalar()
            return _to_conversation(row) if row else None

    async def get_or_create(self, user_id: str, phone_number: str | None = None) -> Conversation:
        if phone_number:
            existing = await self.find_by_phone_number(phone_number)
            if existing:
                return existing
        return await self.create(user_id, phone_number)

    async def append_message(self, conversation_id: str, role: MessageRole, content: str) -> Conversation | None:
        now = self._clock()

        async with self.database.session() as session, session.begin():
            # Bumping the counter reserves the message position atomically
            result = await session.execute(
                update(ConversationRow)
                .execution_options(synchronize_session=False)
                .where(ConversationRow.id == conversation_id)
                .values(
                    message_count=ConversationRow.message_count + 1,
                    last_message_at=case(
                        (ConversationRow.last_message_at > now, ConversationRow.last_message_at),
                        else_=now,
                    ),
                    updated_at=now,
                )
                .returning(ConversationRow.message_count, ConversationRow.last_message_at)
            )
            reserved = result.one_or_none()
            if reserved is None:
                logger.warning(f"Conversation not found for message append: {conversation_id}")
                return None

            position, timestamp = reserved
            session.add(
                MessageRow(
                    conversation_id=conversation_id,
                    position=position,
                    role=role.value,
                    content=content,
                    timestamp=timestamp,
                )
            )

            if position == 1 and role == MessageRole.USER:
                await session.execute(
                    update(ConversationRow)
                    .execution_options(synchronize_session=False)
                    .where(ConversationRow.id == conversation_id)
                    .values(title=generate_title(content))
                )

        logger.info(f"Message appended to conversation: {conversation_id}")
        return await self.find_by_id(conversation_id)

    async def delete(self, conversation_id: str) -> bool:
        async with self.database.session() as session, session.begin():
            await session.execute(delete(MessageRow).where(MessageRow.conversation_id == conversation_id))
            result = await session.execute(delete(ConversationRow).where(ConversationRow.id == conversation_id))
            return result.rowcount > 0


# ──────────────────────────────────────────────────────────────────────
# Reminders
# ──────────────────────────────────────────────────────────────────────
class SqlReminderStore:
    """Reminder store on top of SQLAlchemy using conditional updates."""

    def __init__(self, database: Database, clock: Callable[[], datetime] = utc_now):
        self.database = database
        self._clock = clock

    async def create(self, reminder: Reminder) -> Reminder:
        now = self._clock()
        row = ReminderRow(
            id=reminder.id,
            user_id=reminder.user_id,
            conversation_id=reminder.conversation_id,
            phone_number=reminder.phone_number,
            title=reminder.title,
            description=reminder.description,
            scheduled_for=reminder.scheduled_for,
            status=reminder.status.value,
            created_at=now,
            updated_at=now,
        )
        async with self.database.session() as session, session.begin():
            session.add(row)

        logger.info(f"Reminder created with ID: {reminder.id}")
        return reminder.model_copy(update={"created_at": now, "updated_at": now})

    async def find_by_id(self, reminder_id: str) -> Reminder | None:
        async with self.database.session() as session:
            row = await session.get(ReminderRow, reminder_id)
            return _to_reminder(row) if row else None

    async def find_many(
        self,
        *,
        user_id: str | None = None,
        conversation_id: str | None = None,
        phone_number: str | None = None,
        status: ReminderStatus | None = None,
    ) -> list[Reminder]:
        stmt = select(ReminderRow)
        if user_id is not None:
            stmt = stmt.where(ReminderRow.user_id == user_id)
        if conversation_id is not None:
            stmt = stmt.where(ReminderRow.conversation_id == conversation_id)
        if phone_number is not None:
            stmt = stmt.where(ReminderRow.phone_number == phone_number)
        if status is not None:
            stmt = stmt.where(ReminderRow.status == status.value)

        async with self.database.session() as session:
            rows = (await session.execute(stmt.order_by(ReminderRow.scheduled_for))).scalars().all()
            return [_to_reminder(row) for row in rows]

    async def find_by_user_id(self, user_id: str) -> list[Reminder]:
        return await self.find_many(user_id=user_id)

    async def find_by_conversation_id(self, conversation_id: str) -> list[Reminder]:
        return await self.find_many(conversation_id=conversation_id)

    async def find_by_phone_number(self, phone_number: str) -> list[Reminder]:
        return await self.find_many(phone_number=phone_number)

    async def find_due_reminders(self, now: datetime) -> list[Reminder]:
        stmt = (
            select(ReminderRow)
            .where(ReminderRow.status == ReminderStatus.PENDING.value, ReminderRow.scheduled_for <= now)
            .order_by(ReminderRow.scheduled_for)
        )
        async with self.database.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_reminder(row) for row in rows]

    async def update(
        self,
        reminder_id: str,
        changes: dict[str, Any],
        expected_status: ReminderStatus = ReminderStatus.PENDING,
    ) -> Reminder | None:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update reminder fields: {', '.join(sorted(unknown))}")

        async with self.database.session() as session, session.begin():
            result = await session.execute(
                update(ReminderRow)
                .execution_options(synchronize_session=False)
                .where(ReminderRow.id == reminder_id, ReminderRow.status == expected_status.value)
                .values(**changes, claimed_by=None, claimed_at=None, updated_at=self._clock())
            )
            if result.rowcount == 0:
                logger.warning(f"Reminder not updatable: {reminder_id}")
                return None

        logger.info(f"Reminder updated: {reminder_id}")
        return await self.find_by_id(reminder_id)

    async def update_status(self, reminder_id: str, status: ReminderStatus) -> Reminder | None:
        if not can_transition(ReminderStatus.PENDING, status):
            raise InvalidTransitionError(f"Cannot move a reminder from pending to {status.value}")

        async with self.database.session() as session, session.begin():
            result = await session.execute(
                update(ReminderRow)
                .execution_options(synchronize_session=False)
                .where(ReminderRow.id == reminder_id, ReminderRow.status == ReminderStatus.PENDING.value)
                .values(status=status.value, claimed_by=None, claimed_at=None, updated_at=self._clock())
            )
            if result.rowcount == 0:
                return None

        logger.info(f"Reminder {reminder_id} status set to {status.value}")
        return await self.find_by_id(reminder_id)

    async def claim_due(self, now: datetime, tick_id: str, lease: timedelta, limit: int = 100) -> list[Reminder]:
        lease_expired_before = now - lease
        claimable = (
            ReminderRow.status == ReminderStatus.PENDING.value,
            ReminderRow.scheduled_for <= now,
            (ReminderRow.claimed_by.is_(None)) | (ReminderRow.claimed_at <= lease_expired_before),
        )

        async with self.database.session() as session:
            candidate_ids = (
                (
                    await session.execute(
                        select(ReminderRow.id).where(*claimable).order_by(ReminderRow.scheduled_for).limit(limit)
                    )
                )
                .scalars()
                .all()
            )

        claimed: list[Reminder] = []
        for reminder_id in candidate_ids:
            # Another replica may have claimed it since the select
            async with self.database.session() as session, session.begin():
                result = await session.execute(
                    update(ReminderRow)
                    .execution_options(synchronize_session=False)
                    .where(ReminderRow.id == reminder_id, *claimable)
                    .values(claimed_by=tick_id, claimed_at=now)
                )
                if result.rowcount == 0:
                    continue
                row = await session.get(ReminderRow, reminder_id)
                claimed.append(_to_reminder(row))

        return claimed

    async def mark_sent(self, reminder_id: str, tick_id: str) -> bool:
        async with self.database.session() as session, session.begin():
            result = await session.execute(
                update(ReminderRow)
                .execution_options(synchronize_session=False)
                .where(
                    ReminderRow.id == reminder_id,
                    ReminderRow.status == ReminderStatus.PENDING.value,
                    ReminderRow.claimed_by == tick_id,
                )
                .values(
                    status=ReminderStatus.SENT.value,
                    claimed_by=None,
                    claimed_at=None,
                    updated_at=self._clock(),
                )
            )
            return result.rowcount > 0

    async def release_claim(self, reminder_id: str, tick_id: str) -> bool:
        async with self.database.session() as session, session.begin():
            result = await session.execute(
                update(ReminderRow)
                .execution_options(synchronize_session=False)
                .where(ReminderRow.id == reminder_id, ReminderRow.claimed_by == tick_id)
                .values(claimed_by=None, claimed_at=None)
            )
            return result.rowcount > 0

    async def delete(self, reminder_id: str) -> bool:
        async with self.database.session() as session, session.begin():
            result = await session.execute(delete(ReminderRow).where(ReminderRow.id == reminder_id))
            return result.rowcount > 0
