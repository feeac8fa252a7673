"""SQLAlchemy (async) store.

The (drop_id, guest_id) unique constraint on ``deliveries`` is what makes the
ledger append-only-once: a duplicate insert fails with IntegrityError and is
reported as "not created".
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from poapcourier.contracts import Delivery, DeliveryTarget, Drop, Guest, SessionCredential


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Base(DeclarativeBase):
    """All ORM models inherit from this base."""


class DropRow(Base):
    __tablename__ = "drops"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    event_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    event_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_real_time: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    delivery_target: Mapped[str] = mapped_column(String(16), default="email", nullable=False)
    email_subject: Mapped[str | None] = mapped_column(String(512), nullable=True)
    email_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    poap_event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    poap_secret_code: Mapped[str] = mapped_column(String(128), nullable=False)
    delivered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class GuestRow(Base):
    __tablename__ = "guests"
    __table_args__ = (UniqueConstraint("drop_id", "guest_id", name="uq_guest_drop_guest"),)

    row_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    drop_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    guest_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    wallet_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    checked_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class DeliveryRow(Base):
    __tablename__ = "deliveries"
    __table_args__ = (UniqueConstraint("drop_id", "guest_id", name="uq_delivery_drop_guest"),)

    row_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    drop_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    guest_id: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    claim_reference: Mapped[str] = mapped_column(String(512), nullable=False)
    checked_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SessionCredentialRow(Base):
    __tablename__ = "session_credentials"

    row_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cookie: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_valid: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _drop_from_row(row: DropRow) -> Drop:
    return Drop(
        id=row.id,
        event_id=row.event_id,
        event_url=row.event_url,
        is_active=row.is_active,
        is_real_time=row.is_real_time,
        delivery_target=DeliveryTarget(row.delivery_target),
        email_subject=row.email_subject,
        email_body=row.email_body,
        poap_event_id=row.poap_event_id,
        poap_secret_code=row.poap_secret_code,
        delivered=row.delivered,
        delivered_at=_utc(row.delivered_at),
    )


def _guest_from_row(row: GuestRow) -> Guest:
    return Guest(
        drop_id=row.drop_id,
        guest_id=row.guest_id,
        name=row.name,
        first_name=row.first_name,
        email=row.email,
        wallet_address=row.wallet_address,
        checked_in_at=_utc(row.checked_in_at),
    )


def _delivery_from_row(row: DeliveryRow) -> Delivery:
    return Delivery(
        drop_id=row.drop_id,
        guest_id=row.guest_id,
        email=row.email,
        name=row.name,
        claim_reference=row.claim_reference,
        checked_in_at=_utc(row.checked_in_at),
        created_at=_utc(row.created_at),
    )


class SqlStore:
    """Store backed by any SQLAlchemy async database URL."""

    def __init__(self, database_url: str, *, echo: bool = False) -> None:
        engine_kwargs: dict = {"echo": echo}
        if not database_url.startswith("sqlite"):
            engine_kwargs["pool_pre_ping"] = True
        self._engine: AsyncEngine = create_async_engine(database_url, **engine_kwargs)
        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def init_schema(self) -> None:
        """Create tables if they do not exist."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    async def list_active_drops(self, *, real_time_only: bool = False) -> list[Drop]:
        query = select(DropRow).where(DropRow.is_active.is_(True))
        if real_time_only:
            query = query.where(DropRow.is_real_time.is_(True))
        async with self._session_factory() as session:
            result = await session.execute(query.order_by(DropRow.id))
            return [_drop_from_row(row) for row in result.scalars()]

    async def get_drop(self, drop_id: str) -> Drop | None:
        async with self._session_factory() as session:
            row = await session.get(DropRow, drop_id)
            return _drop_from_row(row) if row is not None else None

    async def list_guests(self, drop_id: str) -> list[Guest]:
        query = select(GuestRow).where(GuestRow.drop_id == drop_id).order_by(GuestRow.row_id)
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [_guest_from_row(row) for row in result.scalars()]

    async def list_deliveries(self, drop_id: str) -> list[Delivery]:
        query = (
            select(DeliveryRow).where(DeliveryRow.drop_id == drop_id).order_by(DeliveryRow.row_id)
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [_delivery_from_row(row) for row in result.scalars()]

    async def delivered_guest_ids(self, drop_id: str) -> set[str]:
        query = select(DeliveryRow.guest_id).where(DeliveryRow.drop_id == drop_id)
        async with self._session_factory() as session:
            result = await session.execute(query)
            return set(result.scalars())

    async def create_delivery(self, delivery: Delivery) -> bool:
        row = DeliveryRow(
            drop_id=delivery.drop_id,
            guest_id=delivery.guest_id,
            email=delivery.email,
            name=delivery.name,
            claim_reference=delivery.claim_reference,
            checked_in_at=_utc(delivery.checked_in_at),
            created_at=_utc(delivery.created_at),
        )
        async with self._session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        return True

    async def mark_drop_delivered(self, drop_id: str, at: datetime) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                update(DropRow)
                .where(DropRow.id == drop_id)
                .values(delivered=True, delivered_at=_utc(at))
            )
            if result.rowcount == 0:
                await session.rollback()
                raise KeyError(drop_id)
            await session.commit()

    async def get_session_credential(self, now: datetime) -> SessionCredential | None:
        query = (
            select(SessionCredentialRow)
            .where(SessionCredentialRow.is_valid.is_(True))
            .order_by(SessionCredentialRow.created_at.desc(), SessionCredentialRow.row_id.desc())
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            for row in result.scalars():
                credential = SessionCredential(
                    cookie=row.cookie,
                    expires_at=_utc(row.expires_at),
                    created_at=_utc(row.created_at),
                )
                if credential.is_valid_at(now):
                    return credential
        return None

    async def set_session_credential(self, credential: SessionCredential) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(SessionCredentialRow)
                .where(SessionCredentialRow.is_valid.is_(True))
                .values(is_valid=False)
            )
            session.add(
                SessionCredentialRow(
                    cookie=credential.cookie,
                    expires_at=_utc(credential.expires_at),
                    is_valid=True,
                    created_at=_utc(credential.created_at),
                )
            )
            await session.commit()

    async def upsert_drop(self, drop: Drop) -> None:
        values = drop.model_dump()
        values["delivery_target"] = drop.delivery_target.value
        values["delivered_at"] = _utc(drop.delivered_at)
        async with self._session_factory() as session:
            row = await session.get(DropRow, drop.id)
            if row is None:
                session.add(DropRow(**values))
            else:
                for key, value in values.items():
                    setattr(row, key, value)
            await session.commit()

    async def upsert_guest(self, guest: Guest) -> None:
        values = guest.model_dump()
        values["checked_in_at"] = _utc(guest.checked_in_at)
        async with self._session_factory() as session:
            result = await session.execute(
                select(GuestRow).where(
                    GuestRow.drop_id == guest.drop_id, GuestRow.guest_id == guest.guest_id
                )
            )
            row = result.scalars().first()
            if row is None:
                session.add(GuestRow(**values))
            else:
                for key, value in values.items():
                    setattr(row, key, value)
            await session.commit()
