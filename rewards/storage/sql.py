"""Durable storage backed by SQLAlchemy.

Same guarantees as the in-memory store: entity keys are serialized in-process
through the lock table, each transaction is one database transaction, and the
``referral_edges.referred_id`` primary key is the uniqueness constraint that
decides concurrent referral claims. On SQLite every transaction starts with
``BEGIN IMMEDIATE`` so two writers never both read a stale snapshot.
"""

from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterator, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Integer,
    String,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from ..errors import DuplicateKeyError, StorageError
from ..logging_config import get_logger
from ..models import (
    Account,
    AdminStats,
    DeviceBinding,
    ReferralEdge,
    VerificationChallenge,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .base import LockTable, Storage, Transaction

logger = get_logger(__name__)


class Base(DeclarativeBase):
    pass


class AccountRow(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_referrals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    device_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_withdraw_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    withdraw_count_today: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
    )


class ReferralEdgeRow(Base):
    __tablename__ = "referral_edges"

    referred_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    referrer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    device_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("referrer_id <> referred_id", name="ck_referral_edges_not_self"),
    )


class DeviceBindingRow(Base):
    __tablename__ = "device_bindings"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    fingerprint: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class VerificationChallengeRow(Base):
    __tablename__ = "verification_challenges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    fingerprint: Mapped[str] = mapped_column(String(128), nullable=False)
    code: Mapped[str] = mapped_column(String(12), nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class WithdrawalRequestRow(Base):
    __tablename__ = "withdrawal_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    payout_target: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=WithdrawalStatus.PENDING.value, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class MarkerRow(Base):
    __tablename__ = "ledger_markers"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[date] = mapped_column(Date, nullable=False)


def _withdrawal(row: WithdrawalRequestRow) -> WithdrawalRequest:
    return WithdrawalRequest.model_validate(row)


class SqlTransaction(Transaction):
    def __init__(self, session: Session):
        self.session = session

    def get_account(self, account_id: str) -> Optional[Account]:
        row = self.session.get(AccountRow, account_id)
        return Account.model_validate(row) if row else None

    def save_account(self, account: Account) -> None:
        self.session.merge(AccountRow(**account.model_dump()))

    def get_edge(self, referred_id: str) -> Optional[ReferralEdge]:
        row = self.session.get(ReferralEdgeRow, referred_id)
        return ReferralEdge.model_validate(row) if row else None

    def add_edge(self, edge: ReferralEdge) -> None:
        self.session.add(ReferralEdgeRow(**edge.model_dump()))
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise DuplicateKeyError(f"Referral edge for {edge.referred_id} already exists") from exc

    def save_edge(self, edge: ReferralEdge) -> None:
        self.session.merge(ReferralEdgeRow(**edge.model_dump()))

    def device_seen_elsewhere(self, fingerprint: str, account_id: str) -> bool:
        bound = self.session.scalar(
            select(func.count()).select_from(DeviceBindingRow).where(
                DeviceBindingRow.fingerprint == fingerprint,
                DeviceBindingRow.account_id != account_id,
            )
        )
        if bound:
            return True
        referred = self.session.scalar(
            select(func.count()).select_from(ReferralEdgeRow).where(
                ReferralEdgeRow.device_id == fingerprint,
                ReferralEdgeRow.referred_id != account_id,
            )
        )
        return bool(referred)

    def get_binding(self, account_id: str) -> Optional[DeviceBinding]:
        row = self.session.get(DeviceBindingRow, account_id)
        return DeviceBinding.model_validate(row) if row else None

    def save_binding(self, binding: DeviceBinding) -> None:
        self.session.merge(DeviceBindingRow(**binding.model_dump()))

    def latest_challenge(self, account_id: str, fingerprint: str) -> Optional[VerificationChallenge]:
        row = self.session.scalars(
            select(VerificationChallengeRow)
            .where(
                VerificationChallengeRow.account_id == account_id,
                VerificationChallengeRow.fingerprint == fingerprint,
            )
            .order_by(VerificationChallengeRow.id.desc())
            .limit(1)
        ).first()
        return VerificationChallenge.model_validate(row) if row else None

    def add_challenge(self, challenge: VerificationChallenge) -> VerificationChallenge:
        row = VerificationChallengeRow(**challenge.model_dump(exclude={"id"}))
        self.session.add(row)
        self.session.flush()
        return VerificationChallenge.model_validate(row)

    def save_challenge(self, challenge: VerificationChallenge) -> None:
        self.session.merge(VerificationChallengeRow(**challenge.model_dump()))

    def add_withdrawal(self, request: WithdrawalRequest) -> WithdrawalRequest:
        data = request.model_dump(exclude={"id"})
        data["status"] = request.status.value
        row = WithdrawalRequestRow(**data)
        self.session.add(row)
        self.session.flush()
        return _withdrawal(row)

    def get_withdrawal(self, request_id: int) -> Optional[WithdrawalRequest]:
        row = self.session.get(WithdrawalRequestRow, request_id)
        return _withdrawal(row) if row else None

    def save_withdrawal(self, request: WithdrawalRequest) -> None:
        data = request.model_dump()
        data["status"] = request.status.value
        self.session.merge(WithdrawalRequestRow(**data))

    def get_marker(self, name: str) -> Optional[date]:
        row = self.session.get(MarkerRow, name)
        return row.value if row else None

    def set_marker(self, name: str, value: date) -> None:
        self.session.merge(MarkerRow(name=name, value=value))


class SqlStorage(Storage):
    def __init__(self, database_url: str, lock_stripes: int = 64, echo: bool = False):
        self.database_url = database_url
        self.engine = create_engine(database_url, echo=echo, pool_pre_ping=True)
        if self.engine.dialect.name == "sqlite":
            _use_immediate_transactions(self.engine)
        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
        )
        self.locks = LockTable(lock_stripes)
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as exc:
            raise StorageError(f"Cannot initialise database: {exc}") from exc
        logger.info("sql_storage_initialized", dialect=self.engine.dialect.name)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise DuplicateKeyError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("storage_failure", error=str(exc))
            raise StorageError("Storage unavailable") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def transaction(self, *keys: str) -> Iterator[SqlTransaction]:
        with self.locks.hold(*keys):
            with self._session() as session:
                yield SqlTransaction(session)

    def account_ids(self) -> list[str]:
        with self._session() as session:
            return list(session.scalars(select(AccountRow.id)))

    def list_edges(self, referrer_id: str) -> list[ReferralEdge]:
        with self._session() as session:
            rows = session.scalars(
                select(ReferralEdgeRow)
                .where(ReferralEdgeRow.referrer_id == referrer_id)
                .order_by(ReferralEdgeRow.created_at.desc())
            )
            return [ReferralEdge.model_validate(row) for row in rows]

    def list_withdrawals(
        self,
        account_id: Optional[str] = None,
        status: Optional[WithdrawalStatus] = None,
        limit: int = 20,
    ) -> list[WithdrawalRequest]:
        query = select(WithdrawalRequestRow)
        if account_id is not None:
            query = query.where(WithdrawalRequestRow.account_id == account_id)
        if status is not None:
            query = query.where(WithdrawalRequestRow.status == status.value)
        query = query.order_by(WithdrawalRequestRow.id.desc()).limit(limit)
        with self._session() as session:
            return [_withdrawal(row) for row in session.scalars(query)]

    def stats(self) -> AdminStats:
        with self._session() as session:
            user_count, total_balance = session.execute(
                select(func.count(AccountRow.id), func.coalesce(func.sum(AccountRow.balance), 0))
            ).one()
            pending = session.scalar(
                select(func.count()).select_from(WithdrawalRequestRow).where(
                    WithdrawalRequestRow.status == WithdrawalStatus.PENDING.value
                )
            )
        return AdminStats(user_count=user_count, total_balance=total_balance, pending_withdrawals=pending)

    def close(self) -> None:
        self.engine.dispose()


def _use_immediate_transactions(engine) -> None:
    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
