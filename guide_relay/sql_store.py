"""
SQLAlchemy-backed store used by the relay service.
Any SQLAlchemyError is re-raised as StorageUnavailable so callers see one failure type.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import replace
from typing import Iterator

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, create_engine, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import StorageUnavailable
from .models import ChatMessage, StatusRequest, VisitReport
from .store import MESSAGES_TABLE, REQUESTS_TABLE, VISITS_TABLE, ChangeEvent, Store

logger = logging.getLogger(__name__)

Base = declarative_base()


class StatusRequestRow(Base):
    __tablename__ = REQUESTS_TABLE

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(String(64), nullable=False, index=True)
    kind = Column(String(64), nullable=False, index=True)
    message = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)
    is_consumed = Column(Boolean, nullable=False, default=False)
    consumed_at = Column(DateTime, nullable=True)
    announcement_ref = Column(Integer, nullable=True, index=True)  # chat_messages.id

    def to_record(self) -> StatusRequest:
        return StatusRequest(
            id=self.id,
            store_id=self.store_id,
            kind=self.kind,
            message=self.message,
            created_at=self.created_at,
            expires_at=self.expires_at,
            is_consumed=bool(self.is_consumed),
            consumed_at=self.consumed_at,
            announcement_ref=self.announcement_ref,
        )


class ChatMessageRow(Base):
    __tablename__ = MESSAGES_TABLE

    id = Column(Integer, primary_key=True, autoincrement=True)
    sender_id = Column(String(64), nullable=False)
    sender_role = Column(String(16), nullable=False)
    sender_name = Column(String(255), nullable=True)
    message = Column(Text, nullable=False)
    message_type = Column(String(32), nullable=False, default="chat")  # chat | status_request
    kind = Column(String(64), nullable=True)
    is_edited = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, index=True)

    def to_record(self) -> ChatMessage:
        return ChatMessage(
            id=self.id,
            sender_id=self.sender_id,
            sender_role=self.sender_role,
            message=self.message,
            created_at=self.created_at,
            is_edited=bool(self.is_edited),
            sender_name=self.sender_name,
            message_type=self.message_type,
            kind=self.kind,
        )


class VisitReportRow(Base):
    __tablename__ = VISITS_TABLE

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(String(64), nullable=False, index=True)
    staff_id = Column(String(64), nullable=False)
    guest_count = Column(Integer, nullable=False, default=1)
    guided_at = Column(DateTime, nullable=False, index=True)

    def to_record(self) -> VisitReport:
        return VisitReport(
            id=self.id,
            store_id=self.store_id,
            staff_id=self.staff_id,
            guest_count=self.guest_count,
            guided_at=self.guided_at,
        )


def make_engine(database_url: str):
    """Engine for `database_url`. In-memory SQLite shares one connection across threads."""
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True, pool_recycle=300)


class SqlStore(Store):
    def __init__(self, database_url: str = "sqlite://", *, create_tables: bool = True) -> None:
        super().__init__()
        self.engine = make_engine(database_url)
        self._sessions = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        if create_tables:
            Base.metadata.create_all(self.engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._sessions()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("store operation failed: %s", e)
            raise StorageUnavailable(str(e)) from e
        finally:
            db.close()

    # -------------------- status requests --------------------

    def write_request(self, *, store_id, kind, message, created_at, expires_at, announcement_ref):
        with self._session() as db:
            row = StatusRequestRow(
                store_id=store_id,
                kind=kind,
                message=message,
                created_at=created_at,
                expires_at=expires_at,
                is_consumed=False,
                announcement_ref=announcement_ref,
            )
            db.add(row)
            db.flush()
            req = row.to_record()
        self._emit(ChangeEvent("INSERT", REQUESTS_TABLE, req.to_dict()))
        return req

    def read_requests(self, store_id, kind, start, end):
        with self._session() as db:
            stmt = select(StatusRequestRow).where(
                StatusRequestRow.store_id == store_id,
                StatusRequestRow.created_at >= start,
                StatusRequestRow.created_at < end,
            )
            if kind is not None:
                stmt = stmt.where(StatusRequestRow.kind == kind)
            stmt = stmt.order_by(StatusRequestRow.created_at.asc(), StatusRequestRow.id.asc())
            return [r.to_record() for r in db.scalars(stmt).all()]

    def get_request(self, request_id):
        with self._session() as db:
            row = db.get(StatusRequestRow, request_id)
            return row.to_record() if row is not None else None

    def find_request_by_announcement(self, message_id):
        with self._session() as db:
            row = db.scalars(
                select(StatusRequestRow).where(StatusRequestRow.announcement_ref == message_id).limit(1)
            ).first()
            return row.to_record() if row is not None else None

    def consume_request(self, request_id, guided_at):
        with self._session() as db:
            before = db.get(StatusRequestRow, request_id)
            old = before.to_record() if before is not None else None
            result = db.execute(
                update(StatusRequestRow)
                .where(StatusRequestRow.id == request_id, StatusRequestRow.is_consumed.is_(False))
                .values(is_consumed=True, consumed_at=guided_at)
                .execution_options(synchronize_session=False)
            )
            flipped = result.rowcount == 1
        if not flipped or old is None:
            return False
        new = replace(old, is_consumed=True, consumed_at=guided_at)
        self._emit(ChangeEvent("UPDATE", REQUESTS_TABLE, new.to_dict(), old=old.to_dict()))
        return True

    # -------------------- chat --------------------

    def write_message(self, *, sender_id, sender_role, message, created_at, sender_name=None, message_type="chat", kind=None):
        with self._session() as db:
            row = ChatMessageRow(
                sender_id=sender_id,
                sender_role=sender_role,
                sender_name=sender_name,
                message=message,
                message_type=message_type,
                kind=kind,
                is_edited=False,
                created_at=created_at,
            )
            db.add(row)
            db.flush()
            msg = row.to_record()
        self._emit(ChangeEvent("INSERT", MESSAGES_TABLE, msg.to_dict()))
        return msg

    def delete_message(self, message_id):
        with self._session() as db:
            row = db.get(ChatMessageRow, message_id)
            if row is None:
                return
            old = row.to_record()
            db.delete(row)
        self._emit(ChangeEvent("DELETE", MESSAGES_TABLE, {"id": message_id}, old=old.to_dict()))

    def read_messages(self, limit, after_id=None):
        with self._session() as db:
            stmt = select(ChatMessageRow)
            if after_id is not None:
                stmt = stmt.where(ChatMessageRow.id > after_id)
            stmt = stmt.order_by(ChatMessageRow.id.desc()).limit(limit)
            return [r.to_record() for r in db.scalars(stmt).all()]

    # -------------------- visit reports --------------------

    def write_visit_report(self, *, store_id, staff_id, guest_count, guided_at):
        with self._session() as db:
            row = VisitReportRow(store_id=store_id, staff_id=staff_id, guest_count=guest_count, guided_at=guided_at)
            db.add(row)
            db.flush()
            report = row.to_record()
        self._emit(ChangeEvent("INSERT", VISITS_TABLE, report.to_dict()))
        return report

    def read_visit_reports(self, store_id, start, end):
        with self._session() as db:
            stmt = select(VisitReportRow).where(VisitReportRow.guided_at >= start, VisitReportRow.guided_at < end)
            if store_id is not None:
                stmt = stmt.where(VisitReportRow.store_id == store_id)
            stmt = stmt.order_by(VisitReportRow.guided_at.desc())
            return [r.to_record() for r in db.scalars(stmt).all()]

    def ping(self) -> None:
        with self._session() as db:
            db.execute(text("SELECT 1"))
