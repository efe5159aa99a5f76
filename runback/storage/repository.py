"""Session persistence: Session values in, Session values out."""

from __future__ import annotations

import logging

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from runback.engine.schemas import Session
from runback.storage.database import Database
from runback.storage.models import SessionRecord

logger = logging.getLogger(__name__)


class SessionRepository:
    """Saves whole Session snapshots, one row per session."""

    def __init__(self, database: Database) -> None:
        self.db = database

    async def save(self, session: Session, db_session: AsyncSession | None = None) -> None:
        """Insert or overwrite the stored snapshot."""
        if db_session is None:
            async with self.db.session() as db_session:
                await self._save(session, db_session)
                await db_session.commit()
                return
        await self._save(session, db_session)

    async def _save(self, session: Session, db_session: AsyncSession) -> None:
        await db_session.merge(
            SessionRecord(
                id=session.id,
                title=session.title,
                provider=session.provider,
                model=session.model,
                is_starred=session.is_starred,
                is_closed=session.is_closed,
                payload=session.model_dump_json(),
                created_at=session.created_at,
                updated_at=session.updated_at,
            )
        )

    async def load(self, session_id: str) -> Session | None:
        async with self.db.session() as db_session:
            record = await db_session.get(SessionRecord, session_id)
            if record is None:
                return None
            return self._to_session(record)

    async def load_all(
        self,
        *,
        include_open: bool = True,
        include_closed: bool = True,
        starred_only: bool = False,
    ) -> list[Session]:
        """Stored sessions, most recently updated first.

        Rows whose payload no longer validates are skipped with a warning.
        """
        stmt = select(SessionRecord).order_by(SessionRecord.updated_at.desc())
        if not include_open:
            stmt = stmt.where(SessionRecord.is_closed.is_(True))
        if not include_closed:
            stmt = stmt.where(SessionRecord.is_closed.is_(False))
        if starred_only:
            stmt = stmt.where(SessionRecord.is_starred.is_(True))

        async with self.db.session() as db_session:
            result = await db_session.execute(stmt)
            records = result.scalars().all()

        sessions = []
        for record in records:
            session = self._to_session(record)
            if session is not None:
                sessions.append(session)
        return sessions

    async def delete(self, session_id: str) -> bool:
        async with self.db.session() as db_session:
            result = await db_session.execute(delete(SessionRecord).where(SessionRecord.id == session_id))
            await db_session.commit()
            return result.rowcount > 0

    async def delete_unstarred(self) -> int:
        async with self.db.session() as db_session:
            result = await db_session.execute(delete(SessionRecord).where(SessionRecord.is_starred.is_(False)))
            await db_session.commit()
            logger.info("Deleted %d unstarred sessions", result.rowcount)
            return result.rowcount

    @staticmethod
    def _to_session(record: SessionRecord) -> Session | None:
        try:
            return Session.model_validate_json(record.payload)
        except ValidationError:
            logger.warning("Skipping session %s with unreadable payload", record.id)
            return None
