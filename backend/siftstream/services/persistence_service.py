"""
Persistence of analysis sessions and follow-up exchanges.

Stores the session at initiate, the generated report when its stream
finishes, and each follow-up exchange that names a session.
"""

import logging
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from siftstream.core.config import settings
from siftstream.core.database import async_session_maker
from siftstream.core.enums import MessageRole, SessionStatus
from siftstream.core.exceptions import DatabaseError
from siftstream.models.database import AnalysisSessionRecord, ConversationMessage

logger = logging.getLogger(__name__)


class PersistenceService:
    """Service for storing analysis sessions and their conversations."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        enabled: Optional[bool] = None,
    ):
        self._session_factory = session_factory or async_session_maker
        self.enabled = settings.persistence_enabled if enabled is None else enabled

    async def create_session(
        self,
        session_id: str,
        report_type: str,
        model_id: str,
        user_input_text: Optional[str],
        image_ref: Optional[str],
    ) -> None:
        """
        Insert a new session row.

        Raises:
            DatabaseError: if the row could not be written
        """
        if not self.enabled:
            return
        try:
            async with self._session_factory() as db:
                db.add(
                    AnalysisSessionRecord(
                        session_id=session_id,
                        status=SessionStatus.INITIATING.value,
                        report_type=report_type,
                        model_id=model_id,
                        user_input_text=user_input_text,
                        image_ref=image_ref,
                    )
                )
                await db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to create analysis session: {e}")
            raise DatabaseError("create_session", details={"error": str(e)}) from e

    async def update_status(
        self,
        session_id: str,
        status: SessionStatus,
        report: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        """
        Record a session's status and, once finished, its report.

        Failures are logged and reported as False; they never propagate
        into the stream that triggered them.
        """
        if not self.enabled:
            return False
        values = {"status": status.value}
        if report is not None:
            values["report"] = report
        if error is not None:
            values["error"] = error[:500]
        try:
            async with self._session_factory() as db:
                await db.execute(
                    update(AnalysisSessionRecord)
                    .where(AnalysisSessionRecord.session_id == session_id)
                    .values(**values)
                )
                await db.commit()
            return True
        except SQLAlchemyError as e:
            logger.error(f"Failed to update analysis session {session_id[:8]}...: {e}")
            return False

    async def add_exchange(
        self,
        session_id: str,
        user_text: str,
        assistant_text: str,
        model_id: str,
    ) -> bool:
        """Store one follow-up question and its answer."""
        if not self.enabled:
            return False
        try:
            async with self._session_factory() as db:
                db.add(ConversationMessage(
                    session_id=session_id, role=MessageRole.USER.value, content=user_text, model_id=model_id,
                ))
                db.add(ConversationMessage(
                    session_id=session_id, role=MessageRole.ASSISTANT.value, content=assistant_text, model_id=model_id,
                ))
                await db.commit()
            return True
        except SQLAlchemyError as e:
            logger.error(f"Failed to store follow-up for {session_id[:8]}...: {e}")
            return False

    async def get_session(self, session_id: str) -> Optional[AnalysisSessionRecord]:
        """Load a session row, or None when absent or persistence is off."""
        if not self.enabled:
            return None
        async with self._session_factory() as db:
            result = await db.execute(
                select(AnalysisSessionRecord).where(AnalysisSessionRecord.session_id == session_id)
            )
            return result.scalar_one_or_none()

    async def get_messages(self, session_id: str, limit: int = 200) -> List[ConversationMessage]:
        """Follow-up turns for a session, oldest first."""
        if not self.enabled:
            return []
        async with self._session_factory() as db:
            result = await db.execute(
                select(ConversationMessage)
                .where(ConversationMessage.session_id == session_id)
                .order_by(ConversationMessage.created_at.asc(), ConversationMessage.id.asc())
                .limit(limit)
            )
            return list(result.scalars().all())


# Global persistence service instance
persistence_service = PersistenceService()
