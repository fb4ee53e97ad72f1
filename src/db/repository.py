"""Repository for caller and call records.

``CallRepository`` is the relay's persistence collaborator: it registers call
start/end and stores transcript turns as they are produced.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import NoResultFound, SQLAlchemyError

from agents.errors import DatabaseOperationError
from agents.schemas import ConversationHandle
from db.base import AsyncSessionFactory
from db.models import Caller, Conversation, Message


class CallRepository:
    """Async repository encapsulating storage operations."""

    # -- relay collaborator --------------------------------------------------

    async def register_call_start(self, call_id: str, caller_phone: str) -> ConversationHandle:
        try:
            async with AsyncSessionFactory() as session:
                caller = await self._upsert_caller(session, caller_phone)
                previous = await self._count_conversations(session, caller.id)
                conversation = await self._get_conversation_or_none(session, call_id)
                if conversation is None:
                    conversation = Conversation(call_sid=call_id, caller_id=caller.id)
                    session.add(conversation)
                await session.commit()
                await session.refresh(conversation)
                return ConversationHandle(
                    conversation_id=conversation.id,
                    caller_phone=caller.phone,
                    caller_name=caller.name,
                    previous_calls=previous,
                )
        except SQLAlchemyError as exc:
            raise DatabaseOperationError(f"register_call_start failed: {exc}") from exc

    async def append_transcript_turn(self, call_id: str, role: str, text: str) -> Message:
        try:
            async with AsyncSessionFactory() as session:
                conversation = await self._get_conversation(session, call_id)
                message = Message(conversation_id=conversation.id, role=role, content=text)
                session.add(message)
                await session.commit()
                await session.refresh(message)
                return message
        except NoResultFound as exc:
            raise DatabaseOperationError(f"No conversation recorded for call {call_id}") from exc
        except SQLAlchemyError as exc:
            raise DatabaseOperationError(f"append_transcript_turn failed: {exc}") from exc

    async def register_call_end(self, call_id: str) -> None:
        try:
            async with AsyncSessionFactory() as session:
                conversation = await self._get_conversation_or_none(session, call_id)
                if conversation is None or conversation.ended_at is not None:
                    return
                ended_at = datetime.now(timezone.utc)
                started_at = conversation.started_at
                if started_at.tzinfo is None:
                    # SQLite hands back naive datetimes.
                    started_at = started_at.replace(tzinfo=timezone.utc)
                conversation.ended_at = ended_at
                conversation.duration_seconds = int((ended_at - started_at).total_seconds())
                await session.commit()
        except SQLAlchemyError as exc:
            raise DatabaseOperationError(f"register_call_end failed: {exc}") from exc

    # -- callers -------------------------------------------------------------

    async def upsert_caller(self, phone: str, name: str | None = None) -> Caller:
        try:
            async with AsyncSessionFactory() as session:
                caller = await self._upsert_caller(session, phone, name)
                await session.commit()
                await session.refresh(caller)
                return caller
        except SQLAlchemyError as exc:
            raise DatabaseOperationError(f"upsert_caller failed: {exc}") from exc

    async def update_caller_name(self, phone: str, name: str) -> Caller:
        name = name.strip()
        if not name:
            raise ValueError("Caller name may not be empty.")
        return await self.upsert_caller(phone, name)

    async def get_caller(self, phone: str) -> Caller | None:
        async with AsyncSessionFactory() as session:
            result = await session.execute(select(Caller).where(Caller.phone == phone))
            return result.scalar_one_or_none()

    async def count_conversations(self, phone: str) -> int:
        async with AsyncSessionFactory() as session:
            result = await session.execute(select(Caller.id).where(Caller.phone == phone))
            caller_id = result.scalar_one_or_none()
            if caller_id is None:
                return 0
            return await self._count_conversations(session, caller_id)

    async def list_messages(self, call_id: str) -> list[Message]:
        async with AsyncSessionFactory() as session:
            conversation = await self._get_conversation_or_none(session, call_id)
            if conversation is None:
                return []
            query = (
                select(Message)
                .where(Message.conversation_id == conversation.id)
                .order_by(Message.created_at, Message.id)
            )
            result = await session.execute(query)
            return list(result.scalars().all())

    # -- helpers -------------------------------------------------------------

    async def _upsert_caller(self, session, phone: str, name: str | None = None) -> Caller:
        result = await session.execute(select(Caller).where(Caller.phone == phone))
        caller = result.scalar_one_or_none()
        if caller is None:
            caller = Caller(phone=phone, name=name)
            session.add(caller)
            await session.flush()
        elif name:
            caller.name = name
        return caller

    async def _count_conversations(self, session, caller_id: int) -> int:
        query = select(func.count(Conversation.id)).where(Conversation.caller_id == caller_id)
        result = await session.execute(query)
        return int(result.scalar_one())

    async def _get_conversation(self, session, call_id: str) -> Conversation:
        query = select(Conversation).where(Conversation.call_sid == call_id)
        result = await session.execute(query)
        return result.scalar_one()

    async def _get_conversation_or_none(self, session, call_id: str) -> Conversation | None:
        query = select(Conversation).where(Conversation.call_sid == call_id)
        result = await session.execute(query)
        return result.scalar_one_or_none()
