"""Tests for database models and session helpers.

Tests cover:
- transaction() commits on success and rolls back on error
- Timestamps round-trip as aware UTC and never repeat
- Prefixed ids
- Table constraints (one credential per provider, cascades)
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from chatrelay.db.models import ApiKey, Chat, Message, User, create_id, utcnow
from chatrelay.db.session import session_scope, transaction
from tests.factories import create_api_key, create_chat, create_user


class TestTransaction:
    def test_commits_on_success(self, db_session, session_factory):
        with transaction(db_session):
            db_session.add(User(id="u-tx", username="tx", grants=[]))

        with session_scope(session_factory) as other:
            assert other.get(User, "u-tx") is not None

    def test_rolls_back_on_error(self, db_session, session_factory):
        with pytest.raises(RuntimeError):
            with transaction(db_session):
                db_session.add(User(id="u-tx", username="tx", grants=[]))
                db_session.flush()
                raise RuntimeError("boom")

        with session_scope(session_factory) as other:
            assert other.get(User, "u-tx") is None


class TestTimestamps:
    def test_utcnow_strictly_increasing(self):
        stamps = [utcnow() for _ in range(100)]

        assert stamps == sorted(stamps)
        assert len(set(stamps)) == 100
        assert all(s.tzinfo is not None for s in stamps)

    def test_round_trip_as_aware_utc(self, db_session):
        user_id = create_user(db_session)
        offset = timezone(timedelta(hours=2))
        chat = Chat(
            user_id=user_id,
            title="t",
            created_at=datetime(2024, 5, 1, 14, 0, tzinfo=offset),
        )
        db_session.add(chat)
        db_session.commit()
        db_session.expire_all()

        loaded = db_session.get(Chat, chat.id)
        assert loaded.created_at == datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
        assert loaded.created_at.utcoffset() == timedelta(0)


class TestModels:
    def test_prefixed_ids(self):
        chat_id = create_id("chat")

        assert chat_id.startswith("chat_")
        assert len(chat_id) == len("chat_") + 21

    def test_one_credential_per_provider(self, db_session):
        user_id = create_user(db_session)
        create_api_key(db_session, user_id, "openai")

        with pytest.raises(IntegrityError):
            create_api_key(db_session, user_id, "openai")
        db_session.rollback()

    def test_chat_delete_cascades_to_messages(self, db_session):
        user_id = create_user(db_session)
        chat_id = create_chat(db_session, user_id, messages=[("user", "a"), ("assistant", "b")])

        db_session.delete(db_session.get(Chat, chat_id))
        db_session.commit()

        assert list(db_session.scalars(select(Message))) == []

    def test_user_delete_cascades_to_keys(self, db_session):
        user_id = create_user(db_session)
        create_api_key(db_session, user_id, "anthropic")

        db_session.delete(db_session.get(User, user_id))
        db_session.commit()

        assert list(db_session.scalars(select(ApiKey))) == []
