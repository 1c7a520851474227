import pytest

from chatrelay.conversation import ConversationResolver, RequestTracker, add_user_label, clean_user_id
from chatrelay.db import Database
from chatrelay.models import Message, Sender


def _db(tmp_path) -> Database:
    db = Database(tmp_path / "chatrelay.db")
    db.initialize()
    return db


def _text(text: str) -> list[dict]:
    return [{"type": "text", "text": text}]


def test_group_members_share_one_conversation_by_default(tmp_path):
    db = _db(tmp_path)
    db.save_scope_settings("group_user", group_id="g1", user_id="2", system_prompt="talk like a pirate")
    resolver = ConversationResolver(db, db)

    assert resolver.resolve("1", "g1") == "group:g1"
    assert resolver.resolve("2", "g1") == "group:g1"
    assert resolver.has_independent_persona("g1", "2") is True
    assert resolver.has_independent_persona("g1", "1") is False
    assert resolver.is_shared_group("g1") is True


def test_isolation_switches(tmp_path):
    db = _db(tmp_path)

    isolated = ConversationResolver(db, group_user_isolation=True)
    assert isolated.resolve("bot_7", "g1") == "group:g1:user:7"
    assert isolated.is_shared_group("g1") is False

    shared_private = ConversationResolver(db, private_isolation=False)
    assert shared_private.resolve("7") == "private:shared"
    assert ConversationResolver(db).resolve("bot_7") == "user:7"

    not_sharing = ConversationResolver(db, group_context_sharing=False)
    assert not_sharing.resolve("7", "g1") == "group:g1"
    assert not_sharing.is_shared_group("g1") is False
    assert not_sharing.is_shared_group(None) is False


def test_clean_user_id_and_label():
    assert clean_user_id("qq_bot_123") == "123"
    assert clean_user_id(456) == "456"

    content = [{"type": "image_url", "image_url": {"url": "x"}}, {"type": "text", "text": "hi"}]
    labeled = add_user_label(content, "Neo", "1")

    assert labeled[1]["text"] == "[Neo(1)]: hi"
    assert content[1]["text"] == "hi"


def test_labeled_context_marks_each_sender():
    resolver = ConversationResolver(history=None)  # type: ignore[arg-type]
    history = [
        Message(role="user", content=_text("hi"), sender=Sender(user_id="1", nickname="neo", card="The One")),
        Message(role="assistant", content=_text("hello")),
        Message(role="user", content=_text("yo"), sender=Sender(user_id="2", nickname="trinity")),
        Message(role="user", content=_text("old turn")),
    ]

    labeled = resolver.build_labeled_context(history)

    assert [m.text() for m in labeled] == [
        "[The One(1)]: hi",
        "hello",
        "[trinity(2)]: yo",
        "[user(history#3)]: old turn",
    ]
    assert history[0].text() == "hi"


def test_reset_clears_current_and_legacy_conversations(tmp_path):
    db = _db(tmp_path)
    for cid in ("group:g1", "group:g1:user:7", "group:g1:user:bot_7", "group:g2"):
        db.append_message(cid, Message(role="user", content=_text(cid)))
    resolver = ConversationResolver(db)

    removed = resolver.reset("bot_7", "g1")

    assert removed == ["group:g1", "group:g1:user:bot_7", "group:g1:user:7"]
    for cid in removed:
        assert db.get_context_history(cid, limit=5) == []
    assert len(db.get_context_history("group:g2", limit=5)) == 1


def test_legacy_ids_exclude_current_id(tmp_path):
    resolver = ConversationResolver(_db(tmp_path))

    assert resolver.legacy_ids("7") == []
    assert resolver.legacy_ids("bot_7") == ["user:bot_7"]


@pytest.mark.asyncio
async def test_request_tracker_counts_in_flight_requests():
    tracker = RequestTracker()

    async with tracker.track("group:g1") as first:
        async with tracker.track("group:g1") as second:
            assert (first, second) == (1, 2)
            assert tracker.count("group:g1") == 2
        assert tracker.count("group:g1") == 1

    assert tracker.count("group:g1") == 0


@pytest.mark.asyncio
async def test_request_tracker_releases_on_error():
    tracker = RequestTracker()

    with pytest.raises(RuntimeError):
        async with tracker.track("user:1"):
            raise RuntimeError("failed")

    assert tracker.count("user:1") == 0
