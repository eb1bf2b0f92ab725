from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from chatsync.schemas.models import (
    Channel,
    Conversation,
    Message,
    MessageKind,
    MessageScope,
    PresenceEntry,
    TypingEntry,
    User,
    resolve_other_participant,
)


def test_user_accepts_id_or_underscore_id():
    assert User.model_validate({"_id": "u1"}).id == "u1"
    assert User.model_validate({"id": "u1"}).id == "u1"
    assert User.model_validate({"_id": {"_id": "u1"}, "displayName": None}).display_name == ""


def test_user_name_falls_back_to_handle():
    assert User.model_validate({"_id": "u1", "username": "ada"}).name == "ada"


def test_message_from_wire_dm():
    message = Message.model_validate(
        {
            "_id": "m1",
            "conversation": "c1",
            "sender": {"_id": "u2", "username": "grace"},
            "receiver": "u1",
            "content": "hola",
            "messageType": "sticker",
            "createdAt": "2024-05-01T12:00:00",
        }
    )

    assert message.thread_id == "c1"
    assert message.scope is MessageScope.DM
    assert message.sender_id == "u2"
    assert message.recipient_id == "u1"
    assert message.kind is MessageKind.TEXT
    assert message.created_at == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_message_from_wire_channel():
    message = Message.model_validate(
        {"id": "m1", "channel": {"_id": "ch1"}, "sender": "u2", "createdAt": "2024-05-01T12:00:00Z"}
    )

    assert message.thread_id == "ch1"
    assert message.scope is MessageScope.CHANNEL
    assert message.content == ""


def test_message_without_thread_is_rejected():
    with pytest.raises(ValidationError):
        Message.model_validate({"_id": "m1", "sender": "u2", "createdAt": "2024-05-01T12:00:00Z"})


def test_deleted_message_hides_content():
    message = Message.model_validate(
        {
            "_id": "m1",
            "conversation": "c1",
            "sender": "u2",
            "content": "secreto",
            "createdAt": "2024-05-01T12:00:00Z",
            "deletedAt": "2024-05-01T12:05:00Z",
        }
    )

    assert message.is_deleted
    assert message.display_content is None
    assert message.version == datetime(2024, 5, 1, 12, 5, tzinfo=timezone.utc)


def test_conversation_needs_two_distinct_participants():
    with pytest.raises(ValidationError):
        Conversation.model_validate({"_id": "c1", "participants": ["u1"]})
    with pytest.raises(ValidationError):
        Conversation.model_validate({"_id": "c1", "participants": ["u1", "u1"]})


def test_conversation_from_wire():
    conversation = Conversation.model_validate(
        {
            "_id": "c1",
            "participants": [{"_id": "u1"}, {"_id": "u2"}],
            "lastMessage": {"content": "nos vemos"},
            "lastMessageAt": "2024-05-01T12:00:00Z",
            "unreadCount": None,
        }
    )

    assert conversation.participant_ids == ["u1", "u2"]
    assert conversation.last_message_preview == "nos vemos"
    assert conversation.last_activity_at == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert conversation.unread_count == 0


def test_resolve_other_participant():
    conversation = Conversation.model_validate({"_id": "c1", "participants": ["u1", "u2"]})
    grace = User(id="u2", displayName="Grace")

    assert resolve_other_participant(conversation, "u1", {"u2": grace}) == grace
    assert resolve_other_participant(conversation, "u1", {}) is None
    # Sin usuario actual no hay "otro" definido
    assert resolve_other_participant(conversation, None, {"u2": grace}) is None


def test_channel_admins_are_members():
    channel = Channel.model_validate(
        {"_id": "ch1", "slug": "general", "members": [{"_id": "u1"}, "u2"], "admins": ["u3"]}
    )

    assert channel.admin_ids <= channel.member_ids
    assert channel.member_ids == {"u1", "u2", "u3"}
    assert channel.member_count == 3


def test_typing_entry_needs_exactly_one_target():
    assert TypingEntry(sender_id="u2", recipient_id="u1").channel_id is None
    with pytest.raises(ValidationError):
        TypingEntry(sender_id="u2")
    with pytest.raises(ValidationError):
        TypingEntry(sender_id="u2", recipient_id="u1", channel_id="ch1")


def test_channel_and_presence_timestamps_are_utc():
    channel = Channel.model_validate({"_id": "ch1", "slug": "general", "lastActivity": "2024-05-01T12:00:00"})
    entry = PresenceEntry.model_validate({"userId": "u1", "joinedAt": "2024-05-01T12:00:00"})

    assert channel.last_activity_at == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert entry.joined_at.tzinfo is not None
