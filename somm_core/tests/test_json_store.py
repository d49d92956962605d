import tempfile
from pathlib import Path

import pytest

from somm_core.domain.exceptions import BusinessError
from somm_core.infrastructure.storage.json_store import JsonConversationStore


def test_json_store_create_and_messages():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        conv = store.create_conversation("New Conversation", "guest-1")
        m1 = store.create_message("What pairs with duck?", "user", conv.id)
        m2 = store.create_message("Try a Pinot Noir.", "assistant", conv.id)
        msgs = store.get_messages_by_conversation(conv.id)
        assert [m.id for m in msgs] == [m1.id, m2.id]
        assert [m.role for m in msgs] == ["user", "assistant"]
        assert msgs[0].conversation_id == conv.id
        assert store.get_conversation(conv.id).user_id == "guest-1"


def test_json_store_preserves_insertion_order():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        conv = store.create_conversation("t")
        for i in range(5):
            store.create_message(f"m{i}", "user" if i % 2 == 0 else "assistant", conv.id)
        assert [m.content for m in store.get_messages_by_conversation(conv.id)] == [f"m{i}" for i in range(5)]


def test_json_store_missing_conversation():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        with pytest.raises(BusinessError) as info:
            store.get_conversation("c-missing")
        assert info.value.code == "CONVERSATION_NOT_FOUND"
        with pytest.raises(BusinessError):
            store.create_message("hi", "user", "c-missing")
        assert store.get_messages_by_conversation("c-missing") == []


def test_json_store_rejects_invalid_role():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        conv = store.create_conversation("t")
        with pytest.raises(BusinessError) as info:
            store.create_message("hi", "robot", conv.id)
        assert info.value.code == "INVALID_MESSAGE"
        assert store.get_messages_by_conversation(conv.id) == []


def test_json_store_update_title_and_list():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        conv = store.create_conversation("New Conversation")
        store.update_conversation_title(conv.id, "Duck and Pinot")
        assert store.get_conversation(conv.id).title == "Duck and Pinot"
        assert [c.title for c in store.list_conversations()] == ["Duck and Pinot"]


def test_json_store_delete_conversation():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonConversationStore(root=root)
        conv = store.create_conversation("temp")
        conv_dir = root / "conversations" / conv.id
        assert conv_dir.exists()
        store.delete_conversation(conv.id)
        assert not conv_dir.exists()
        assert conv.id not in {c.id for c in store.list_conversations()}


def test_json_store_create_messages_is_all_or_nothing():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        conv = store.create_conversation("t")
        with pytest.raises(BusinessError) as info:
            store.create_messages(conv.id, [("What about port?", "user"), ("Sure.", "sommelier")])
        assert info.value.code == "INVALID_MESSAGE"
        assert store.get_messages_by_conversation(conv.id) == []

        user_rec, assistant_rec = store.create_messages(
            conv.id, [("What about port?", "user"), ("With blue cheese.", "assistant")]
        )
        msgs = store.get_messages_by_conversation(conv.id)
        assert [m.id for m in msgs] == [user_rec.id, assistant_rec.id]


def test_json_store_unreadable_messages_file():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonConversationStore(root=root)
        conv = store.create_conversation("t")
        # 目录占住了 messages.jsonl 的位置，读取会触发 OSError
        (root / "conversations" / conv.id / "messages.jsonl").mkdir()
        with pytest.raises(BusinessError) as info:
            store.get_messages_by_conversation(conv.id)
        assert info.value.code == "STORE_READ_ERROR"


def test_json_store_skips_malformed_lines():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonConversationStore(root=root)
        conv = store.create_conversation("t")
        store.create_message("kept", "user", conv.id)
        with (root / "conversations" / conv.id / "messages.jsonl").open("a", encoding="utf-8") as f:
            f.write("[1, 2]\n{\"role\": \"user\", \"content\": \"trunc")
        assert [m.content for m in store.get_messages_by_conversation(conv.id)] == ["kept"]
