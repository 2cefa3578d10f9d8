"""
Tests for ConversationStore — validated load/save of the provider dialogue.
"""

import pytest

from models.conversation import ConversationTurn
from services.conversation_store import ConversationStore, validate_history


def _turn(role="user", text="hello") -> dict:
    return {"role": role, "parts": [{"text": text}]}


class TestValidateHistory:

    def test_valid_turns_kept(self):
        turns, dropped = validate_history([_turn("user", "q"), _turn("model", "a")])
        assert [t.role for t in turns] == ["user", "model"]
        assert dropped == 0

    def test_invalid_turns_dropped_and_counted(self):
        raw = [
            _turn("user", "q"),
            {"role": "assistant", "parts": [{"text": "wrong role"}]},
            {"role": "model", "parts": []},
            {"role": "model", "parts": [{"text": ""}]},
            {"role": "model"},
            "not a turn",
            _turn("model", "a"),
        ]
        turns, dropped = validate_history(raw)
        assert len(turns) == 2
        assert dropped == 5

    def test_non_list_is_empty(self):
        assert validate_history(None) == ([], 0)
        assert validate_history({"role": "user"}) == ([], 0)


class TestConversationStore:

    @pytest.mark.asyncio
    async def test_load_missing_returns_empty(self, memory_storage):
        store = ConversationStore(memory_storage)
        conversation = await store.load("Bay Area", "florist")
        assert conversation.history == []
        assert conversation.total_vendors_found == 0

    @pytest.mark.asyncio
    async def test_save_then_load(self, memory_storage):
        store = ConversationStore(memory_storage)
        history = [ConversationTurn.from_text("user", "q"), ConversationTurn.from_text("model", "a")]
        await store.save("Bay Area", "florist", history, 4)

        conversation = await store.load("Bay Area", "florist")
        assert conversation.history == history
        assert conversation.total_vendors_found == 4

    @pytest.mark.asyncio
    async def test_load_drops_invalid_stored_turns(self, memory_storage):
        await memory_storage.upsert_conversation(
            "Bay Area", "florist",
            [_turn("user", "q"), {"role": "system", "parts": [{"text": "x"}]}],
            2,
        )
        conversation = await ConversationStore(memory_storage).load("Bay Area", "florist")
        assert len(conversation.history) == 1
        assert conversation.dropped_turns == 1

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, memory_storage):
        store = ConversationStore(memory_storage)
        await store.save("Bay Area", "florist", [ConversationTurn.from_text("user", "q")], 1)
        other = await store.load("Bay Area", "dj")
        assert other.history == []

    @pytest.mark.asyncio
    async def test_negative_total_rejected(self, memory_storage):
        with pytest.raises(ValueError):
            await ConversationStore(memory_storage).save("A", "B", [], -1)

    @pytest.mark.asyncio
    async def test_reset(self, memory_storage):
        store = ConversationStore(memory_storage)
        await store.save("Bay Area", "florist", [ConversationTurn.from_text("user", "q")], 1)

        assert await store.reset("Bay Area", "florist") is True
        assert await store.reset("Bay Area", "florist") is False
        assert (await store.load("Bay Area", "florist")).history == []
