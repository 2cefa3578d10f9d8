"""
Conversation store - loads and saves the provider dialogue for an
(area, specialty) pair.

Stored history is re-validated on every load. Turns that no longer match
the expected shape are dropped and counted rather than failing the run.
"""

import logging
from typing import Any, List, Tuple

from pydantic import ValidationError

from models.conversation import ConversationTurn, DiscoveryConversation

logger = logging.getLogger("vendor_discovery")


def validate_history(raw: Any) -> Tuple[List[ConversationTurn], int]:
    """
    Validate raw stored turns.

    Returns (valid_turns, dropped_count). Anything that is not a list is
    treated as an empty history with nothing dropped.
    """
    if not isinstance(raw, list):
        return [], 0

    valid: List[ConversationTurn] = []
    for item in raw:
        try:
            valid.append(ConversationTurn.model_validate(item))
        except ValidationError:
            continue
    return valid, len(raw) - len(valid)


class ConversationStore:
    def __init__(self, storage):
        self._storage = storage

    async def load(self, area: str, specialty: str) -> DiscoveryConversation:
        record = await self._storage.get_conversation(area, specialty)
        if not record:
            return DiscoveryConversation(area=area, specialty=specialty)

        history, dropped = validate_history(record.get("history"))
        if dropped:
            logger.warning(
                "Discarded invalid conversation turns",
                extra={
                    "event": "conversation_turns_dropped",
                    "area": area,
                    "specialty": specialty,
                    "stored_turns": len(history) + dropped,
                    "dropped_turns": dropped,
                },
            )

        return DiscoveryConversation(
            area=area,
            specialty=specialty,
            history=history,
            total_vendors_found=int(record.get("total_vendors_found") or 0),
            dropped_turns=dropped,
        )

    async def save(
        self,
        area: str,
        specialty: str,
        history: List[ConversationTurn],
        total_vendors_found: int,
    ) -> None:
        if total_vendors_found < 0:
            raise ValueError("total_vendors_found must not be negative")
        await self._storage.upsert_conversation(
            area,
            specialty,
            [turn.model_dump() for turn in history],
            total_vendors_found,
        )

    async def reset(self, area: str, specialty: str) -> bool:
        deleted = await self._storage.delete_conversation(area, specialty)
        logger.info(
            "Conversation reset",
            extra={"event": "conversation_reset", "area": area, "specialty": specialty, "deleted": deleted},
        )
        return deleted
