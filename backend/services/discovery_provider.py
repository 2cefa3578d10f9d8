"""
Discovery Provider - Asks Google Gemini to propose new wedding vendors for
an (area, specialty) pair.

The provider is conversational: prior turns for the same pair are replayed
so the model remembers what it already suggested, and the exclusion list is
sent explicitly as a second line of defense.
"""

import json
import logging
import time
from typing import Any, List, Optional, Protocol

from google import genai
from google.genai import types
from pydantic import BaseModel, Field, ValidationError

from config import settings
from models.conversation import ConversationTurn
from models.vendor import DiscoveredVendor

logger = logging.getLogger("vendor_discovery")

SYSTEM_PROMPT = """\
You are a research assistant for a wedding-planning platform that helps \
couples find local wedding vendors.

You will be asked for vendors of a given SPECIALTY operating in a given AREA.

RULES:
- Only suggest REAL, currently operating businesses. Never invent a business.
- Never repeat a vendor you already suggested earlier in this conversation.
- Never suggest any vendor whose name appears in the exclusion list.
- Return at most the number of vendors requested. Fewer is fine if you \
  cannot find enough genuine businesses.
- Only include contact details you are confident about. Leave unknown \
  fields empty rather than guessing.

FIELDS:
- name: the business name as it appears publicly
- location: city and state/region
- phone, email, website: public contact details, if known
- specialty: the vendor's main service
- categories: platform categories such as "photographer", "decorator", \
  "caterer", "venue", "dj", "florist", "makeup"
- cultural_specialties: cultures or communities the vendor specializes in
- preferred_wedding_traditions: wedding traditions they commonly serve
- price_range: one of "$", "$$", "$$$", "$$$$"
- notes: one or two sentences on why this vendor is a good fit

Return a JSON object of the form {"vendors": [...]}.\
"""

RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "vendors": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "location": {"type": "string"},
                    "phone": {"type": "string"},
                    "email": {"type": "string"},
                    "website": {"type": "string"},
                    "specialty": {"type": "string"},
                    "categories": {"type": "array", "items": {"type": "string"}},
                    "cultural_specialties": {"type": "array", "items": {"type": "string"}},
                    "preferred_wedding_traditions": {"type": "array", "items": {"type": "string"}},
                    "price_range": {"type": "string"},
                    "notes": {"type": "string"},
                },
                "required": ["name"],
            },
        },
    },
    "required": ["vendors"],
}


class DiscoveryProviderError(Exception):
    """Raised when the discovery provider call or its response parsing fails."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Discovery provider error: {reason}")


class DiscoveryOutcome(BaseModel):
    vendors: List[DiscoveredVendor] = Field(default_factory=list)
    conversation: List[ConversationTurn] = Field(default_factory=list)


class DiscoveryProvider(Protocol):
    async def discover(
        self,
        area: str,
        specialty: str,
        count: int,
        exclude_names: List[str],
        prior_conversation: List[ConversationTurn],
    ) -> DiscoveryOutcome: ...


def build_request_text(
    area: str,
    specialty: str,
    count: int,
    exclude_names: List[str],
    resuming: bool,
) -> str:
    lines = []
    if resuming:
        lines.append("Let's continue. Please find MORE vendors you have not suggested before.")
    lines.append(f"AREA: {area}")
    lines.append(f"SPECIALTY: {specialty}")
    lines.append(f"COUNT: up to {count} vendors")
    if exclude_names:
        lines.append("")
        lines.append("EXCLUDE these vendors (already known to us):")
        lines.extend(f"- {name}" for name in exclude_names)
    return "\n".join(lines)


def parse_vendor_payload(text: str) -> List[DiscoveredVendor]:
    """
    Parse the provider's JSON into validated candidates.

    Accepts either {"vendors": [...]} or a bare list. Individual malformed
    entries are dropped; unparseable JSON raises DiscoveryProviderError.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise DiscoveryProviderError(f"JSON parse error: {e}")

    if isinstance(data, dict):
        items = data.get("vendors") or []
    elif isinstance(data, list):
        items = data
    else:
        raise DiscoveryProviderError(f"Unexpected response shape: {type(data).__name__}")

    vendors: List[DiscoveredVendor] = []
    invalid = 0
    for item in items:
        if not isinstance(item, dict):
            invalid += 1
            continue
        cleaned = {key: value for key, value in item.items() if value is not None}
        try:
            vendors.append(DiscoveredVendor.model_validate(cleaned))
        except ValidationError:
            invalid += 1

    if invalid:
        logger.warning(
            "Dropped malformed vendor entries",
            extra={"event": "provider_invalid_vendors", "invalid": invalid, "valid": len(vendors)},
        )
    return vendors


def _to_content(turn: ConversationTurn) -> types.Content:
    return types.Content(
        role=turn.role,
        parts=[types.Part(text=part.text) for part in turn.parts],
    )


class GeminiDiscoveryProvider:
    """DiscoveryProvider backed by the google-genai async client."""

    def __init__(self, client: Optional[genai.Client] = None, model: Optional[str] = None):
        if client is None:
            api_key = settings.GEMINI_API_KEY
            if not api_key:
                raise ValueError("GEMINI_API_KEY not found in environment")
            client = genai.Client(api_key=api_key)
        self._client = client
        self._model = model or settings.GEMINI_MODEL

    async def discover(
        self,
        area: str,
        specialty: str,
        count: int,
        exclude_names: List[str],
        prior_conversation: List[ConversationTurn],
    ) -> DiscoveryOutcome:
        start = time.time()
        request_turn = ConversationTurn.from_text(
            "user",
            build_request_text(area, specialty, count, exclude_names, resuming=bool(prior_conversation)),
        )
        contents = [_to_content(turn) for turn in [*prior_conversation, request_turn]]

        try:
            response = await self._client.aio.models.generate_content(
                model=self._model,
                contents=contents,
                config=types.GenerateContentConfig(
                    system_instruction=SYSTEM_PROMPT,
                    response_mime_type="application/json",
                    response_schema=RESPONSE_SCHEMA,
                ),
            )
        except Exception as e:
            raise DiscoveryProviderError(str(e) or type(e).__name__)

        text: Any = getattr(response, "text", None)
        if not text:
            raise DiscoveryProviderError("Empty response from Gemini")

        vendors = parse_vendor_payload(text)
        conversation = [
            *prior_conversation,
            request_turn,
            ConversationTurn.from_text("model", text),
        ]

        logger.info(
            "Discovery provider responded",
            extra={
                "event": "provider_complete",
                "area": area,
                "specialty": specialty,
                "requested": count,
                "returned": len(vendors),
                "history_turns": len(conversation),
                "duration_ms": round((time.time() - start) * 1000, 2),
            },
        )
        return DiscoveryOutcome(vendors=vendors, conversation=conversation)
