"""Asks an OpenAI-compatible chat model for pipeline actions."""

import json
import logging
from typing import Literal, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from app.config import Settings, get_settings
from app.exceptions import SuggestionGeneratorError

logger = logging.getLogger(__name__)

AI_ACTION_TYPES = ("move_stage", "send_followup", "score_update", "flag_stale", "set_reminder")
AI_PRIORITIES = ("critical", "high", "medium", "low")


class ProposedAction(BaseModel):
    """One validated proposal. Generator output is untrusted until it passes this."""

    lead_id: str = Field(min_length=1)
    action_type: Literal["move_stage", "send_followup", "score_update", "flag_stale", "set_reminder"]
    priority: Literal["critical", "high", "medium", "low"] = "medium"
    reasoning: str = ""
    suggested_data: dict = Field(default_factory=dict)


def parse_proposal(raw) -> Optional[ProposedAction]:
    """Validate one raw proposal; ``None`` when it must be rejected."""
    if not isinstance(raw, dict):
        return None
    data = dict(raw)
    # accept camelCase from generators that ignore the schema
    if "recordId" in data and "lead_id" not in data:
        data["lead_id"] = data.pop("recordId")
    if "actionType" in data and "action_type" not in data:
        data["action_type"] = data.pop("actionType")
    if "suggestedData" in data and "suggested_data" not in data:
        data["suggested_data"] = data.pop("suggestedData")
    if data.get("priority") is None:
        data.pop("priority", None)
    try:
        return ProposedAction.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Rejected AI proposal {raw!r}: {e.error_count()} validation error(s)")
        return None


PROPOSE_TOOL = {
    "type": "function",
    "function": {
        "name": "propose_actions",
        "description": "Propose pipeline actions for specific leads",
        "parameters": {
            "type": "object",
            "properties": {
                "actions": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "lead_id": {"type": "string"},
                            "action_type": {"type": "string", "enum": list(AI_ACTION_TYPES)},
                            "priority": {"type": "string", "enum": list(AI_PRIORITIES)},
                            "reasoning": {"type": "string"},
                            "suggested_data": {"type": "object"},
                        },
                        "required": ["lead_id", "action_type", "priority", "reasoning"],
                    },
                },
            },
            "required": ["actions"],
        },
    },
}

SYSTEM_PROMPT = (
    "You are a sales pipeline assistant. Review the pipeline statistics and propose "
    "concrete actions for individual leads: move_stage (suggested_data.target_stage), "
    "send_followup (suggested_data.message), score_update (suggested_data.score), "
    "flag_stale, or set_reminder (suggested_data.due_date, suggested_data.message). "
    "Only reference lead ids that appear in the statistics."
)


class HttpSuggestionGenerator:
    """Calls a chat-completions endpoint with a forced tool call."""

    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or get_settings()
        self._transport = transport

    async def propose(self, pipeline_stats: dict) -> list[dict]:
        body = {
            "model": self.settings.ai_model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": json.dumps(pipeline_stats, default=str)},
            ],
            "tools": [PROPOSE_TOOL],
            "tool_choice": {"type": "function", "function": {"name": "propose_actions"}},
        }
        headers = {"Authorization": f"Bearer {self.settings.ai_api_key}"}

        try:
            async with httpx.AsyncClient(
                base_url=self.settings.ai_base_url,
                timeout=self.settings.ai_timeout_seconds,
                transport=self._transport,
            ) as client:
                resp = await client.post("/chat/completions", json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Suggestion generator unreachable: {e}")
            raise SuggestionGeneratorError(f"Suggestion generator unreachable: {e}") from e

        if resp.status_code == 429:
            raise SuggestionGeneratorError("Suggestion generator rate limited")
        if not resp.is_success:
            logger.error(f"Suggestion generator error {resp.status_code}: {resp.text[:500]}")
            raise SuggestionGeneratorError(f"Suggestion generator returned {resp.status_code}")

        return self._extract_actions(resp)

    @staticmethod
    def _extract_actions(resp: httpx.Response) -> list[dict]:
        try:
            data = resp.json()
            tool_calls = data["choices"][0]["message"].get("tool_calls") or []
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            raise SuggestionGeneratorError("Malformed suggestion generator response") from e
        if not tool_calls:
            return []
        try:
            arguments = json.loads(tool_calls[0]["function"]["arguments"])
        except (ValueError, KeyError, TypeError) as e:
            raise SuggestionGeneratorError("Malformed tool call arguments") from e
        actions = arguments.get("actions") if isinstance(arguments, dict) else None
        return actions if isinstance(actions, list) else []
