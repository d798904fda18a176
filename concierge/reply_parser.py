"""
Structured-output contract for model replies.

Models are asked to answer with {"message", "audio_description", "action"}.
Anything else degrades to plain text with a null action; parsing never raises.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Literal, Optional, Union

from jsonschema import Draft7Validator
from pydantic import BaseModel, Field

from .models import AgentAction

logger = logging.getLogger("tenant-concierge")

AUDIO_DESCRIPTION_MAX = 200

REPLY_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["message"],
    "properties": {
        "message": {"type": "string"},
        "audio_description": {"type": "string"},
        "action": {
            "type": ["object", "null"],
            "properties": {
                "type": {"type": ["string", "null"]},
                "payload": {"type": ["object", "null"]},
            },
        },
    },
}

_validator = Draft7Validator(REPLY_SCHEMA)
_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


class StructuredReply(BaseModel):
    kind: Literal["structured"] = "structured"
    message: str
    audio_description: Optional[str] = None
    action: AgentAction = Field(default_factory=AgentAction)


class DegradedReply(BaseModel):
    kind: Literal["degraded"] = "degraded"
    message: str
    audio_description: str
    action: AgentAction = Field(default_factory=AgentAction)


def audio_description_for(message: str, action: Optional[AgentAction] = None) -> str:
    """Voice-friendly summary: the message capped at 200 chars, plus the action name."""
    description = message
    if len(description) > AUDIO_DESCRIPTION_MAX:
        description = description[: AUDIO_DESCRIPTION_MAX - 3] + "..."
    if action is not None and action.type:
        description += f" Acción: {action.type}."
    return description


def _first_json_object(text: str) -> Optional[Any]:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    decoder = json.JSONDecoder()
    idx = text.find("{")
    while idx != -1:
        try:
            obj, _ = decoder.raw_decode(text, idx)
        except json.JSONDecodeError:
            idx = text.find("{", idx + 1)
            continue
        return obj
    return None


def parse_reply(text: str) -> Union[StructuredReply, DegradedReply]:
    raw = text or ""
    candidate = raw.strip()
    fenced = _FENCE.search(candidate)
    if fenced:
        candidate = fenced.group(1).strip()

    data = _first_json_object(candidate)
    if isinstance(data, dict) and _validator.is_valid(data):
        action_data = data.get("action") or {}
        action = AgentAction(type=action_data.get("type"), payload=action_data.get("payload") or {})
        message = data["message"]
        return StructuredReply(
            message=message,
            audio_description=data.get("audio_description") or None,
            action=action,
        )

    if data is not None:
        errors = [e.message for e in _validator.iter_errors(data)] if isinstance(data, dict) else ["not an object"]
        logger.warning("model reply failed the reply schema: %s", "; ".join(errors)[:300])

    message = raw
    if isinstance(data, dict) and isinstance(data.get("message"), str):
        message = data["message"]
    return DegradedReply(message=message, audio_description=audio_description_for(message))
