from __future__ import annotations

from concierge.models import AgentAction
from concierge.reply_parser import DegradedReply, StructuredReply, audio_description_for, parse_reply


def test_valid_reply() -> None:
    reply = parse_reply(
        '{"message": "Hola", "audio_description": "Hola en voz", "action": {"type": "show_product", "payload": {"productId": "7"}}}'
    )

    assert isinstance(reply, StructuredReply)
    assert reply.message == "Hola"
    assert reply.audio_description == "Hola en voz"
    assert reply.action.type == "show_product"
    assert reply.action.payload == {"productId": "7"}


def test_fenced_reply() -> None:
    reply = parse_reply('```json\n{"message": "Dentro del bloque", "action": null}\n```')

    assert isinstance(reply, StructuredReply)
    assert reply.message == "Dentro del bloque"
    assert reply.audio_description is None
    assert reply.action.type is None


def test_reply_embedded_in_prose() -> None:
    reply = parse_reply('Claro, aquí va: {"message": "ok", "action": {"type": null, "payload": null}} ¡saludos!')

    assert isinstance(reply, StructuredReply)
    assert reply.message == "ok"
    assert reply.action.payload == {}


def test_plain_text_degrades() -> None:
    reply = parse_reply("Solo texto")

    assert isinstance(reply, DegradedReply)
    assert reply.message == "Solo texto"
    assert reply.audio_description == "Solo texto"
    assert reply.action.type is None


def test_schema_mismatch_degrades_to_raw_text() -> None:
    raw = '{"message": 42, "action": {"type": "search_product"}}'

    reply = parse_reply(raw)

    assert isinstance(reply, DegradedReply)
    assert reply.message == raw
    assert reply.action.type is None


def test_null_type_clears_payload() -> None:
    assert AgentAction(type=None, payload={"leak": True}).payload == {}


def test_audio_description_truncates_and_names_action() -> None:
    long_message = "a" * 250

    description = audio_description_for(long_message, AgentAction(type="search_product"))

    assert description == "a" * 197 + "... Acción: search_product."
    assert audio_description_for("corto") == "corto"
