from __future__ import annotations

from typing import Any, Dict

import jwt
import pytest
from fastapi.testclient import TestClient

from concierge.errors import ProviderAuthError
from concierge.main import create_app
from concierge.services import Services
from concierge.storage.db import TenantScope
from support import ScriptedAdapter, agent_document, env_vars, json_reply

TENANT = {"x-tenant-id": "t1"}
CALLER = {"x-tenant-id": "t1", "x-user-id": "u1"}
SECRET = "test-signing-secret-with-enough-bytes-0123"


@pytest.fixture
def client(services: Services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


def _assert_error_envelope(resp_json: Dict[str, Any], expected_code: str) -> None:
    assert "error" in resp_json, "Error responses must include 'error' envelope"
    assert "meta" in resp_json, "Error responses must include 'meta' envelope"
    assert resp_json["error"]["code"] == expected_code
    assert isinstance(resp_json["meta"]["request_id"], str)


def _create_config(client: TestClient, **overrides: Any) -> Dict[str, Any]:
    resp = client.post("/agent-configs", json=agent_document(**overrides), headers=TENANT)
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


# ------------------------------------------------------------ agent configs


def test_create_seals_and_redacts_credentials(client: TestClient, services: Services) -> None:
    body = _create_config(
        client,
        llm={"provider": "openai", "model": "gpt-4o-mini", "credentialRef": "sk-live-123"},
    )

    assert body["llm"]["credentialRef"] == "[REDACTED]"
    assert body["tenantId"] == "t1"
    stored = services.configs.get(TenantScope("t1"), "default")
    assert stored.llm.credential_ref != "sk-live-123"
    assert services.cipher.decrypt(stored.llm.credential_ref) == "sk-live-123"


def test_create_conflict_and_invalid(client: TestClient) -> None:
    _create_config(client)

    dup = client.post("/agent-configs", json=agent_document(), headers=TENANT)
    assert dup.status_code == 409
    _assert_error_envelope(dup.json(), "CONFLICT")

    invalid = client.post("/agent-configs", json={"agentId": "broken"}, headers=TENANT)
    assert invalid.status_code == 400
    _assert_error_envelope(invalid.json(), "INVALID_CONFIG")

    malformed = client.post("/agent-configs", content=b"not json", headers=TENANT)
    assert malformed.status_code == 400
    _assert_error_envelope(malformed.json(), "MALFORMED_REQUEST")


def test_get_list_and_delete(client: TestClient) -> None:
    _create_config(client)

    assert client.get("/agent-configs/default", headers=TENANT).json()["agentId"] == "default"
    assert [c["agentId"] for c in client.get("/agent-configs", headers=TENANT).json()["configs"]] == ["default"]
    assert client.get("/agent-configs", headers={"x-tenant-id": "t2"}).json()["configs"] == []

    assert client.delete("/agent-configs/default", headers=TENANT).status_code == 204
    missing = client.get("/agent-configs/default", headers=TENANT)
    assert missing.status_code == 404
    _assert_error_envelope(missing.json(), "NOT_FOUND")
    assert client.delete("/agent-configs/default", headers=TENANT).status_code == 404


def test_update_keeps_redacted_credential(client: TestClient, services: Services) -> None:
    created = _create_config(
        client,
        llm={"provider": "openai", "model": "gpt-4o-mini", "credentialRef": "sk-live-123"},
    )
    llm = dict(created["llm"], model="gpt-4o")

    resp = client.put("/agent-configs/default", json={"llm": llm, "personality": "casual"}, headers=TENANT)

    assert resp.status_code == 200, resp.text
    assert resp.json()["personality"] == "casual"
    assert resp.json()["llm"]["credentialRef"] == "[REDACTED]"
    stored = services.configs.get(TenantScope("t1"), "default")
    assert stored.llm.model == "gpt-4o"
    assert services.cipher.decrypt(stored.llm.credential_ref) == "sk-live-123"


def test_update_missing_config(client: TestClient) -> None:
    resp = client.put("/agent-configs/ghost", json={"personality": "casual"}, headers=TENANT)
    assert resp.status_code == 404


def test_tenant_is_required(client: TestClient) -> None:
    resp = client.get("/agent-configs")
    assert resp.status_code == 400
    _assert_error_envelope(resp.json(), "TENANT_REQUIRED")


def test_tenant_from_query_param(client: TestClient) -> None:
    _create_config(client)
    resp = client.get("/agent-configs/default", params={"tenantId": "t1"})
    assert resp.status_code == 200


# -------------------------------------------------------------------- chat


def test_chat_round_trip_and_usage(client: TestClient, scripted: ScriptedAdapter) -> None:
    _create_config(client)
    scripted.queue(json_reply("¡Hola! ¿En qué te ayudo?", audio="Hola"))

    resp = client.post("/chat", json={"text": "hola", "conversationId": "c-42"}, headers=CALLER)

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["message"] == "¡Hola! ¿En qué te ayudo?"
    assert body["audio_description"] == "Hola"
    assert body["conversationId"] == "c-42"
    assert body["action"] == {"type": None, "payload": {}}
    assert body["needsUserInput"] is False
    assert body["meta"]["model"] == "stub-model"
    assert body["meta"]["toolsUsed"] == []
    assert body["meta"]["tokens"] > 0
    assert "estimatedCost" in body["meta"]

    usage = client.get("/usage/default", headers=TENANT)
    assert usage.status_code == 200
    assert usage.json()["used"] == 1
    assert usage.json()["allowed"] is True


def test_chat_generates_conversation_id(client: TestClient, scripted: ScriptedAdapter) -> None:
    _create_config(client)
    scripted.queue(json_reply("ok"))

    body = client.post("/chat", json={"text": "hola", "userId": "u9"}, headers=TENANT).json()

    assert body["conversationId"]


def test_chat_requires_user(client: TestClient) -> None:
    _create_config(client)
    resp = client.post("/chat", json={"text": "hola"}, headers=TENANT)
    assert resp.status_code == 400
    _assert_error_envelope(resp.json(), "MALFORMED_REQUEST")


def test_chat_rejects_empty_text(client: TestClient) -> None:
    resp = client.post("/chat", json={"text": ""}, headers=CALLER)
    assert resp.status_code == 400
    _assert_error_envelope(resp.json(), "MALFORMED_REQUEST")


def test_chat_unknown_agent(client: TestClient) -> None:
    resp = client.post("/chat", json={"text": "hola", "agentId": "ghost"}, headers=CALLER)
    assert resp.status_code == 404
    _assert_error_envelope(resp.json(), "CONFIG_NOT_FOUND")


def test_chat_provider_failure(client: TestClient, scripted: ScriptedAdapter) -> None:
    _create_config(client)
    scripted.queue(ProviderAuthError("key revoked", provider="stub", status_code=401))

    resp = client.post("/chat", json={"text": "hola"}, headers=CALLER)

    assert resp.status_code == 502
    _assert_error_envelope(resp.json(), "PROVIDER_ERROR")
    assert client.get("/usage/default", headers=TENANT).json()["used"] == 0


def test_usage_unknown_agent(client: TestClient) -> None:
    resp = client.get("/usage/ghost", headers=TENANT)
    assert resp.status_code == 404


# -------------------------------------------------------------------- auth


def test_jwt_claims_identify_the_caller(client: TestClient, scripted: ScriptedAdapter) -> None:
    _create_config(client)
    scripted.queue(json_reply("hola desde jwt"))
    token = jwt.encode({"tenantId": "t1", "userId": "u-jwt"}, SECRET, algorithm="HS256")

    with env_vars({"JWT_SECRET": SECRET}):
        resp = client.post("/chat", json={"text": "hola"}, headers={"Authorization": f"Bearer {token}"})
        bad = client.post("/chat", json={"text": "hola"}, headers={"Authorization": "Bearer nope", **CALLER})
        missing = client.get("/agent-configs", headers=TENANT)

    assert resp.status_code == 200, resp.text
    assert resp.json()["message"] == "hola desde jwt"
    assert bad.status_code == 401
    _assert_error_envelope(bad.json(), "UNAUTHORIZED")
    assert missing.status_code == 401


def test_session_token_header(client: TestClient) -> None:
    token = jwt.encode({"tenantId": "t1"}, SECRET, algorithm="HS256")

    with env_vars({"JWT_SECRET": SECRET}):
        resp = client.get("/agent-configs", headers={"x-session-token": token})

    assert resp.status_code == 200


def test_static_auth_token(client: TestClient) -> None:
    with env_vars({"AUTH_TOKEN": "letmein"}):
        denied = client.get("/agent-configs", headers=TENANT)
        wrong = client.get("/agent-configs", headers={"Authorization": "Bearer nope", **TENANT})
        allowed = client.get("/agent-configs", headers={"Authorization": "Bearer letmein", **TENANT})

    assert denied.status_code == 401
    assert wrong.status_code == 401
    assert allowed.status_code == 200
