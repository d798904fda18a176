"""
Data models for the orchestration engine.

Wire names are camelCase (tenantId, baseUrl, parametersSchema, ...) except
`audio_description`, which callers already depend on verbatim. Python code uses
the snake_case attribute names; serialize with `model_dump(by_alias=True)`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --------------------------------------------------------------------------- config

ProviderName = Literal["openai", "gemini", "groq", "openrouter", "stub"]
ToolsMode = Literal["default", "custom", "hybrid"]
Personality = Literal["friendly", "formal", "professional", "casual"]
HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]


class LLMConfig(WireModel):
    provider: ProviderName
    model: str
    credential_ref: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 2000


class CoreToolConfig(WireModel):
    enabled: bool = False
    type: Literal["store", "api", "rag"] = "store"


class CustomTool(WireModel):
    name: str = ""
    base_url: str = ""
    path: Optional[str] = None
    method: Optional[HttpMethod] = None
    credential_ref: Optional[str] = None
    enabled: bool = False
    description: Optional[str] = None
    parameters_schema: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    @property
    def is_usable(self) -> bool:
        return self.enabled and bool(self.name) and bool(self.base_url)


class ToolsConfig(WireModel):
    mode: ToolsMode = "default"
    search_product: CoreToolConfig = Field(default_factory=CoreToolConfig)
    add_to_cart: CoreToolConfig = Field(default_factory=CoreToolConfig)
    get_order: CoreToolConfig = Field(default_factory=CoreToolConfig)
    custom: List[CustomTool] = Field(default_factory=list)


class KnowledgeSource(WireModel):
    source: Literal["rag", "api", "store"]
    vector_index: Optional[str] = None
    api_url: Optional[str] = None
    credential_ref: Optional[str] = None


class PoliciesConfig(WireModel):
    allow_external_api: bool = False
    tool_use_threshold: float = Field(default=0.7, ge=0, le=1)
    max_tool_calls_per_message: Optional[int] = Field(default=None, ge=1)
    history_limit: int = Field(default=4, ge=0)


class PlanConfig(WireModel):
    type: Literal["free", "basic", "pro", "enterprise"] = "free"
    monthly_limit: int = Field(default=1000, ge=0)
    used_this_month: int = Field(default=0, ge=0)
    renews_at: Optional[datetime] = None


class AgentConfig(WireModel):
    tenant_id: str
    agent_id: str = "default"
    name_agent: Optional[str] = None
    llm: LLMConfig
    knowledge: Dict[str, KnowledgeSource] = Field(default_factory=dict)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    policies: PoliciesConfig = Field(default_factory=PoliciesConfig)
    personality: Personality = "friendly"
    plan: PlanConfig = Field(default_factory=PlanConfig)
    system_prompt: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# --------------------------------------------------------------------- conversation

Role = Literal["user", "assistant", "system"]


class MessageAction(WireModel):
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class ConversationMessage(WireModel):
    tenant_id: str
    user_id: str
    conversation_id: str
    role: Role
    content: str
    action: Optional[MessageAction] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None


class NewMessage(WireModel):
    """A message as handed to the conversation store, before it gets ids and a timestamp."""

    role: Role
    content: str
    action: Optional[MessageAction] = None
    metadata: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------- tools


class ToolDefinition(WireModel):
    name: str
    description: str
    parameters: Dict[str, Any]


class ToolCall(WireModel):
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolResult(WireModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    needs_user_input: bool = False
    question: Optional[str] = None


class TurnContext(WireModel):
    tenant_id: str
    user_id: str
    conversation_id: str
    agent_id: str = "default"


class ToolContext(WireModel):
    """Context handed to every tool executor."""

    tenant_id: str
    user_id: str
    conversation_id: str
    agent_config: AgentConfig


# ------------------------------------------------------------------------- provider


class LLMMessage(WireModel):
    role: Literal["system", "user", "assistant"]
    content: str


class TokenUsage(WireModel):
    prompt: Optional[int] = None
    completion: Optional[int] = None
    total: Optional[int] = None


class ProviderResponse(WireModel):
    content: str = ""
    model: str
    tokens: Optional[TokenUsage] = None
    latency: float = 0.0
    tool_calls: List[ToolCall] = Field(default_factory=list)


# ------------------------------------------------------------------------- response


class AgentAction(WireModel):
    type: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _null_type_has_empty_payload(self) -> "AgentAction":
        if self.type is None and self.payload:
            self.payload = {}
        return self


class ResponseMeta(WireModel):
    model: str
    tokens: int = 0
    tokens_input: int = 0
    tokens_output: int = 0
    latency: float = 0.0
    tools_used: List[str] = Field(default_factory=list)
    estimated_cost: float = 0.0


class AgentResponse(WireModel):
    message: str
    audio_description: str = Field(alias="audio_description")
    conversation_id: Optional[str] = None
    action: AgentAction = Field(default_factory=AgentAction)
    needs_user_input: bool = False
    meta: Optional[ResponseMeta] = None


class ExtractedContext(WireModel):
    mentioned_products: List[str] = Field(default_factory=list)
    mentioned_orders: List[str] = Field(default_factory=list)
    last_action: Optional[MessageAction] = None
    last_search_results: List[Dict[str, Any]] = Field(default_factory=list)
    summary_text: Optional[str] = None


# ------------------------------------------------------------------------------ api


class ChatRequest(WireModel):
    text: str = Field(min_length=1)
    conversation_id: Optional[str] = None
    agent_id: Optional[str] = None
    user_id: Optional[str] = None


class UsageReport(WireModel):
    allowed: bool
    used: int
    limit: int
    remaining: int
    renews_at: Optional[datetime] = None
