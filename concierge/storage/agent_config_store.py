"""
Agent configuration store.

agent_configs table: (id, tenant_id, agent_id, document, created_at, updated_at)
`document` is the camelCase JSON form of AgentConfig; (tenant_id, agent_id) is unique.
"""

from __future__ import annotations

import calendar
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from jsonschema import Draft7Validator, SchemaError
from pydantic import ValidationError

from concierge.errors import AgentConfigExists, AgentConfigInvalid
from concierge.models import AgentConfig, PlanConfig, UsageReport
from concierge.storage.db import Database, TenantScope, dump_json, from_ts, load_json, to_ts, utcnow

logger = logging.getLogger("tenant-concierge")


def validate_agent_config(document: Dict[str, Any]) -> AgentConfig:
    """Validate a raw config document, including every custom tool's JSON Schema."""
    try:
        config = AgentConfig.model_validate(document)
    except ValidationError as exc:
        raise AgentConfigInvalid(
            "Agent config failed validation",
            details=[{"path": list(err["loc"]), "message": err["msg"]} for err in exc.errors()],
        ) from exc

    for tool in config.tools.custom:
        try:
            Draft7Validator.check_schema(tool.parameters_schema)
        except SchemaError as exc:
            raise AgentConfigInvalid(
                f"Invalid parametersSchema for custom tool '{tool.name}': {exc.message}",
                details=[{"path": ["tools", "custom", tool.name, "parametersSchema"], "message": exc.message}],
            ) from exc
    return config


def _next_month(value: datetime) -> datetime:
    year, month = (value.year + 1, 1) if value.month == 12 else (value.year, value.month + 1)
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _document(config: AgentConfig) -> str:
    return dump_json(config.model_dump(by_alias=True, mode="json", exclude={"created_at", "updated_at"}))


class AgentConfigStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def init_schema(self) -> None:
        with self.db.session() as conn:
            self.db.init_pragmas(conn)
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS agent_configs (
                    {self.db.id_column()},
                    tenant_id TEXT NOT NULL,
                    agent_id TEXT NOT NULL,
                    document TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (tenant_id, agent_id)
                )
                """
            )

    def _row_to_config(self, row: Any) -> AgentConfig:
        document = load_json(row["document"], default={})
        document["tenantId"] = row["tenant_id"]
        document["agentId"] = row["agent_id"]
        config = AgentConfig.model_validate(document)
        config.created_at = from_ts(row["created_at"])
        config.updated_at = from_ts(row["updated_at"])
        return config

    def get(self, scope: TenantScope, agent_id: str) -> Optional[AgentConfig]:
        with self.db.session() as conn:
            row = conn.execute(
                self.db.sql(
                    "SELECT tenant_id, agent_id, document, created_at, updated_at "
                    "FROM agent_configs WHERE tenant_id = ? AND agent_id = ?"
                ),
                (scope.tenant_id, agent_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_config(row)

    def list(self, scope: TenantScope) -> List[AgentConfig]:
        with self.db.session() as conn:
            rows = conn.execute(
                self.db.sql(
                    "SELECT tenant_id, agent_id, document, created_at, updated_at "
                    "FROM agent_configs WHERE tenant_id = ? ORDER BY agent_id"
                ),
                (scope.tenant_id,),
            ).fetchall()
        return [self._row_to_config(row) for row in rows]

    def create(self, scope: TenantScope, config: AgentConfig) -> AgentConfig:
        config = config.model_copy(update={"tenant_id": scope.tenant_id})
        now = to_ts(utcnow())
        with self.db.session() as conn:
            existing = conn.execute(
                self.db.sql("SELECT id FROM agent_configs WHERE tenant_id = ? AND agent_id = ?"),
                (scope.tenant_id, config.agent_id),
            ).fetchone()
            if existing is not None:
                raise AgentConfigExists(f"Agent config already exists: {scope.tenant_id}/{config.agent_id}")
            conn.execute(
                self.db.sql(
                    "INSERT INTO agent_configs (tenant_id, agent_id, document, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)"
                ),
                (scope.tenant_id, config.agent_id, _document(config), now, now),
            )
        logger.info("agent config created tenant=%s agent=%s", scope.tenant_id, config.agent_id)
        created = self.get(scope, config.agent_id)
        assert created is not None
        return created

    def replace(self, scope: TenantScope, config: AgentConfig) -> Optional[AgentConfig]:
        now = to_ts(utcnow())
        with self.db.session() as conn:
            cur = conn.execute(
                self.db.sql("UPDATE agent_configs SET document = ?, updated_at = ? WHERE tenant_id = ? AND agent_id = ?"),
                (_document(config), now, scope.tenant_id, config.agent_id),
            )
            updated = cur.rowcount
        if not updated:
            return None
        return self.get(scope, config.agent_id)

    def update(self, scope: TenantScope, agent_id: str, updates: Dict[str, Any]) -> Optional[AgentConfig]:
        """Shallow-merge camelCase `updates` into the stored document and revalidate."""
        current = self.get(scope, agent_id)
        if current is None:
            return None
        document = current.model_dump(by_alias=True, mode="json", exclude={"created_at", "updated_at"})
        for key, value in updates.items():
            if key in {"tenantId", "agentId", "createdAt", "updatedAt"}:
                continue
            document[key] = value
        merged = validate_agent_config(document)
        result = self.replace(scope, merged)
        logger.info("agent config updated tenant=%s agent=%s", scope.tenant_id, agent_id)
        return result

    def delete(self, scope: TenantScope, agent_id: str) -> bool:
        with self.db.session() as conn:
            cur = conn.execute(
                self.db.sql("DELETE FROM agent_configs WHERE tenant_id = ? AND agent_id = ?"),
                (scope.tenant_id, agent_id),
            )
            deleted = cur.rowcount
        logger.info("agent config deleted tenant=%s agent=%s", scope.tenant_id, agent_id)
        return deleted > 0

    def increment_usage(
        self,
        scope: TenantScope,
        agent_id: str,
        amount: int = 1,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[PlanConfig]:
        """Add `amount` to the monthly counter, renewing the period when it has lapsed."""
        config = self.get(scope, agent_id)
        if config is None:
            return None
        now = now or utcnow()
        plan = config.plan
        renews_at = plan.renews_at
        if renews_at is not None and renews_at.tzinfo is None:
            renews_at = renews_at.replace(tzinfo=timezone.utc)
        if renews_at is None or renews_at < now:
            plan = plan.model_copy(update={"used_this_month": amount, "renews_at": _next_month(now)})
        else:
            plan = plan.model_copy(update={"used_this_month": plan.used_this_month + amount})
        self.replace(scope, config.model_copy(update={"plan": plan}))
        return plan

    def usage(self, scope: TenantScope, agent_id: str) -> Optional[UsageReport]:
        config = self.get(scope, agent_id)
        if config is None:
            return None
        plan = config.plan
        return UsageReport(
            allowed=plan.used_this_month < plan.monthly_limit,
            used=plan.used_this_month,
            limit=plan.monthly_limit,
            remaining=max(0, plan.monthly_limit - plan.used_this_month),
            renews_at=plan.renews_at,
        )
