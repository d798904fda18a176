from __future__ import annotations

from pathlib import Path
from typing import Iterator, List

import pytest
from cryptography.fernet import Fernet

from concierge.config import Settings
from concierge.services import Services, build_services
from concierge.storage.db import TenantScope
from support import ScriptedAdapter


@pytest.fixture(autouse=True)
def _no_auth(monkeypatch: pytest.MonkeyPatch) -> None:
    """Authentication is opt-in per test via env_vars."""
    for name in ("AUTH_TOKEN", "JWT_SECRET", "SESSION_SECRET"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def encryption_key() -> str:
    return Fernet.generate_key().decode("utf-8")


@pytest.fixture
def scripted() -> ScriptedAdapter:
    return ScriptedAdapter()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def services(tmp_path: Path, encryption_key: str, scripted: ScriptedAdapter, sleeps: List[float]) -> Iterator[Services]:
    """Services on a temporary SQLite file; the "stub" vendor is backed by `scripted`."""
    settings = Settings(db_path=str(tmp_path / "concierge.db"), encryption_key=encryption_key)
    built = build_services(
        settings,
        provider_factories={"stub": lambda key, timeout: scripted},
        sleep=sleeps.append,
    )
    built.init_schema()
    yield built
    built.close()


@pytest.fixture
def scope() -> TenantScope:
    return TenantScope("t1")
