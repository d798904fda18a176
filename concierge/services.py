"""
Explicit wiring of every collaborator the HTTP layer and CLI need.

`build_services` is the only place that reads Settings to construct objects;
tests build their own Services (scripted provider factories, temp DB) and hand
them to `create_app`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from .config import Settings, get_settings
from .crypto import CredentialCipher
from .external_api import ExternalApiClient
from .orchestrator import Orchestrator
from .pricing import PriceTable, load_price_table
from .providers import AdapterFactory, ProviderRouter
from .retrieval import HttpRetrieval, NullRetrieval, Retrieval
from .storage.agent_config_store import AgentConfigStore
from .storage.conversation_store import ConversationStore
from .storage.db import Database
from .storage.order_store import OrderStore
from .storage.product_store import ProductStore
from .tools.core import CoreTools
from .tools.registry import ToolRegistry

logger = logging.getLogger("tenant-concierge")


@dataclass
class Services:
    settings: Settings
    db: Database
    cipher: CredentialCipher
    configs: AgentConfigStore
    conversations: ConversationStore
    products: ProductStore
    orders: OrderStore
    external_api: ExternalApiClient
    retrieval: Retrieval
    router: ProviderRouter
    tools: ToolRegistry
    prices: PriceTable
    orchestrator: Orchestrator

    def init_schema(self) -> None:
        for store in (self.configs, self.conversations, self.products, self.orders):
            store.init_schema()

    def close(self) -> None:
        self.external_api.close()


def build_services(
    settings: Optional[Settings] = None,
    *,
    provider_factories: Optional[Mapping[str, AdapterFactory]] = None,
    external_api: Optional[ExternalApiClient] = None,
    retrieval: Optional[Retrieval] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Services:
    settings = settings or get_settings()
    db = Database.from_settings(settings)
    cipher = CredentialCipher(settings.encryption_key)
    if not cipher.configured:
        logger.warning("ENCRYPTION_KEY is not set; stored credentials cannot be decrypted")

    prices = load_price_table(settings.price_table_path)
    configs = AgentConfigStore(db)
    conversations = ConversationStore(db)
    products = ProductStore(db)
    orders = OrderStore(db)

    api = external_api or ExternalApiClient(cipher, timeout=settings.tool_timeout_seconds)
    if retrieval is None:
        retrieval = (
            HttpRetrieval(settings.retrieval_url, timeout=settings.tool_timeout_seconds)
            if settings.retrieval_url
            else NullRetrieval()
        )

    router = ProviderRouter(
        cipher,
        timeout=settings.provider_timeout_seconds,
        max_retries=settings.provider_max_retries,
        retry_base_delay=settings.provider_retry_base_delay,
        factories=provider_factories,
        sleep=sleep,
    )
    tools = ToolRegistry(CoreTools(products, orders, api, retrieval, currency=settings.currency), api)
    orchestrator = Orchestrator(
        configs,
        conversations,
        router,
        tools,
        prices,
        history_limit=settings.history_limit,
        currency_symbol=settings.currency_symbol,
    )

    return Services(
        settings=settings,
        db=db,
        cipher=cipher,
        configs=configs,
        conversations=conversations,
        products=products,
        orders=orders,
        external_api=api,
        retrieval=retrieval,
        router=router,
        tools=tools,
        prices=prices,
        orchestrator=orchestrator,
    )
