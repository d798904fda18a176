from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

logger = logging.getLogger("tenant-concierge")

# Packaged price table (concierge/pricing.yaml); PRICE_TABLE_PATH overrides it.
DEFAULT_PRICE_TABLE = Path(__file__).parent / "pricing.yaml"


@dataclass(frozen=True)
class Price:
    """USD per million tokens."""

    input: float
    output: float


class PriceTableError(RuntimeError):
    """Raised when a price table file cannot be read or is malformed."""


@dataclass
class PriceTable:
    models: Dict[Tuple[str, str], Price] = field(default_factory=dict)
    provider_defaults: Dict[str, Price] = field(default_factory=dict)
    default: Price = Price(input=0.50, output=1.50)

    def price_for(self, provider: str, model: str) -> Price:
        provider_key = provider.lower()
        price = self.models.get((provider_key, model.lower()))
        if price is not None:
            return price
        return self.provider_defaults.get(provider_key, self.default)

    def estimate_cost(self, provider: str, model: str, input_tokens: int, output_tokens: int) -> float:
        price = self.price_for(provider, model)
        cost = (max(input_tokens, 0) / 1_000_000) * price.input + (max(output_tokens, 0) / 1_000_000) * price.output
        return round(cost, 6)


def _coerce_price(raw: Any, where: str) -> Price:
    if not isinstance(raw, dict):
        raise PriceTableError(f"Price entry at {where} must be a mapping with input/output")
    try:
        return Price(input=float(raw["input"]), output=float(raw["output"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise PriceTableError(f"Invalid price entry at {where}: {raw!r}") from exc


def parse_price_table(data: Dict[str, Any]) -> PriceTable:
    table = PriceTable()
    if data.get("default") is not None:
        table.default = _coerce_price(data["default"], "default")

    providers = data.get("providers") or {}
    if not isinstance(providers, dict):
        raise PriceTableError("'providers' must be a mapping")
    for provider, entry in providers.items():
        provider_key = str(provider).lower()
        entry = entry or {}
        if entry.get("default") is not None:
            table.provider_defaults[provider_key] = _coerce_price(entry["default"], f"providers.{provider}.default")
        for model, raw in (entry.get("models") or {}).items():
            table.models[(provider_key, str(model).lower())] = _coerce_price(raw, f"providers.{provider}.models.{model}")
    return table


def load_price_table(path: Optional[str] = None) -> PriceTable:
    """Load a price table from YAML, defaulting to the packaged table."""
    table_path = Path(path) if path else DEFAULT_PRICE_TABLE
    if not table_path.exists():
        raise PriceTableError(f"Price table not found: {table_path}")

    with table_path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise PriceTableError("Price table YAML must deserialize to a mapping")

    table = parse_price_table(data)
    logger.debug("loaded price table path=%s models=%d", table_path, len(table.models))
    return table
