"""Adapter lookup by protocol name."""

import logging
from typing import Dict, Iterator, Optional, Type

from core.chain import ChainContext
from core.models import ExecutionMode
from core.prices import PriceCache
from protocols.aave import AaveAdapter
from protocols.base import ProtocolAdapter
from protocols.gmx import GmxAdapter
from protocols.venus import VenusAdapter

logger = logging.getLogger(__name__)

ADAPTER_CLASSES: Dict[str, Type[ProtocolAdapter]] = {
    GmxAdapter.name: GmxAdapter,
    AaveAdapter.name: AaveAdapter,
    VenusAdapter.name: VenusAdapter,
}


class AdapterRegistry:
    def __init__(self, adapters: Optional[Dict[str, ProtocolAdapter]] = None):
        self._adapters: Dict[str, ProtocolAdapter] = dict(adapters or {})

    def register(self, adapter: ProtocolAdapter) -> None:
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> ProtocolAdapter:
        try:
            return self._adapters[name]
        except KeyError:
            raise KeyError(f"No adapter registered for protocol {name!r}") from None

    def names(self):
        return list(self._adapters)

    def __contains__(self, name: str) -> bool:
        return name in self._adapters

    def __iter__(self) -> Iterator[ProtocolAdapter]:
        return iter(self._adapters.values())

    def __len__(self) -> int:
        return len(self._adapters)


def build_adapters(protocols_config, chain: ChainContext, price_cache: PriceCache,
                   execution_mode: ExecutionMode) -> AdapterRegistry:
    """Instantiate one adapter per enabled protocol section."""
    registry = AdapterRegistry()
    for name, cls in ADAPTER_CLASSES.items():
        section = getattr(protocols_config, name, None)
        if section is None or not section.enabled:
            continue
        registry.register(cls(chain, section, price_cache, execution_mode))
        logger.info(f"Protocol adapter enabled: {name} ({cls.model})")
    return registry


__all__ = ["AdapterRegistry", "ADAPTER_CLASSES", "build_adapters"]
