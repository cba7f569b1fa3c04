from __future__ import annotations

import logging
import threading
from typing import Dict, Mapping

from ..errors import UnsupportedVendor
from ..router import VendorDef
from .anthropic import AnthropicAdapter
from .base import BaseAdapter, iter_sse_json, raise_for_vendor_status
from .gemini import GeminiAdapter
from .openai import OpenAIAdapter
from .perplexity import PerplexityAdapter

logger = logging.getLogger(__name__)

VENDOR_ADAPTERS: Dict[str, type[BaseAdapter]] = {
    "openai": OpenAIAdapter,
    "anthropic": AnthropicAdapter,
    "google": GeminiAdapter,
    "perplexity": PerplexityAdapter,
}


class ProviderRegistry:
    """Process-wide adapter cache keyed by vendor id.

    An adapter is built on first use and kept for the life of the process.
    Construction runs under a per-vendor lock so concurrent first requests
    build it once. A failed construction is not cached.
    """

    def __init__(self, vendors: Mapping[str, VendorDef]):
        self.vendors: Dict[str, VendorDef] = dict(vendors)
        self._adapters: Dict[str, BaseAdapter] = {}
        self._locks = {name: threading.Lock() for name in VENDOR_ADAPTERS}

    def usable_vendors(self) -> frozenset[str]:
        return frozenset(
            name
            for name, defn in self.vendors.items()
            if name in VENDOR_ADAPTERS and defn.credential()
        )

    def is_usable(self, vendor: str) -> bool:
        return vendor in self.usable_vendors()

    def get(self, vendor: str) -> BaseAdapter:
        factory = VENDOR_ADAPTERS.get(vendor)
        defn = self.vendors.get(vendor)
        if factory is None or defn is None:
            raise UnsupportedVendor(f"Unsupported provider: {vendor}", vendor=vendor)
        adapter = self._adapters.get(vendor)
        if adapter is not None:
            return adapter
        with self._locks[vendor]:
            adapter = self._adapters.get(vendor)
            if adapter is None:
                adapter = factory(defn)
                self._adapters[vendor] = adapter
                logger.info("adapter_created vendor=%s", vendor)
        return adapter


__all__ = [
    "BaseAdapter",
    "ProviderRegistry",
    "VENDOR_ADAPTERS",
    "AnthropicAdapter",
    "GeminiAdapter",
    "OpenAIAdapter",
    "PerplexityAdapter",
    "iter_sse_json",
    "raise_for_vendor_status",
]
