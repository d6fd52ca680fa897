"""
Execution backends, in priority order.

- base         — BackendAdapter contract and the shared streaming loop
- sdk_adapter  — Claude Agent SDK (subprocess) backend
- http_adapter — Anthropic Messages API over httpx, the always-eligible fallback
"""

from core.runtime.adapters.base import BackendAdapter
from core.runtime.adapters.http_adapter import HTTPAdapter
from core.runtime.adapters.sdk_adapter import SDKAdapter

__all__ = ["BackendAdapter", "HTTPAdapter", "SDKAdapter", "default_adapters"]


def default_adapters(**http_kwargs) -> list[BackendAdapter]:
    """SDK first, HTTP as the fallback."""
    return [SDKAdapter(), HTTPAdapter(**http_kwargs)]
