"""
LLM providers: the planning interface, vendor adapters and fallback chain.
"""

from .base import LLMProvider, PlanChunk, PlanningContext, PlanStreamEnd, decision_from_message
from .chain import ProviderChain
from .factory import ProviderRegistry, build_provider_chain, default_provider_registry
from .langchain_provider import LangChainProvider
from .mock import FailingProvider, ScriptedProvider
from .rate_limit import RateLimiterPool, TokenBucket

__all__ = [
    "LLMProvider",
    "PlanChunk",
    "PlanningContext",
    "PlanStreamEnd",
    "decision_from_message",
    "ProviderChain",
    "ProviderRegistry",
    "build_provider_chain",
    "default_provider_registry",
    "LangChainProvider",
    "FailingProvider",
    "ScriptedProvider",
    "RateLimiterPool",
    "TokenBucket",
]
