"""
Provider construction by name.

Builds LangChain chat models for the configured vendors and assembles the
primary plus fallback providers into a ProviderChain.
"""

from typing import Callable, Dict, List, Optional

from langchain_core.language_models import BaseChatModel
import structlog

from ..errors import ProviderError
from ..settings import Settings, settings as default_settings
from .base import LLMProvider
from .chain import ProviderChain
from .langchain_provider import LangChainProvider
from .mock import ScriptedProvider
from .rate_limit import RateLimiterPool

logger = structlog.get_logger(__name__)

ProviderFactory = Callable[[Settings], LLMProvider]


def map_to_anthropic_model(model: str) -> str:
    """Map OpenAI model names to Anthropic equivalents."""
    if model.startswith("claude"):
        return model
    mapping = {
        "gpt-4": "claude-3-opus-20240229",
        "gpt-4-turbo": "claude-3-5-sonnet-20241022",
        "gpt-3.5-turbo": "claude-3-5-haiku-20241022",
        "gpt-4o": "claude-3-5-sonnet-20241022",
        "gpt-4o-mini": "claude-3-5-haiku-20241022",
    }
    return mapping.get(model, "claude-3-5-sonnet-20241022")


def create_chat_model(provider: str, cfg: Settings) -> BaseChatModel:
    """
    Create the chat model of one vendor.

    Raises:
        ProviderError: If credentials are missing or the vendor is unknown
    """
    if provider == "openai":
        if not cfg.openai_api_key:
            raise ProviderError("OpenAI API key not configured", provider=provider)
        from langchain_openai import ChatOpenAI
        return ChatOpenAI(
            model=cfg.default_llm_model,
            temperature=cfg.llm_temperature,
            api_key=cfg.openai_api_key,
            timeout=cfg.provider_timeout_seconds,
            max_retries=0,
        )

    if provider == "anthropic":
        if not cfg.anthropic_api_key:
            raise ProviderError("Anthropic API key not configured", provider=provider)
        from langchain_anthropic import ChatAnthropic
        return ChatAnthropic(
            model=map_to_anthropic_model(cfg.default_llm_model),
            temperature=cfg.llm_temperature,
            api_key=cfg.anthropic_api_key,
            timeout=cfg.provider_timeout_seconds,
            max_retries=0,
        )

    if provider == "local":
        from langchain_community.chat_models import ChatOllama
        kwargs = {"model": cfg.default_llm_model, "temperature": cfg.llm_temperature}
        if cfg.ollama_base_url:
            kwargs["base_url"] = cfg.ollama_base_url
        return ChatOllama(**kwargs)

    raise ProviderError(f"Unsupported LLM provider: {provider}", provider=provider)


def _langchain_factory(provider: str) -> ProviderFactory:
    def _build(cfg: Settings) -> LLMProvider:
        return LangChainProvider(provider, create_chat_model(provider, cfg), model=cfg.default_llm_model)
    return _build


class ProviderRegistry:
    """Name-keyed provider factories; new providers are added by registering."""

    def __init__(self):
        self._factories: Dict[str, ProviderFactory] = {}

    def register(self, name: str, factory: ProviderFactory) -> None:
        self._factories[name] = factory

    def names(self) -> List[str]:
        return sorted(self._factories)

    def create(self, name: str, cfg: Settings) -> LLMProvider:
        factory = self._factories.get(name)
        if factory is None:
            raise ProviderError(f"Unknown provider: {name}. Available: {self.names()}", provider=name)
        return factory(cfg)


def default_provider_registry() -> ProviderRegistry:
    registry = ProviderRegistry()
    for name in ("openai", "anthropic", "local"):
        registry.register(name, _langchain_factory(name))
    registry.register("mock", lambda cfg: ScriptedProvider([], name="mock"))
    return registry


def build_provider_chain(
    cfg: Optional[Settings] = None,
    registry: Optional[ProviderRegistry] = None,
) -> ProviderChain:
    """
    Build the configured primary and fallback providers.

    Providers that cannot be constructed (missing credentials, missing
    vendor package) are skipped with a warning; at least one must remain.
    """
    cfg = cfg or default_settings
    registry = registry or default_provider_registry()

    order = [cfg.default_llm_provider] + [p for p in cfg.fallback_llm_providers if p != cfg.default_llm_provider]
    providers: List[LLMProvider] = []
    for name in order:
        try:
            providers.append(registry.create(name, cfg))
            logger.info("Configured LLM provider", provider=name, model=cfg.default_llm_model)
        except (ProviderError, ImportError) as e:
            logger.warning("Skipping unavailable LLM provider", provider=name, error=str(e))

    if not providers:
        raise ProviderError(f"No available LLM providers among {order}. Check your API keys.")

    return ProviderChain(
        providers,
        retries=cfg.provider_retries,
        timeout_seconds=cfg.provider_timeout_seconds,
        limiter=RateLimiterPool(cfg.rate_limit_requests_per_minute, cfg.rate_limit_burst),
    )
