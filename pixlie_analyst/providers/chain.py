"""
Ordered provider fallback with retries, timeouts and rate limiting.
"""

import asyncio
from typing import AsyncIterator, List, Optional

import structlog

from ..errors import ProviderError
from ..models.contracts import PlanDecision, ToolDescriptor
from .base import LLMProvider, PlanningContext, PlanStreamEnd, PlanStreamItem
from .rate_limit import RateLimiterPool

logger = structlog.get_logger(__name__)


class ProviderChain:
    """
    Primary provider followed by fallbacks.

    Each provider is tried ``retries + 1`` times before the chain falls
    through to the next one. With ``retries=0`` a primary and two fallbacks
    make exactly three attempts before ProviderError is raised.
    """

    def __init__(
        self,
        providers: List[LLMProvider],
        retries: int = 1,
        timeout_seconds: Optional[float] = 60.0,
        limiter: Optional[RateLimiterPool] = None,
    ):
        if not providers:
            raise ValueError("ProviderChain needs at least one provider")
        if retries < 0:
            raise ValueError("retries must not be negative")
        self.providers = list(providers)
        self.retries = retries
        self.timeout_seconds = timeout_seconds
        self.limiter = limiter

    @property
    def names(self) -> List[str]:
        return [p.name for p in self.providers]

    async def _acquire(self, context: PlanningContext) -> None:
        if self.limiter is not None:
            await self.limiter.acquire(context.workspace)

    async def plan(self, context: PlanningContext, tools: List[ToolDescriptor]) -> PlanDecision:
        """
        Ask providers in order until one returns a decision.

        Raises:
            ProviderError: When every attempt on every provider failed
        """
        attempts = 0
        errors: List[str] = []
        for provider in self.providers:
            for _ in range(self.retries + 1):
                attempts += 1
                await self._acquire(context)
                try:
                    decision = await asyncio.wait_for(provider.plan(context, tools), timeout=self.timeout_seconds)
                except asyncio.TimeoutError:
                    errors.append(f"{provider.name}: timeout after {self.timeout_seconds}s")
                    logger.warning("Provider call timed out", provider=provider.name, objective_id=context.objective_id)
                    continue
                except Exception as e:
                    errors.append(f"{provider.name}: {e}")
                    logger.warning(
                        "Provider call failed",
                        provider=provider.name,
                        objective_id=context.objective_id,
                        attempt=attempts,
                        error=str(e),
                    )
                    continue

                if attempts > 1:
                    logger.info("Provider call succeeded after fallback", provider=provider.name, attempts=attempts)
                return decision

        logger.error("All providers failed", objective_id=context.objective_id, attempts=attempts)
        raise ProviderError(
            f"All LLM providers failed after {attempts} attempts",
            provider=self.providers[-1].name,
            attempts=attempts,
            errors=errors,
        )

    async def stream_plan(self, context: PlanningContext, tools: List[ToolDescriptor]) -> AsyncIterator[PlanStreamItem]:
        """
        Streaming variant of ``plan``.

        Falls back only while nothing has been emitted; a failure after the
        first chunk raises ProviderError immediately.
        """
        attempts = 0
        errors: List[str] = []
        for provider in self.providers:
            for _ in range(self.retries + 1):
                attempts += 1
                await self._acquire(context)
                emitted = False
                stream = provider.stream_plan(context, tools).__aiter__()
                try:
                    while True:
                        try:
                            item = await asyncio.wait_for(stream.__anext__(), timeout=self.timeout_seconds)
                        except StopAsyncIteration:
                            raise ProviderError(f"{provider.name} stream ended without a decision", provider=provider.name)
                        emitted = True
                        yield item
                        if isinstance(item, PlanStreamEnd):
                            return
                except Exception as e:
                    if emitted:
                        logger.error("Provider stream failed mid-response", provider=provider.name, error=str(e))
                        if isinstance(e, ProviderError):
                            raise
                        raise ProviderError(str(e), provider=provider.name, attempts=attempts) from e
                    if isinstance(e, asyncio.TimeoutError):
                        errors.append(f"{provider.name}: timeout after {self.timeout_seconds}s")
                    else:
                        errors.append(f"{provider.name}: {e}")
                    logger.warning("Provider stream failed", provider=provider.name, attempt=attempts, error=str(e))
                finally:
                    aclose = getattr(stream, "aclose", None)
                    if aclose is not None:
                        await aclose()

        logger.error("All providers failed", objective_id=context.objective_id, attempts=attempts)
        raise ProviderError(
            f"All LLM providers failed after {attempts} attempts",
            provider=self.providers[-1].name,
            attempts=attempts,
            errors=errors,
        )
