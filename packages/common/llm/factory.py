"""
LLM Provider Factory

Runs an ordered provider chain (primary -> secondary) with a bounded timeout
per call. Structured calls validate the model output against a pydantic
schema; output that fails validation counts as that provider failing.
"""
import asyncio
from typing import List, Optional, Sequence, Tuple, Type, TypeVar

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError

from packages.common.config import get_settings
from packages.common.errors import ProviderError, describe_error
from packages.common.llm.base import FileAttachment, LlmProvider, LlmResponse, parse_json_object
from packages.common.metrics import ai_provider_calls

logger = structlog.get_logger()

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class LlmProviderFactory:
    """
    Ordered fallback chain over LLM providers.

    Strategy:
    - Providers are tried in list order
    - A provider is skipped when it cannot take the attachment
    - Errors, timeouts and schema violations fall through to the next provider
    - Exhausting the chain raises ProviderError
    """

    def __init__(
        self,
        providers: Sequence[LlmProvider],
        timeout_seconds: float = 30.0,
        max_tokens: int = 1024,
    ):
        """
        Initialize the provider chain.

        Args:
            providers: Providers in priority order
            timeout_seconds: Upper bound for a single provider call
            max_tokens: Default completion budget
        """
        self.providers: List[LlmProvider] = list(providers)
        self.timeout_seconds = timeout_seconds
        self.max_tokens = max_tokens

        logger.info("llm_factory_initialized",
                    providers=[p.name for p in self.providers],
                    timeout_seconds=timeout_seconds)

    @property
    def enabled(self) -> bool:
        return bool(self.providers)

    async def aclose(self) -> None:
        """Close provider HTTP clients; they are bound to the running event loop"""
        for provider in self.providers:
            close = getattr(provider, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning("llm_provider_close_failed", provider=provider.name, error=describe_error(e))

    async def generate_json(
        self,
        prompt: str,
        schema: Type[SchemaT],
        *,
        attachment: Optional[FileAttachment] = None,
        temperature: float = 0.1,
        max_tokens: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ) -> Tuple[SchemaT, LlmResponse]:
        """
        Get a schema-validated JSON answer from the first provider that succeeds.

        Args:
            prompt: Prompt text
            schema: Pydantic model the JSON must validate against
            attachment: Optional image/PDF to send with the prompt
            temperature: Sampling temperature (low for structured output)
            max_tokens: Completion budget override
            timeout_seconds: Per-provider timeout override

        Returns:
            (validated schema instance, raw provider response)

        Raises:
            ProviderError: If no provider produced valid output
        """
        if not self.providers:
            raise ProviderError("No AI providers configured")

        timeout = timeout_seconds or self.timeout_seconds
        failures: List[str] = []

        for provider in self.providers:
            if attachment is not None and not provider.supports_attachment(attachment):
                logger.info("llm_provider_skipped_attachment",
                            provider=provider.name,
                            mime_type=attachment.mime_type)
                failures.append(f"{provider.name}: unsupported attachment {attachment.mime_type}")
                continue

            try:
                response = await asyncio.wait_for(
                    provider.complete(
                        prompt,
                        max_tokens=max_tokens or self.max_tokens,
                        temperature=temperature,
                        attachment=attachment,
                    ),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                ai_provider_calls.labels(provider=provider.name, outcome="timeout").inc()
                logger.warning("llm_provider_timeout",
                               provider=provider.name,
                               timeout_seconds=timeout)
                failures.append(f"{provider.name}: timed out after {timeout}s")
                continue
            except Exception as e:
                ai_provider_calls.labels(provider=provider.name, outcome="error").inc()
                logger.warning("llm_provider_failed",
                               provider=provider.name,
                               error=describe_error(e))
                failures.append(f"{provider.name}: {describe_error(e)}")
                continue

            try:
                parsed = schema.model_validate(parse_json_object(response.text))
            except (ValueError, SchemaValidationError) as e:
                ai_provider_calls.labels(provider=provider.name, outcome="invalid_output").inc()
                logger.warning("llm_provider_invalid_output",
                               provider=provider.name,
                               response=response.text[:500],
                               error=describe_error(e))
                failures.append(f"{provider.name}: invalid output")
                continue

            ai_provider_calls.labels(provider=provider.name, outcome="success").inc()
            return parsed, response

        logger.error("llm_providers_exhausted", failures=failures)
        raise ProviderError(
            "All AI providers failed: " + "; ".join(failures),
            details={"failures": failures},
        )


def build_llm_factory() -> LlmProviderFactory:
    """
    Build a new provider chain from settings.

    Configured from settings:
    - ANTHROPIC_API_KEY / ANTHROPIC_MODEL: primary provider
    - OPENAI_API_KEY / OPENAI_MODEL: secondary provider
    - AI_TIMEOUT_SECONDS, AI_MAX_TOKENS

    Workers build one per task (each task runs its own event loop) and
    close it with aclose() when done.

    Returns:
        Configured LlmProviderFactory (possibly with an empty chain)
    """
    settings = get_settings()
    providers: List[LlmProvider] = []

    if settings.anthropic_api_key:
        from packages.common.llm.provider_anthropic import AnthropicProvider
        providers.append(AnthropicProvider(
            api_key=settings.anthropic_api_key,
            model=settings.anthropic_model,
            timeout=settings.ai_timeout_seconds,
        ))

    if settings.openai_api_key:
        from packages.common.llm.provider_openai import OpenAIProvider
        providers.append(OpenAIProvider(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            timeout=settings.ai_timeout_seconds,
        ))

    if not providers:
        logger.warning("llm_no_providers_configured",
                       message="Set ANTHROPIC_API_KEY and/or OPENAI_API_KEY; AI steps will fail")

    return LlmProviderFactory(
        providers=providers,
        timeout_seconds=settings.ai_timeout_seconds,
        max_tokens=settings.ai_max_tokens,
    )


# Singleton factory instance for the API process (one long-lived event loop)
_default_factory: Optional[LlmProviderFactory] = None


def get_llm_factory() -> LlmProviderFactory:
    """Get the default provider chain (singleton)"""
    global _default_factory

    if _default_factory is None:
        _default_factory = build_llm_factory()

    return _default_factory
