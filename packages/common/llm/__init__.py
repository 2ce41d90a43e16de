"""
LLM Package

Provider chain used for AI categorization and document extraction.

Main entry point:
    from packages.common.llm import get_llm_factory

    parsed, response = await get_llm_factory().generate_json(prompt, MySchema)

Available providers:
    - AnthropicProvider: Claude (primary, images + PDFs)
    - OpenAIProvider: GPT (secondary, images only)
"""
from packages.common.llm.base import FileAttachment, LlmProvider, LlmResponse
from packages.common.llm.factory import LlmProviderFactory, build_llm_factory, get_llm_factory

__all__ = [
    "FileAttachment",
    "LlmProvider",
    "LlmResponse",
    "LlmProviderFactory",
    "build_llm_factory",
    "get_llm_factory",
]
