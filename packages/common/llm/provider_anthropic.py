"""
Anthropic Claude provider (primary)
"""
import base64
from typing import Any, Dict, List, Optional

import anthropic
import structlog

from packages.common.llm.base import FileAttachment, LlmResponse

logger = structlog.get_logger()


class AnthropicProvider:
    """Claude via the Anthropic async client"""

    name = "anthropic"

    def __init__(self, api_key: str, model: str = "claude-sonnet-4-5", timeout: float = 30.0):
        """
        Initialize Anthropic provider.

        Args:
            api_key: Anthropic API key
            model: Model identifier
            timeout: Per-request HTTP timeout in seconds
        """
        self.model = model
        self.client = anthropic.AsyncAnthropic(api_key=api_key, timeout=timeout, max_retries=0)

    async def close(self) -> None:
        await self.client.close()

    def supports_attachment(self, attachment: FileAttachment) -> bool:
        return attachment.is_image or attachment.is_pdf

    def _build_content(self, prompt: str, attachment: Optional[FileAttachment]) -> List[Dict[str, Any]]:
        content: List[Dict[str, Any]] = []
        if attachment is not None:
            source = {
                "type": "base64",
                "media_type": attachment.mime_type,
                "data": base64.standard_b64encode(attachment.data).decode("ascii"),
            }
            block_type = "document" if attachment.is_pdf else "image"
            content.append({"type": block_type, "source": source})
        content.append({"type": "text", "text": prompt})
        return content

    async def complete(
        self,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float,
        attachment: Optional[FileAttachment] = None,
    ) -> LlmResponse:
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[
                {
                    "role": "user",
                    "content": self._build_content(prompt, attachment),
                }
            ],
        )

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )

        logger.debug("anthropic_completion",
                     model=self.model,
                     input_tokens=response.usage.input_tokens,
                     output_tokens=response.usage.output_tokens)

        return LlmResponse(
            text=text,
            provider=self.name,
            model=self.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
