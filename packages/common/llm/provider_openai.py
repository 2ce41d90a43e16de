"""
OpenAI provider (secondary / fallback)
"""
import base64
from typing import Any, Dict, List, Optional

import structlog
from openai import AsyncOpenAI

from packages.common.llm.base import FileAttachment, LlmResponse

logger = structlog.get_logger()


class OpenAIProvider:
    """Chat completions via the OpenAI async client (JSON mode)"""

    name = "openai"

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", timeout: float = 30.0):
        self.model = model
        self.client = AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    async def close(self) -> None:
        await self.client.close()

    def supports_attachment(self, attachment: FileAttachment) -> bool:
        # PDFs go to the primary provider only
        return attachment.is_image

    def _build_content(self, prompt: str, attachment: Optional[FileAttachment]) -> List[Dict[str, Any]]:
        content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        if attachment is not None:
            encoded = base64.b64encode(attachment.data).decode("ascii")
            content.append({
                "type": "image_url",
                "image_url": {"url": f"data:{attachment.mime_type};base64,{encoded}"},
            })
        return content

    async def complete(
        self,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float,
        attachment: Optional[FileAttachment] = None,
    ) -> LlmResponse:
        response = await self.client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": "Return strictly the requested JSON object. No prose."},
                {"role": "user", "content": self._build_content(prompt, attachment)},
            ],
        )

        usage = response.usage
        return LlmResponse(
            text=response.choices[0].message.content or "",
            provider=self.name,
            model=self.model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )
