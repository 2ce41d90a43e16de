"""
LLM Provider Base Interface

Defines the contract for all language model providers (Anthropic, OpenAI).
This allows reordering or swapping providers via configuration without
changing calling code.
"""
import json
from dataclasses import dataclass
from typing import Any, Optional, Protocol


IMAGE_MIME_TYPES = frozenset({"image/jpeg", "image/png", "image/webp", "image/gif"})
PDF_MIME_TYPE = "application/pdf"


@dataclass
class FileAttachment:
    """
    Binary file sent alongside a prompt.

    Attributes:
        data: Raw file bytes
        mime_type: MIME type (image/* or application/pdf)
    """
    data: bytes
    mime_type: str

    @property
    def is_image(self) -> bool:
        return self.mime_type in IMAGE_MIME_TYPES

    @property
    def is_pdf(self) -> bool:
        return self.mime_type == PDF_MIME_TYPE


@dataclass
class LlmResponse:
    """
    Result from one provider call.

    Attributes:
        text: Raw model output
        provider: Provider name that produced it
        model: Model identifier
        input_tokens: Prompt tokens billed (if reported)
        output_tokens: Completion tokens billed (if reported)
    """
    text: str
    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0


class LlmProvider(Protocol):
    """
    Protocol for LLM providers.

    All providers must implement this interface to be usable in the
    provider fallback chain.
    """

    name: str

    async def complete(
        self,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float,
        attachment: Optional[FileAttachment] = None,
    ) -> LlmResponse:
        """
        Send a prompt (plus optional file) and return the raw completion.

        Raises:
            Exception: Any transport/API failure; the factory treats it as
                this provider failing
        """
        ...

    def supports_attachment(self, attachment: FileAttachment) -> bool:
        """
        Check if this provider accepts the given attachment type.

        Args:
            attachment: File to send

        Returns:
            True if provider can process this file type
        """
        ...


def extract_json_text(response_text: str) -> str:
    """Strip markdown fences models sometimes wrap JSON in"""
    if "```json" in response_text:
        return response_text.split("```json")[1].split("```")[0].strip()
    if "```" in response_text:
        return response_text.split("```")[1].split("```")[0].strip()
    return response_text.strip()


def parse_json_object(response_text: str) -> Any:
    """Parse model output as JSON (fences tolerated)"""
    return json.loads(extract_json_text(response_text))
