"""
Document extraction

DocumentExtractor turns file bytes into raw field values. A failure raises
ExtractionError; a structurally valid but uncertain read is a normal result
with low confidence.

LlmDocumentExtractor is the default implementation. Images and scanned
PDFs are sent as attachments through the provider chain; CSV files and
digital PDFs (text layer read with pypdf) go inline as text. Output must
validate against ExtractedReceipt / ExtractedStatement.
"""
import io
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

import pypdf
import structlog
from pydantic import BaseModel, ConfigDict, Field

from packages.common.config import get_settings
from packages.common.errors import ExtractionError, ProviderError
from packages.common.llm import FileAttachment, LlmProviderFactory, get_llm_factory
from packages.common.schemas.enums import DocumentType, FileFormat
from packages.domain.imports.schemas import MIME_TYPES

logger = structlog.get_logger()

MAX_INLINE_TEXT_CHARS = 60_000


def extract_pdf_text(file_bytes: bytes) -> Optional[str]:
    """
    Text layer of a digital PDF.

    Returns:
        Page texts joined with page breaks, or None for scanned/unreadable PDFs
    """
    try:
        reader = pypdf.PdfReader(io.BytesIO(file_bytes))
        page_texts = [page.extract_text() or "" for page in reader.pages]
    except pypdf.errors.PyPdfError as e:
        logger.warning("pdf_read_error", error=str(e))
        return None
    except Exception as e:
        # Malformed structure pypdf does not classify; the file still goes as an attachment
        logger.warning("pdf_text_extraction_failed", error=str(e))
        return None

    combined_text = "\n\n--- PAGE BREAK ---\n\n".join(page_texts)

    # Check if we got meaningful text
    word_count = len(combined_text.split())
    char_count = len(combined_text.strip())
    if char_count < 50 or word_count < 10:
        logger.info("pdf_has_no_text_layer", pages=len(page_texts), chars=char_count)
        return None

    logger.info("pdf_text_extracted", pages=len(page_texts), chars=char_count, words=word_count)
    return combined_text


@dataclass
class ExtractionResult:
    """
    Raw extraction output.

    Attributes:
        fields: Field values (ExtractedReceipt / ExtractedStatement shape)
        confidence: Overall confidence score (0.0 to 1.0)
    """
    fields: Dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.0

    def __post_init__(self) -> None:
        """Validate confidence is in valid range"""
        if not 0 <= self.confidence <= 1:
            raise ValueError(f"Confidence must be 0-1, got {self.confidence}")


class DocumentExtractor(Protocol):
    """Contract for extraction backends"""

    async def extract(
        self,
        file_bytes: bytes,
        declared_type: DocumentType,
        file_format: FileFormat,
    ) -> ExtractionResult:
        """
        Extract fields from a document.

        Raises:
            ExtractionError: Extraction failed (not merely low confidence)
        """
        ...


class ExtractedReceipt(BaseModel):
    """Receipt fields"""
    model_config = ConfigDict(extra="forbid")

    merchant_name: Optional[str] = None
    transaction_date: Optional[date] = None
    total_amount: Optional[Decimal] = None
    currency: Optional[str] = Field(None, max_length=3)
    description: Optional[str] = None
    confidence: float = Field(..., ge=0.0, le=1.0)


class ExtractedStatementLine(BaseModel):
    """One statement line; amount is signed (negative = money out)"""
    model_config = ConfigDict(extra="forbid")

    transaction_date: date
    description: str
    merchant_name: Optional[str] = None
    amount: Decimal


class ExtractedStatement(BaseModel):
    """Bank / credit card statement fields"""
    model_config = ConfigDict(extra="forbid")

    account_name: Optional[str] = None
    currency: Optional[str] = Field(None, max_length=3)
    transactions: List[ExtractedStatementLine] = Field(default_factory=list)
    confidence: float = Field(..., ge=0.0, le=1.0)


RECEIPT_PROMPT = """Extract the purchase details from this receipt.

Return ONLY this JSON (no other text):
{
  "merchant_name": "Store name as printed, or null",
  "transaction_date": "YYYY-MM-DD or null",
  "total_amount": "Final total paid as a decimal string, or null",
  "currency": "3-letter ISO code or null",
  "description": "Short summary of what was bought, or null",
  "confidence": 0.95
}
Lower the confidence when the image is blurry, cut off, or the total is ambiguous."""

STATEMENT_PROMPT = """Extract every transaction from this bank or credit card statement.

Amounts are signed: money leaving the account is NEGATIVE, money coming in is POSITIVE.
Return ONLY this JSON (no other text):
{
  "account_name": "Account name or null",
  "currency": "3-letter ISO code or null",
  "transactions": [
    {"transaction_date": "YYYY-MM-DD", "description": "Line text as printed",
     "merchant_name": "Clean merchant name or null", "amount": "-12.34"}
  ],
  "confidence": 0.95
}"""


class LlmDocumentExtractor:
    """Default DocumentExtractor backed by the LLM provider chain"""

    def __init__(self, llm_factory: Optional[LlmProviderFactory] = None):
        self._llm_factory = llm_factory

    @property
    def llm_factory(self) -> LlmProviderFactory:
        """Lazy-load default provider chain"""
        if self._llm_factory is None:
            self._llm_factory = get_llm_factory()
        return self._llm_factory

    async def extract(
        self,
        file_bytes: bytes,
        declared_type: DocumentType,
        file_format: FileFormat,
    ) -> ExtractionResult:
        declared_type = DocumentType(declared_type)
        file_format = FileFormat(file_format)

        if file_format in (FileFormat.XLSX, FileFormat.XLS):
            raise ExtractionError(
                f"{file_format.value.upper()} spreadsheets are not supported; export the statement as CSV or PDF"
            )

        schema = ExtractedReceipt if declared_type == DocumentType.RECEIPT else ExtractedStatement
        prompt = RECEIPT_PROMPT if declared_type == DocumentType.RECEIPT else STATEMENT_PROMPT
        attachment = None

        text = None
        label = file_format.value.upper()
        if file_format == FileFormat.CSV:
            text = file_bytes.decode("utf-8-sig", errors="replace")
        elif file_format == FileFormat.PDF:
            # Digital PDFs go inline as text; scanned ones as an attachment
            text = extract_pdf_text(file_bytes)
            label = "PDF TEXT"

        if text is not None:
            if len(text) > MAX_INLINE_TEXT_CHARS:
                logger.warning("extraction_text_truncated", chars=len(text))
                text = text[:MAX_INLINE_TEXT_CHARS]
            prompt += f"\n\nFILE CONTENT ({label}):\n{text}"
        else:
            attachment = FileAttachment(data=file_bytes, mime_type=MIME_TYPES[file_format])

        logger.info("extraction_started",
                    declared_type=declared_type.value,
                    file_format=file_format.value,
                    size_bytes=len(file_bytes))

        try:
            parsed, response = await self.llm_factory.generate_json(
                prompt,
                schema,
                attachment=attachment,
                temperature=0.0,
                max_tokens=4096,
                timeout_seconds=get_settings().extraction_timeout_seconds,
            )
        except ExtractionError:
            raise
        except ProviderError as e:
            raise ExtractionError(e.message, provider=e.provider, details=e.details)

        logger.info("extraction_complete",
                    provider=response.provider,
                    confidence=parsed.confidence)
        return ExtractionResult(fields=parsed.model_dump(mode="json"), confidence=parsed.confidence)
