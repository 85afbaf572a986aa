"""Text extraction for uploaded documents.

Handles:
- Plain text and markdown (frontmatter stripped, headings kept)
- PDF via pypdf, with page offsets
- DOCX via python-docx
- OCR fallback for sources with no extractable text (scans, images)
"""
import asyncio
import io
import zipfile
from bisect import bisect_right
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import docx
import httpx
import structlog
from docx.opc.exceptions import PackageNotFoundError
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from clinrag import config
from clinrag.errors import ExtractionFailed, UnsupportedMediaType
from clinrag.rag.md_parser import Heading, MarkdownParser

logger = structlog.get_logger()

PDF = "application/pdf"
DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
PAGE_SEPARATOR = "\n\n"


@dataclass
class ExtractedText:
    """Text pulled out of a source file plus what we know about its layout."""

    text: str
    method: str
    page_offsets: List[int] = field(default_factory=list)
    headings: List[Heading] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    confidence: Optional[float] = None

    def page_number(self, char_position: int) -> Optional[int]:
        """1-based page containing ``char_position``, when pages are known."""
        if not self.page_offsets:
            return None
        return max(1, bisect_right(self.page_offsets, char_position))


@dataclass
class OcrResult:
    text: str
    confidence: Optional[float] = None


class OcrClient:
    """Client for the external OCR / text extraction service."""

    def __init__(
        self,
        base_url: str,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = config.OCR_TIMEOUT if timeout is None else timeout
        self.transport = transport

    async def extract_text(self, data: bytes, mime_type: str) -> OcrResult:
        """Send raw file bytes to the OCR service.

        Raises:
            ExtractionFailed: On transport, HTTP or response errors
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(
                    f"{self.base_url}/extract",
                    files={"file": ("upload", data, mime_type)},
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as e:
            logger.error("ocr_request_failed", error=str(e), base_url=self.base_url)
            raise ExtractionFailed(f"OCR service request failed: {e}") from e
        except ValueError as e:
            raise ExtractionFailed(f"OCR service returned invalid JSON: {e}") from e

        text = payload.get("text")
        if not isinstance(text, str):
            raise ExtractionFailed("OCR service response has no text field")

        confidence = payload.get("confidence")
        return OcrResult(
            text=text,
            confidence=float(confidence) if confidence is not None else None,
        )


def _decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.warning("text_not_utf8_falling_back_to_latin1", size=len(data))
        return data.decode("latin-1")


class TextExtractor:
    """Extracts text natively and falls back to OCR when that yields nothing."""

    def __init__(self, ocr_client: Optional[OcrClient] = None):
        self.ocr_client = ocr_client
        self.markdown_parser = MarkdownParser()

    async def extract(self, data: bytes, mime_type: str) -> ExtractedText:
        """Extract text from raw file bytes.

        Raises:
            UnsupportedMediaType: If the media type is not accepted
            ExtractionFailed: If neither native extraction nor OCR yields text
        """
        if mime_type not in config.ALLOWED_MIME_TYPES:
            raise UnsupportedMediaType(f"Unsupported media type: {mime_type}")

        # Parsing is CPU-bound; keep it off the event loop
        extracted = await asyncio.to_thread(self._extract_native, data, mime_type)
        if extracted is not None and extracted.text.strip():
            logger.info(
                "text_extracted",
                method=extracted.method,
                text_length=len(extracted.text),
                pages=len(extracted.page_offsets) or None,
            )
            return extracted

        if self.ocr_client is None:
            raise ExtractionFailed(
                f"No extractable text in {mime_type} file and no OCR service configured"
            )

        logger.info("ocr_fallback", mime_type=mime_type, size=len(data))
        result = await self.ocr_client.extract_text(data, mime_type)
        if not result.text.strip():
            raise ExtractionFailed("OCR service returned no text")

        logger.info(
            "text_extracted",
            method="ocr",
            text_length=len(result.text),
            confidence=result.confidence,
        )
        return ExtractedText(text=result.text, method="ocr", confidence=result.confidence)

    def _extract_native(self, data: bytes, mime_type: str) -> Optional[ExtractedText]:
        if mime_type == "text/markdown":
            doc = self.markdown_parser.parse(_decode_text(data))
            return ExtractedText(
                text=doc.text,
                method="markdown",
                headings=doc.headings,
                metadata=self.markdown_parser.document_metadata(doc),
            )
        if mime_type.startswith("text/"):
            return ExtractedText(text=_decode_text(data), method="plain")
        if mime_type == PDF:
            return self._extract_pdf(data)
        if mime_type == DOCX:
            return self._extract_docx(data)

        # Legacy .doc and images have no native extractor
        return None

    def _extract_pdf(self, data: bytes) -> ExtractedText:
        try:
            reader = PdfReader(io.BytesIO(data))
            pages = [page.extract_text() or "" for page in reader.pages]
        except (PdfReadError, ValueError) as e:
            raise ExtractionFailed(f"Could not read PDF: {e}") from e

        offsets = []
        position = 0
        for page in pages:
            offsets.append(position)
            position += len(page) + len(PAGE_SEPARATOR)

        return ExtractedText(
            text=PAGE_SEPARATOR.join(pages),
            method="pdf",
            page_offsets=offsets,
        )

    def _extract_docx(self, data: bytes) -> ExtractedText:
        try:
            document = docx.Document(io.BytesIO(data))
        except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as e:
            raise ExtractionFailed(f"Could not read DOCX: {e}") from e

        parts = [p.text for p in document.paragraphs if p.text.strip()]
        for table in document.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
                if cells:
                    parts.append(" | ".join(cells))

        return ExtractedText(text="\n".join(parts), method="docx")
