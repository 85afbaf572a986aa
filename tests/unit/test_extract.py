"""Tests for text extraction and the OCR client."""
import io

import docx
import httpx
import pytest
from pypdf import PdfWriter

from clinrag.errors import ExtractionFailed, UnsupportedMediaType
from clinrag.rag.extract import ExtractedText, OcrClient, OcrResult, TextExtractor
from clinrag.rag.md_parser import MarkdownParser

DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


class FakeOcr:
    def __init__(self, text="OCR text from scan"):
        self.text = text
        self.calls = []

    async def extract_text(self, data, mime_type):
        self.calls.append((data, mime_type))
        return OcrResult(text=self.text, confidence=0.75)


def blank_pdf(pages=2):
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=200, height=200)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def sample_docx():
    document = docx.Document()
    document.add_paragraph("Case summary: fatigue and low ferritin.")
    document.add_paragraph("   ")
    table = document.add_table(rows=1, cols=2)
    table.rows[0].cells[0].text = "Ferritin"
    table.rows[0].cells[1].text = "12 ng/mL"
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


async def test_plain_text():
    extracted = await TextExtractor().extract("Zinc 15 mg".encode(), "text/plain")
    assert extracted.text == "Zinc 15 mg"
    assert extracted.method == "plain"


async def test_plain_text_strips_bom_and_falls_back_to_latin1():
    extracted = await TextExtractor().extract(b"\xef\xbb\xbfhello", "text/plain")
    assert extracted.text == "hello"

    extracted = await TextExtractor().extract("Café".encode("latin-1"), "text/plain")
    assert extracted.text == "Café"


async def test_markdown_strips_frontmatter():
    content = "---\ntitle: Sleep\nauthor: Dr. Rossi\n---\n# Sleep\n\nMagnesium at night.\n"
    extracted = await TextExtractor().extract(content.encode(), "text/markdown")

    assert extracted.text.startswith("# Sleep")
    assert extracted.metadata == {"title": "Sleep", "author": "Dr. Rossi"}
    assert [h.text for h in extracted.headings] == ["Sleep"]


async def test_docx_paragraphs_and_tables():
    extracted = await TextExtractor().extract(sample_docx(), DOCX)

    assert extracted.method == "docx"
    assert extracted.text.splitlines() == [
        "Case summary: fatigue and low ferritin.",
        "Ferritin | 12 ng/mL",
    ]


async def test_corrupt_docx_fails():
    with pytest.raises(ExtractionFailed):
        await TextExtractor().extract(b"not a zip", DOCX)


async def test_corrupt_pdf_fails():
    with pytest.raises(ExtractionFailed):
        await TextExtractor().extract(b"not a pdf at all", "application/pdf")


async def test_pdf_without_text_falls_back_to_ocr():
    ocr = FakeOcr()
    data = blank_pdf()

    extracted = await TextExtractor(ocr_client=ocr).extract(data, "application/pdf")

    assert extracted.method == "ocr"
    assert extracted.text == "OCR text from scan"
    assert extracted.confidence == 0.75
    assert ocr.calls == [(data, "application/pdf")]


async def test_pdf_without_text_and_no_ocr_fails():
    with pytest.raises(ExtractionFailed):
        await TextExtractor().extract(blank_pdf(), "application/pdf")


@pytest.mark.parametrize("mime_type", ["image/png", "image/jpeg", "image/tiff", "application/msword"])
async def test_types_without_native_extractor_go_to_ocr(mime_type):
    ocr = FakeOcr()
    extracted = await TextExtractor(ocr_client=ocr).extract(b"binary", mime_type)

    assert extracted.method == "ocr"
    assert ocr.calls[0][1] == mime_type


async def test_unsupported_type():
    with pytest.raises(UnsupportedMediaType):
        await TextExtractor().extract(b"PK", "application/zip")


def test_page_number_lookup():
    extracted = ExtractedText(text="a" * 30, method="pdf", page_offsets=[0, 10, 20])

    assert extracted.page_number(0) == 1
    assert extracted.page_number(9) == 1
    assert extracted.page_number(10) == 2
    assert extracted.page_number(25) == 3
    assert ExtractedText(text="a", method="plain").page_number(0) is None


def test_heading_context():
    parser = MarkdownParser()
    doc = parser.parse("# A\n\n## B\n\ntext\n\n## C\n\n### D\n\nmore\n")

    assert parser.get_heading_context(doc.headings, 0) == ""
    assert parser.get_heading_context(doc.headings, 12) == "# A > ## B"
    assert parser.get_heading_context(doc.headings, len(doc.text)) == "# A > ## C > ### D"


def test_invalid_frontmatter_is_ignored():
    doc = MarkdownParser().parse("---\n: [unclosed\n---\nBody\n")
    assert doc.frontmatter == {}
    assert doc.text == "Body\n"


async def test_ocr_client_posts_file():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"text": "scanned", "confidence": 0.8})

    client = OcrClient("http://ocr.test/", transport=httpx.MockTransport(handler))
    result = await client.extract_text(b"image-bytes", "image/png")

    assert result == OcrResult(text="scanned", confidence=0.8)
    assert seen[0].url == "http://ocr.test/extract"
    assert b"image-bytes" in seen[0].content


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"error": "down"}),
        httpx.Response(200, json={"confidence": 0.5}),
        httpx.Response(200, content=b"<html>"),
    ],
)
async def test_ocr_client_failures(response):
    client = OcrClient("http://ocr.test", transport=httpx.MockTransport(lambda request: response))

    with pytest.raises(ExtractionFailed):
        await client.extract_text(b"image-bytes", "image/png")
