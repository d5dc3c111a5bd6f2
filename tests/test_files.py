from types import SimpleNamespace

import docx
import pytest

from chatkb.knowledge_base import DocumentProcessingError, ValidationError
from chatkb.utils import files as files_module
from chatkb.utils import get_file_type, read_document, read_documents, strip_markdown, validate_file
from chatkb.utils.text import count_words, split_front_matter, title_from_filename, title_from_markdown


class StubPdfReader:
    """Returns canned page texts instead of parsing a real PDF."""

    pages_text = ["First page text.", "Second page text.", None]

    def __init__(self, path):
        self.path = path
        self.pages = [SimpleNamespace(extract_text=lambda text=text: text) for text in self.pages_text]


@pytest.fixture
def stub_pdf(monkeypatch, tmp_path):
    monkeypatch.setattr(files_module, "PdfReader", StubPdfReader)
    path = tmp_path / "annual_report-2024.pdf"
    path.write_bytes(b"%PDF-1.4 stub")
    return path


@pytest.mark.parametrize(
    "name, expected",
    [
        ("notes.md", "md"),
        ("README.MARKDOWN", "md"),
        ("paper.pdf", "pdf"),
        ("letter.docx", "docx"),
        ("plain.txt", "txt"),
        ("image.png", "unknown"),
        ("no_suffix", "unknown"),
    ],
)
def test_get_file_type(name, expected):
    assert get_file_type(name) == expected


def test_validate_file_checks_size_and_type(tmp_path):
    small = tmp_path / "small.txt"
    small.write_text("tiny", encoding="utf-8")
    image = tmp_path / "photo.png"
    image.write_bytes(b"\x89PNG")

    assert validate_file(small) == "txt"
    with pytest.raises(ValidationError, match="exceeds maximum allowed size"):
        validate_file(small, max_size=2)
    with pytest.raises(ValidationError, match="File type 'png' is not supported"):
        validate_file(image)
    with pytest.raises(FileNotFoundError):
        validate_file(tmp_path / "gone.txt")


def test_strip_markdown_keeps_readable_text():
    source = (
        "# Title\n\n"
        "Some **bold** and *italic* and `code` with a [link](https://example.com).\n\n"
        "![diagram](img.png)\n\n"
        "```python\nprint('hidden')\n```\n\n"
        "- first item\n"
        "2. second item\n\n"
        "---\n\n"
        "snake_case_name stays intact and _emphasis_ goes."
    )

    text = strip_markdown(source)

    assert text.startswith("Title\n\nSome bold and italic and code with a link.")
    assert "diagram" in text
    assert "print" not in text
    assert "first item\nsecond item" in text
    assert "snake_case_name stays intact and emphasis goes." in text
    assert "---" not in text


def test_titles_from_markdown_and_filenames():
    assert title_from_markdown("intro\n\n# Main Heading\n\nbody") == "Main Heading"
    assert title_from_markdown('---\ntitle: "Front Title"\nauthor: me\n---\nbody') == "Front Title"
    assert title_from_markdown("no heading here") is None
    assert title_from_filename("quarterly_sales-report.pdf") == "Quarterly Sales Report"


def test_split_front_matter():
    fields, body = split_front_matter("---\ntitle: Guide\ntags: a, b\n---\nBody text.")

    assert fields == {"title": "Guide", "tags": "a, b"}
    assert body == "Body text."
    assert split_front_matter("No block.") == ({}, "No block.")


def test_markdown_document_metadata(tmp_path):
    path = tmp_path / "team-guide.md"
    path.write_text("---\ntitle: Team Guide\n---\nWelcome **aboard** everyone.", encoding="utf-8")

    document = read_document(path)

    assert document.content == "Welcome aboard everyone."
    assert document.metadata["title"] == "Team Guide"
    assert document.metadata["file_type"] == "md"
    assert document.metadata["word_count"] == 3
    assert document.metadata["source"] == "team-guide.md"
    assert "extracted_at" in document.metadata


def test_text_document_takes_title_from_filename(tmp_path):
    path = tmp_path / "meeting_notes.txt"
    path.write_text("Raw *text* is kept as is.", encoding="utf-8")

    document = read_document(path, document_id="notes")

    assert document.id == "notes"
    assert document.content == "Raw *text* is kept as is."
    assert document.metadata["title"] == "Meeting Notes"
    assert document.metadata["word_count"] == count_words("Raw *text* is kept as is.")


def test_docx_document(tmp_path):
    path = tmp_path / "policy.docx"
    word = docx.Document()
    word.add_paragraph("Remote work is allowed on Fridays.")
    word.add_paragraph("")
    word.add_paragraph("Equipment is provided by the company.")
    word.save(str(path))

    document = read_document(path)

    assert document.content == "Remote work is allowed on Fridays.\n\nEquipment is provided by the company."
    assert document.metadata["file_type"] == "docx"
    assert document.metadata["title"] == "Policy"
    assert document.metadata["word_count"] == 12


def test_pdf_document_marks_pages(stub_pdf):
    document = read_document(stub_pdf)

    assert document.content.startswith("--- Page 1 ---\nFirst page text.\n\n--- Page 2 ---\nSecond page text.")
    assert document.metadata["page_count"] == 3
    assert document.metadata["file_type"] == "pdf"
    assert document.metadata["title"] == "Annual Report 2024"


def test_pdf_max_pages(stub_pdf):
    document = read_document(stub_pdf, max_pages=1)

    assert "Second page" not in document.content
    assert document.metadata["page_count"] == 3


def test_unreadable_file_raises_processing_error(tmp_path):
    path = tmp_path / "broken.docx"
    path.write_bytes(b"not a zip archive")

    with pytest.raises(DocumentProcessingError) as info:
        read_document(path)

    assert info.value.path == str(path)
    assert info.value.__cause__ is not None


def test_file_without_text_is_rejected(tmp_path):
    path = tmp_path / "blank.txt"
    path.write_text("   \n\n  ", encoding="utf-8")

    with pytest.raises(DocumentProcessingError, match="no extractable text"):
        read_document(path)


def test_read_documents_continues_past_failures(tmp_path):
    good = tmp_path / "good.md"
    good.write_text("# Good\n\nUseful content.", encoding="utf-8")
    broken = tmp_path / "broken.docx"
    broken.write_bytes(b"garbage")
    image = tmp_path / "photo.png"
    image.write_bytes(b"\x89PNG")

    documents, failures = read_documents([good, broken, image])

    assert [d.metadata["source"] for d in documents] == ["good.md"]
    assert [path.name for path, _ in failures] == ["broken.docx", "photo.png"]
    assert "not supported" in failures[1][1]
