"""Document format tags understood by the bot.

A format tag is the name the user types (``/format docx``) and also the name
handed to the conversion engine. Extensions and MIME types map onto tags so
that an uploaded document's source format can be inferred from the hint the
chat platform gives us, without ever trusting the uploaded filename itself.
"""

from enum import Enum
from pathlib import PurePosixPath


class DocFormat(str, Enum):
    MARKDOWN = "markdown"
    ASCIIDOC = "asciidoc"
    HTML = "html"
    DOCX = "docx"
    ODT = "odt"
    RST = "rst"
    LATEX = "latex"
    EPUB = "epub"
    ORG = "org"
    PLAIN = "plain"
    PDF = "pdf"
    PPTX = "pptx"
    XLSX = "xlsx"


# Formats pandoc can read.
PANDOC_SOURCES = frozenset({
    DocFormat.MARKDOWN,
    DocFormat.ASCIIDOC,
    DocFormat.HTML,
    DocFormat.DOCX,
    DocFormat.ODT,
    DocFormat.RST,
    DocFormat.LATEX,
    DocFormat.EPUB,
    DocFormat.ORG,
})

# Formats only docling can read; it always produces markdown.
DOCLING_SOURCES = frozenset({DocFormat.PDF, DocFormat.DOCX, DocFormat.PPTX, DocFormat.XLSX})

SOURCE_FORMATS = PANDOC_SOURCES | DOCLING_SOURCES

TARGET_FORMATS = frozenset({
    DocFormat.PDF,
    DocFormat.LATEX,
    DocFormat.DOCX,
    DocFormat.ODT,
    DocFormat.HTML,
    DocFormat.MARKDOWN,
    DocFormat.RST,
    DocFormat.EPUB,
    DocFormat.ASCIIDOC,
    DocFormat.PLAIN,
})

_EXTENSIONS: dict[DocFormat, str] = {
    DocFormat.MARKDOWN: ".md",
    DocFormat.ASCIIDOC: ".adoc",
    DocFormat.HTML: ".html",
    DocFormat.DOCX: ".docx",
    DocFormat.ODT: ".odt",
    DocFormat.RST: ".rst",
    DocFormat.LATEX: ".tex",
    DocFormat.EPUB: ".epub",
    DocFormat.ORG: ".org",
    DocFormat.PLAIN: ".txt",
    DocFormat.PDF: ".pdf",
    DocFormat.PPTX: ".pptx",
    DocFormat.XLSX: ".xlsx",
}

_SUFFIX_TO_FORMAT: dict[str, DocFormat] = {
    **{ext: fmt for fmt, ext in _EXTENSIONS.items()},
    ".markdown": DocFormat.MARKDOWN,
    ".txt": DocFormat.MARKDOWN,
    ".asciidoc": DocFormat.ASCIIDOC,
    ".htm": DocFormat.HTML,
    ".xhtml": DocFormat.HTML,
    ".latex": DocFormat.LATEX,
}

_MIME_TO_FORMAT: dict[str, DocFormat] = {
    "text/markdown": DocFormat.MARKDOWN,
    "text/x-markdown": DocFormat.MARKDOWN,
    "text/plain": DocFormat.MARKDOWN,
    "text/asciidoc": DocFormat.ASCIIDOC,
    "text/html": DocFormat.HTML,
    "application/xhtml+xml": DocFormat.HTML,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": DocFormat.DOCX,
    "application/vnd.oasis.opendocument.text": DocFormat.ODT,
    "text/x-rst": DocFormat.RST,
    "application/x-tex": DocFormat.LATEX,
    "text/x-tex": DocFormat.LATEX,
    "application/epub+zip": DocFormat.EPUB,
    "text/org": DocFormat.ORG,
    "application/pdf": DocFormat.PDF,
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": DocFormat.PPTX,
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": DocFormat.XLSX,
}

_ALIASES: dict[str, DocFormat] = {
    "md": DocFormat.MARKDOWN,
    "adoc": DocFormat.ASCIIDOC,
    "htm": DocFormat.HTML,
    "tex": DocFormat.LATEX,
    "txt": DocFormat.PLAIN,
    "text": DocFormat.PLAIN,
}


def parse_format(text: str | None) -> DocFormat | None:
    """Parse a user-typed format tag (case-insensitive, common aliases allowed)."""
    if not text:
        return None
    key = text.strip().lower().lstrip(".")
    if key in _ALIASES:
        return _ALIASES[key]
    try:
        return DocFormat(key)
    except ValueError:
        return None


def infer_source_format(hint: str | None) -> DocFormat | None:
    """Infer a source format from a filename, bare extension or MIME type.

    Only the suffix of a filename is consulted, so a hostile name such as
    ``../../etc/passwd.md`` yields ``markdown`` and nothing else.
    """
    if not hint:
        return None
    hint = hint.strip().lower()
    mime = hint.split(";", 1)[0].strip()
    if mime in _MIME_TO_FORMAT:
        return _MIME_TO_FORMAT[mime]
    suffix = PurePosixPath(hint.replace("\\", "/")).suffix
    if not suffix and "/" not in hint:
        suffix = "." + hint.lstrip(".")
    return _SUFFIX_TO_FORMAT.get(suffix)


def extension_for(fmt: DocFormat) -> str:
    return _EXTENSIONS[fmt]
