"""Convert one document to Markdown with docling.

Usage: ``python -m pandoc_bot.docling_worker INPUT OUTPUT``

Runs as a child process of the bot so the conversion can be killed on
timeout. Exit status: 0 on success, EXIT_UNSUPPORTED when the input type is
not handled, EXIT_FAILURE for anything else (details on stderr).
"""

import sys
from pathlib import Path

EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_UNSUPPORTED = 3

SUPPORTED_SUFFIXES = frozenset({".pdf", ".docx", ".pptx", ".xlsx"})


def convert_to_markdown(input_path: str) -> str:
    from docling.document_converter import DocumentConverter

    converter = DocumentConverter()
    result = converter.convert(input_path)
    # generic extraction across docling versions
    try:
        doc = result.document
    except AttributeError:
        to_doc = getattr(result, "to_doc", None)
        doc = to_doc() if callable(to_doc) else result
    for m in ("export_to_markdown", "to_markdown", "as_markdown"):
        fn = getattr(doc, m, None)
        if callable(fn):
            return fn()
    raise RuntimeError("Doc object lacks markdown export method")


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 2:
        print("usage: python -m pandoc_bot.docling_worker INPUT OUTPUT", file=sys.stderr)
        return EXIT_USAGE
    input_path, output_path = args
    if Path(input_path).suffix.lower() not in SUPPORTED_SUFFIXES:
        print(f"unsupported input type: {Path(input_path).suffix or '(none)'}", file=sys.stderr)
        return EXIT_UNSUPPORTED
    try:
        markdown = convert_to_markdown(input_path)
    except ImportError as e:
        print(f"docling is not available: {e}", file=sys.stderr)
        return EXIT_FAILURE
    except Exception as e:
        print(f"conversion failed: {e}", file=sys.stderr)
        return EXIT_FAILURE
    with Path(output_path).open("w", encoding="utf-8") as f:
        f.write(markdown)
    return 0


if __name__ == "__main__":
    sys.exit(main())
