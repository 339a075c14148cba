"""knowledge_base/chunker/__init__.py — public API of the chunker package."""

from knowledge_base.chunker.document_reader import DocumentReader
from knowledge_base.chunker.text_chunker import TextChunker, normalize

__all__ = [
    "DocumentReader",
    "TextChunker",
    "normalize",
]
