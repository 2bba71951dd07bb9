"""
Document Chunking
=================

Deterministic splitting of RAG documents into ordered chunks.
"""

import hashlib
import re

from report_pilot.models import Chunk, DocType, RagDocument

DEFAULT_CHUNK_SIZE = 800
DEFAULT_CHUNK_OVERLAP = 120

_TOKEN_PATTERN = re.compile(r"[a-z0-9_]+")


def tokenize(text: str) -> list[str]:
    """Lower-case word tokens of two or more characters."""
    return [token for token in _TOKEN_PATTERN.findall(text.lower()) if len(token) >= 2]


def singularize(token: str) -> str:
    """Naive English singular form (``customers`` -> ``customer``)."""
    if len(token) > 3 and token.endswith("ies"):
        return token[:-3] + "y"
    if len(token) > 3 and token.endswith("s") and not token.endswith("ss"):
        return token[:-1]
    return token


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def chunk_document(
    document: RagDocument,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> list[Chunk]:
    """
    Split a document into chunks.

    Schema documents are split on line boundaries and every chunk repeats
    the object header line, so a chunk always names the table it describes.
    Other documents use a fixed-size window with overlap, preferring to
    break on whitespace.
    """
    if overlap >= chunk_size:
        raise ValueError("overlap must be smaller than chunk_size")

    if document.doc_type is DocType.SCHEMA:
        pieces = _structural_pieces(document.content, chunk_size)
    else:
        pieces = _window_pieces(document.content, chunk_size, overlap)

    return [
        Chunk(
            chunk_id=f"{document.data_source_id}:{document.doc_id}#{ordinal}",
            doc_id=document.doc_id,
            data_source_id=document.data_source_id,
            doc_type=document.doc_type,
            ordinal=ordinal,
            content=piece,
            metadata=dict(document.metadata),
        )
        for ordinal, piece in enumerate(pieces)
    ]


def _structural_pieces(content: str, chunk_size: int) -> list[str]:
    lines = [line for line in content.splitlines() if line.strip()]
    if not lines:
        return []

    header, body = lines[0], lines[1:]
    pieces: list[str] = []
    current = [header]
    length = len(header)
    for line in body:
        if len(current) > 1 and length + 1 + len(line) > chunk_size:
            pieces.append("\n".join(current))
            current = [header]
            length = len(header)
        current.append(line)
        length += 1 + len(line)
    pieces.append("\n".join(current))
    return pieces


def _window_pieces(content: str, chunk_size: int, overlap: int) -> list[str]:
    text = content.strip()
    if not text:
        return []
    if len(text) <= chunk_size:
        return [text]

    pieces: list[str] = []
    start = 0
    while start < len(text):
        end = min(start + chunk_size, len(text))
        if end < len(text):
            split = text.rfind(" ", start + overlap + 1, end)
            if split > start:
                end = split
        piece = text[start:end].strip()
        if piece:
            pieces.append(piece)
        if end >= len(text):
            break
        start = end - overlap
    return pieces
