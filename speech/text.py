"""
speech/text.py — Reply text preparation for synthesis

strip_markdown() removes formatting that would otherwise be read aloud;
split_into_chunks() breaks a reply into sentence-aligned pieces short
enough for one synthesis request each.
"""

from __future__ import annotations

import re

_SENTENCE_RE = re.compile(r"[^.!?]+(?:[.!?]+|$)")


def strip_markdown(text: str) -> str:
    """
    Remove common Markdown formatting so TTS doesn't read symbols aloud.
    Minimal — keeps the text natural for spoken output.
    """
    text = re.sub(r"```[\s\S]*?```", "[code block]", text)
    text = re.sub(r"`([^`]+)`", r"\1", text)
    text = re.sub(r"^\s*#{1,6}\s*", "", text, flags=re.MULTILINE)
    text = re.sub(r"^\s*[-*+]\s+", "", text, flags=re.MULTILINE)
    text = re.sub(r"\*{1,3}([^*]+)\*{1,3}", r"\1", text)
    text = re.sub(r"_{2,3}([^_]+)_{2,3}", r"\1", text)
    text = re.sub(r"\[([^\]]+)\]\([^)]+\)", r"\1", text)
    text = re.sub(r"https?://\S+", "link", text)
    text = re.sub(r"\n+", " ", text)
    text = re.sub(r"\s{2,}", " ", text)
    return text.strip()


def split_into_chunks(text: str, max_chars: int = 300) -> list[str]:
    """
    Group whole sentences into chunks of at most max_chars characters.

    A single sentence longer than max_chars is cut at word boundaries
    (or mid-word, for a word that alone exceeds the limit).
    """
    text = text.strip()
    if not text:
        return []

    chunks: list[str] = []
    current = ""
    for match in _SENTENCE_RE.finditer(text):
        sentence = match.group(0).strip()
        if not sentence:
            continue
        for piece in _split_long(sentence, max_chars):
            candidate = f"{current} {piece}" if current else piece
            if len(candidate) > max_chars:
                chunks.append(current)
                current = piece
            else:
                current = candidate
    if current:
        chunks.append(current)
    return chunks


def _split_long(sentence: str, max_chars: int) -> list[str]:
    if len(sentence) <= max_chars:
        return [sentence]
    pieces: list[str] = []
    current = ""
    for word in sentence.split():
        while len(word) > max_chars:
            if current:
                pieces.append(current)
                current = ""
            pieces.append(word[:max_chars])
            word = word[max_chars:]
        if not word:
            continue
        candidate = f"{current} {word}" if current else word
        if len(candidate) > max_chars:
            pieces.append(current)
            current = word
        else:
            current = candidate
    if current:
        pieces.append(current)
    return pieces
