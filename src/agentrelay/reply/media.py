"""MEDIA token extraction from agent output text.

Agents attach files by writing ``MEDIA:<path-or-url>`` on a line of their
reply. Tokens inside fenced code blocks are left alone, and candidates that
don't look like a URL or a filesystem path stay in the text untouched.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

MEDIA_TOKEN_RE = re.compile(r"\bMEDIA:\s*`?([^\n]+)`?", re.IGNORECASE)
MAX_MEDIA_REF_CHARS = 1024

_AUDIO_AS_VOICE_RE = re.compile(r"\[\[audio_as_voice\]\]", re.IGNORECASE)
_FENCE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})")
_LEADING_WRAP_RE = re.compile(r"^[`\"'\[{(]+")
_TRAILING_WRAP_RE = re.compile(r"[`\"'\\})\],]+$")
_TOKEN_PREFIX_RE = re.compile(r"^MEDIA:", re.IGNORECASE)
_URL_RE = re.compile(r"^https?://", re.IGNORECASE)
_WS_RE = re.compile(r"\s")


@dataclass
class MediaSplit:
    text: str
    media_urls: list[str] = field(default_factory=list)
    audio_as_voice: bool = False

    @property
    def media_url(self) -> str | None:
        return self.media_urls[0] if self.media_urls else None


def parse_fence_spans(text: str) -> list[tuple[int, int]]:
    """Return ``(start, end)`` character offsets of fenced code blocks.

    A fence closes on a line opening with the same character repeated at
    least as many times. An unclosed fence runs to the end of the text.
    """
    spans: list[tuple[int, int]] = []
    offset = 0
    open_start: int | None = None
    open_marker = ""
    for line in text.split("\n"):
        match = _FENCE_RE.match(line)
        if match:
            marker = match.group(1)
            if open_start is None:
                open_start = offset
                open_marker = marker
            elif marker[0] == open_marker[0] and len(marker) >= len(open_marker):
                spans.append((open_start, offset + len(line)))
                open_start = None
        offset += len(line) + 1
    if open_start is not None:
        spans.append((open_start, len(text)))
    return spans


def _inside_fence(spans: list[tuple[int, int]], offset: int) -> bool:
    return any(start <= offset < end for start, end in spans)


def normalize_media_source(src: str) -> str:
    return src.removeprefix("file://")


def clean_candidate(raw: str) -> str:
    """Strip wrapping quotes, backticks and brackets from a candidate."""
    raw = _TOKEN_PREFIX_RE.sub("", raw)
    return _TRAILING_WRAP_RE.sub("", _LEADING_WRAP_RE.sub("", raw))


def is_valid_media(candidate: str) -> bool:
    if not candidate or len(candidate) > MAX_MEDIA_REF_CHARS:
        return False
    if _WS_RE.search(candidate):
        return False
    return bool(_URL_RE.match(candidate)) or candidate.startswith(("/", "./", "../"))


def _split_line(line: str, media: list[str]) -> str | None:
    """Extract media from one line.

    Returns the cleaned line (None if nothing is left), or the line
    unchanged when none of its candidates are valid.
    """
    pieces: list[str] = []
    found: list[str] = []
    cursor = 0
    for match in MEDIA_TOKEN_RE.finditer(line):
        pieces.append(line[cursor : match.start()])
        invalid: list[str] = []
        for part in match.group(1).split():
            candidate = normalize_media_source(clean_candidate(part))
            if is_valid_media(candidate):
                found.append(candidate)
            else:
                invalid.append(part)
        pieces.append(" ".join(invalid))
        cursor = match.end()

    if not found:
        return line

    media.extend(found)
    pieces.append(line[cursor:])
    cleaned = re.sub(r"[ \t]{2,}", " ", "".join(pieces)).strip()
    return cleaned or None


def split_media_from_output(raw: str) -> MediaSplit:
    """Pull ``MEDIA:`` references and the ``[[audio_as_voice]]`` tag out of *raw*.

    Leading whitespace is kept (it matters in Markdown); only the end is
    trimmed. Text without media or the voice tag comes back unchanged.
    """
    trimmed = raw.rstrip()
    if not trimmed.strip():
        return MediaSplit(text="")

    spans = parse_fence_spans(trimmed)
    media: list[str] = []
    kept: list[str] = []
    offset = 0
    for line in trimmed.split("\n"):
        if _inside_fence(spans, offset) or not MEDIA_TOKEN_RE.search(line):
            kept.append(line)
        else:
            cleaned = _split_line(line, media)
            if cleaned is not None:
                kept.append(cleaned)
        offset += len(line) + 1

    has_voice_tag = bool(_AUDIO_AS_VOICE_RE.search(trimmed))
    if not media and not has_voice_tag:
        return MediaSplit(text=trimmed)

    text = "\n".join(kept)
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"[ \t]{2,}", " ", text)
    text = re.sub(r"\n{2,}", "\n", text).strip()
    if has_voice_tag:
        text = _AUDIO_AS_VOICE_RE.sub("", text)
        text = re.sub(r"[ \t]+", " ", text)
        text = re.sub(r"\n{2,}", "\n", text).strip()

    return MediaSplit(text=text, media_urls=media, audio_as_voice=has_voice_tag)
