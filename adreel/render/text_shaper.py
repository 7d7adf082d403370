"""Emoji-aware text measurement and greedy word wrapping.

Pure functions: no I/O and no shared state, so the same text, width and font
always produce the same lines. Emoji clusters (ZWJ sequences, flags, skin tone
modifiers, keycaps) are measured as one fixed-size square glyph, matching how
the rasterizer pastes them.
"""

import unicodedata
from dataclasses import dataclass
from typing import Protocol

EMOJI_SCALE = 1.05
EMOJI_GAP_RATIO = 0.08

_EMOJI_RANGES = (
    (0x1F000, 0x1FAFF),
    (0x2600, 0x27BF),
    (0x2B00, 0x2BFF),
)
_ZWJ = 0x200D
_VARIATION_SELECTOR = 0xFE0F
_KEYCAP = 0x20E3


class GlyphFont(Protocol):
    """Anything that can report the advance width of a string (Pillow fonts)."""

    def getlength(self, text: str) -> float: ...


@dataclass(frozen=True)
class TextFont:
    """A loaded font face at a pixel size."""

    face: GlyphFont
    size: int

    @property
    def emoji_size(self) -> int:
        return max(1, int(self.size * EMOJI_SCALE))

    @property
    def emoji_advance(self) -> int:
        return self.emoji_size + max(1, int(self.emoji_size * EMOJI_GAP_RATIO))


def is_regional_indicator(codepoint: int) -> bool:
    return 0x1F1E6 <= codepoint <= 0x1F1FF


def is_skin_tone_modifier(codepoint: int) -> bool:
    return 0x1F3FB <= codepoint <= 0x1F3FF


def is_emoji_codepoint(codepoint: int) -> bool:
    return any(start <= codepoint <= end for start, end in _EMOJI_RANGES)


def consume_emoji_cluster(text: str, start: int) -> tuple[str | None, int]:
    """Return the emoji cluster beginning at ``start`` and the index after it.

    Returns ``(None, start)`` when ``text[start]`` does not begin an emoji.
    """
    if start >= len(text):
        return None, start

    first = ord(text[start])

    if is_regional_indicator(first):
        if start + 1 < len(text) and is_regional_indicator(ord(text[start + 1])):
            return text[start:start + 2], start + 2
        return text[start], start + 1

    # Keycap sequences: digit/#/* + VS16 + U+20E3
    if text[start] in "0123456789#*" and start + 1 < len(text):
        tail = text[start + 1:start + 3]
        if tail == "\ufe0f\u20e3":
            return text[start:start + 3], start + 3
        if tail[:1] == "\u20e3":
            return text[start:start + 2], start + 2

    if not is_emoji_codepoint(first):
        return None, start

    i = start + 1
    while i < len(text):
        cp = ord(text[i])
        if cp in (_VARIATION_SELECTOR, _KEYCAP) or is_skin_tone_modifier(cp):
            i += 1
            continue
        if cp == _ZWJ:
            i += 2 if i + 1 < len(text) else 1
            continue
        break

    return text[start:i], i


def tokenize(text: str) -> list[tuple[str, str]]:
    """Split text into ``("text", run)`` and ``("emoji", cluster)`` tokens."""
    tokens: list[tuple[str, str]] = []
    buffer = ""
    i = 0

    while i < len(text):
        cluster, next_i = consume_emoji_cluster(text, i)
        if cluster:
            if buffer:
                tokens.append(("text", buffer))
                buffer = ""
            tokens.append(("emoji", cluster))
            i = next_i
            continue
        buffer += text[i]
        i += 1

    if buffer:
        tokens.append(("text", buffer))
    return tokens


def split_units(text: str) -> list[str]:
    """Split text into the smallest units a line may be broken between.

    Emoji clusters stay whole and combining marks stay with their base.
    """
    units: list[str] = []
    for kind, value in tokenize(text):
        if kind == "emoji":
            units.append(value)
            continue
        for ch in value:
            if units and unicodedata.combining(ch):
                units[-1] += ch
            else:
                units.append(ch)
    return units


def measure(text: str, font: TextFont) -> float:
    """Advance width of ``text`` in pixels."""
    width = 0.0
    for kind, value in tokenize(text):
        if kind == "text":
            width += float(font.face.getlength(value))
        else:
            width += float(font.emoji_advance)
    return width


def _break_word(word: str, max_width: float, font: TextFont) -> list[str]:
    """Break an over-wide word between units; never returns an empty list."""
    pieces: list[str] = []
    chunk = ""
    for unit in split_units(word):
        candidate = chunk + unit
        if chunk and measure(candidate, font) > max_width:
            pieces.append(chunk)
            chunk = unit
        else:
            chunk = candidate
    pieces.append(chunk)
    return pieces


def wrap(text: str, max_width: float, font: TextFont) -> list[str]:
    """Greedy word wrap of ``text`` to ``max_width`` pixels.

    Explicit newlines split paragraphs first; blank paragraphs are dropped.
    A word wider than ``max_width`` is broken between characters, so only a
    single unit can ever exceed the width. Always returns at least ``[""]``.
    """
    lines: list[str] = []

    for paragraph in text.split("\n"):
        line = ""
        for word in paragraph.split():
            candidate = f"{line} {word}" if line else word
            if measure(candidate, font) <= max_width:
                line = candidate
                continue

            if line:
                lines.append(line)
                line = ""

            if measure(word, font) <= max_width:
                line = word
            else:
                pieces = _break_word(word, max_width, font)
                lines.extend(pieces[:-1])
                line = pieces[-1]

        if line:
            lines.append(line)

    return lines or [""]
