from __future__ import annotations

import codecs
import logging
from dataclasses import dataclass

from charset_normalizer import detect

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "utf-8"
CJK_ENCODING = "gb18030"

# Short simplified-Chinese text is routinely reported as any of these; gb18030
# decodes all of them.
CJK_AMBIGUOUS_LABELS = {
    "gb2312",
    "gbk",
    "gb18030",
    "cp936",
    "windows-1252",
    "cp1252",
}


@dataclass(frozen=True)
class EncodingGuess:
    encoding: str
    confidence: float
    detected: str | None

    def to_dict(self) -> dict:
        return {
            "encoding": self.encoding,
            "confidence": self.confidence,
            "detected": self.detected,
        }


def resolve_encoding_label(label: str | None) -> str:
    """Map a detector or ``.cpg`` label onto a codec Python can decode with."""
    cleaned = (label or "").strip().lower().replace("_", "-")
    if not cleaned:
        return DEFAULT_ENCODING

    # .cpg files often carry a bare code page number ("936", "65001").
    if cleaned.isdigit():
        cleaned = "utf-8" if cleaned == "65001" else f"cp{cleaned}"
    elif cleaned.startswith("ansi "):
        cleaned = f"cp{cleaned.split(' ', 1)[1].strip()}"

    if cleaned in CJK_AMBIGUOUS_LABELS:
        return CJK_ENCODING

    try:
        codecs.lookup(cleaned)
    except LookupError:
        logger.warning("Unknown encoding label %r, falling back to %s", label, DEFAULT_ENCODING)
        return DEFAULT_ENCODING
    return cleaned


def detect_encoding(content: bytes) -> EncodingGuess:
    if not content:
        return EncodingGuess(encoding=DEFAULT_ENCODING, confidence=0.0, detected=None)

    detection = detect(content)
    detected = detection.get("encoding")
    confidence = float(detection.get("confidence") or 0.0)
    encoding = resolve_encoding_label(detected) if detected else DEFAULT_ENCODING
    logger.debug("Detected encoding %s (confidence %.2f), decoding as %s", detected, confidence, encoding)
    return EncodingGuess(encoding=encoding, confidence=confidence, detected=detected)


def decode_bytes(content: bytes) -> str:
    """Decode raw bytes to text; never raises."""
    if not content:
        return ""
    guess = detect_encoding(content)
    text = content.decode(guess.encoding, errors="replace")
    if text.startswith("\ufeff"):
        text = text[1:]
    return text
