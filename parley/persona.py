from __future__ import annotations

import base64
import binascii
import json
import logging
import struct
import zlib
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from parley.errors import PersonaError
from parley.models import CharacterCard

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (".png", ".json")

FALLBACK_GREETING = "Hello! I'm {name}. How can I help you today?"

# PNG text-chunk keywords that character editors use for the card payload
CARD_KEYWORDS = ("chara", "ccv3", "ccv2", "comment", "description", "usercomment")

_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


class PersonaContext:
    """Resolves the system prompt and opening message for a character card."""

    def __init__(self, card: CharacterCard) -> None:
        self.card = card

    @property
    def name(self) -> str:
        return self.card.name

    @property
    def system_prompt(self) -> str:
        """Explicit override if the card has one, otherwise built from its fields."""
        if self.card.system_prompt:
            return self.card.system_prompt
        parts = []
        if self.card.name:
            parts.append(f"You are {self.card.name}.")
        if self.card.description:
            parts.append(self.card.description)
        if self.card.personality:
            parts.append(f"Personality: {self.card.personality}")
        if self.card.scenario:
            parts.append(f"Scenario: {self.card.scenario}")
        return " ".join(parts)

    @property
    def post_history_instructions(self) -> str:
        return self.card.post_history_instructions

    @property
    def opening_message(self) -> str | None:
        if self.card.first_message:
            return self.card.first_message
        if self.card.alternate_greetings:
            return self.card.alternate_greetings[0]
        return None

    @property
    def greeting(self) -> str:
        return self.opening_message or FALLBACK_GREETING.format(name=self.card.name or "your assistant")


def is_supported_file(path: Path | str) -> bool:
    return Path(path).suffix.lower() in SUPPORTED_EXTENSIONS


def load_card(path: Path | str) -> CharacterCard:
    """Load a character card from a .json file or a .png with embedded card metadata."""
    path = Path(path).expanduser()
    if not path.exists():
        raise PersonaError(f"Character card file not found: {path}")
    suffix = path.suffix.lower()
    if suffix == ".json":
        card = parse_card(path.read_text(encoding="utf-8"))
    elif suffix == ".png":
        payload = extract_card_json(path.read_bytes())
        if payload is None:
            raise PersonaError(f"No character data found in PNG metadata: {path}")
        card = parse_card(payload)
    else:
        raise PersonaError(
            f"Unsupported character card format '{suffix}'. Supported: {', '.join(SUPPORTED_EXTENSIONS)}"
        )
    logger.info("Loaded character card: %s", card.name or path.name)
    return card


def parse_card(text: str) -> CharacterCard:
    """Parse card JSON, flattening the nested ``data`` block used by V2/V3 cards."""
    try:
        raw = json.loads(text)
    except ValueError as e:
        raise PersonaError(f"Character card is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise PersonaError("Character card JSON must be an object")

    data = raw.get("data")
    if isinstance(data, dict):
        merged: dict[str, Any] = dict(data)
        for key, value in raw.items():
            if key != "data" and value not in (None, "", [], {}):
                merged[key] = value
        raw = merged

    try:
        return CharacterCard.model_validate(raw)
    except ValidationError as e:
        raise PersonaError(f"Invalid character card: {e}") from e


def extract_card_json(png: bytes) -> str | None:
    """Return the first card-like JSON payload from the PNG's text chunks, if any."""
    for keyword, value in iter_png_text(png):
        if keyword.lower() not in CARD_KEYWORDS:
            continue
        for candidate in (_try_base64(value), value):
            if candidate and _is_json(candidate):
                return candidate
    return None


def iter_png_text(png: bytes):
    """Yield ``(keyword, text)`` from tEXt, zTXt and iTXt chunks."""
    if not png.startswith(_PNG_SIGNATURE):
        raise PersonaError("Not a PNG file")
    offset = len(_PNG_SIGNATURE)
    while offset + 8 <= len(png):
        length, chunk_type = struct.unpack(">I4s", png[offset:offset + 8])
        data = png[offset + 8:offset + 8 + length]
        offset += 12 + length  # length + type + data + crc
        if chunk_type == b"IEND":
            break
        try:
            if chunk_type == b"tEXt":
                keyword, _, text = data.partition(b"\x00")
                yield keyword.decode("latin-1"), text.decode("latin-1")
            elif chunk_type == b"zTXt":
                keyword, _, rest = data.partition(b"\x00")
                yield keyword.decode("latin-1"), zlib.decompress(rest[1:]).decode("latin-1")
            elif chunk_type == b"iTXt":
                keyword, _, rest = data.partition(b"\x00")
                compressed, _method = rest[0], rest[1]
                _lang, _, rest = rest[2:].partition(b"\x00")
                _translated, _, text = rest.partition(b"\x00")
                if compressed:
                    text = zlib.decompress(text)
                yield keyword.decode("latin-1"), text.decode("utf-8")
        except (zlib.error, UnicodeDecodeError, IndexError) as e:
            logger.debug("Skipping unreadable PNG %s chunk: %s", chunk_type, e)


def _try_base64(value: str) -> str | None:
    stripped = value.strip()
    if not stripped or len(stripped) % 4:
        return None
    try:
        return base64.b64decode(stripped, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None


def _is_json(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True
