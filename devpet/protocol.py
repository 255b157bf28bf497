from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Union

# Inbound grammar: `command_name Some Command Data`
COMMAND_RE = re.compile(r"^([a-z_]+)(?:\s+(.*))?$")

# Outbound names may also carry hyphens (`new-commits`, `music-play`).
_OUTBOUND_NAME_RE = re.compile(r"^[a-z_-]+$")


class CommandNameError(ValueError):
    """Raised when a caller tries to encode an invalid command."""


@dataclass(frozen=True)
class Command:
    name: str
    payload: str = ""


@dataclass(frozen=True)
class Malformed:
    raw_text: str


DecodeResult = Union[Command, Malformed]


def _to_ascii(text: str) -> bytes:
    # The link is ASCII-only: strip accents (`Café` -> `Cafe`), anything else becomes `?`.
    decomposed = unicodedata.normalize("NFKD", text)
    kept = "".join(c for c in decomposed if not unicodedata.combining(c))
    return kept.encode("ascii", errors="replace")


def encode(name: str, payload: str = "") -> bytes:
    """Encode one command as a newline-terminated ASCII line.

    Payloads are transliterated to ASCII: accented letters lose their accents
    and characters with no ASCII form are sent as `?`.
    """

    if not isinstance(name, str) or not _OUTBOUND_NAME_RE.match(name):
        raise CommandNameError(f"invalid command name: {name!r}")
    payload = payload or ""
    if "\n" in payload or "\r" in payload:
        raise CommandNameError(f"payload for {name!r} must not contain line breaks")

    line = f"{name} {payload}\n" if payload else f"{name}\n"
    return _to_ascii(line)



def decode(raw: str | bytes) -> DecodeResult:
    """Decode one inbound line. Never raises."""

    if isinstance(raw, (bytes, bytearray)):
        text = bytes(raw).decode("ascii", errors="replace")
    else:
        text = str(raw)

    stripped = text.strip()
    match = COMMAND_RE.match(stripped)
    if match is None:
        return Malformed(raw_text=stripped)
    return Command(name=match.group(1), payload=match.group(2) or "")
