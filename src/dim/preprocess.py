from __future__ import annotations

import codecs
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .client import PreprocessError

log = logging.getLogger(__name__)

ENCODING_PREFIX = "encoding-"

# Tried in order after BOM sniffing; latin-1 decodes any byte sequence.
DEFAULT_SOURCE_ENCODINGS = ("utf-8", "cp932", "euc_jp", "latin-1")

_BOMS = (
    (codecs.BOM_UTF8, "utf-8-sig"),
    (codecs.BOM_UTF32_LE, "utf-32"),
    (codecs.BOM_UTF32_BE, "utf-32"),
    (codecs.BOM_UTF16_LE, "utf-16"),
    (codecs.BOM_UTF16_BE, "utf-16"),
)


@dataclass(frozen=True)
class Directive:
    kind: str  # "encoding" or "unknown"
    raw: str
    target: str | None = None


def parse_directive(raw: str) -> Directive:
    value = raw.strip()
    if not value.startswith(ENCODING_PREFIX):
        return Directive(kind="unknown", raw=value)

    target = value[len(ENCODING_PREFIX) :].strip().upper()
    if not target:
        raise PreprocessError(f"Invalid preprocess directive {raw!r}. Expected encoding-<TARGET>.")
    try:
        codecs.lookup(target)
    except LookupError as e:
        raise PreprocessError(f"Unknown encoding in preprocess directive {raw!r}: {target}") from e
    return Directive(kind="encoding", raw=value, target=target)


def parse_directives(values: Iterable[str]) -> tuple[Directive, ...]:
    return tuple(parse_directive(v) for v in values if v.strip())


def detect_encoding(data: bytes, candidates: Iterable[str] = DEFAULT_SOURCE_ENCODINGS) -> str:
    for bom, name in _BOMS:
        if data.startswith(bom):
            return name
    for name in candidates:
        try:
            data.decode(name)
        except UnicodeDecodeError:
            continue
        return name
    raise PreprocessError("Could not detect the text encoding of the file.")


def _same_codec(a: str, b: str) -> bool:
    return codecs.lookup(a).name == codecs.lookup(b).name


def encode_file(path: Path, target: str) -> bool:
    """
    Re-encode the text file at ``path`` to ``target``.

    Returns ``False`` when the file was already in the target encoding and was left untouched.
    """
    try:
        data = path.read_bytes()
    except OSError as e:
        raise PreprocessError(f"Could not read {path}: {e}") from e

    source = detect_encoding(data)
    if _same_codec(source, target):
        return False

    text = data.decode(source)
    try:
        encoded = text.encode(target)
    except UnicodeEncodeError as e:
        raise PreprocessError(f"{path} cannot be represented in {target}: {e}") from e

    tmp = path.with_name(path.name + ".tmp")
    try:
        tmp.write_bytes(encoded)
        tmp.replace(path)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise PreprocessError(f"Could not write {path}: {e}") from e
    log.debug("Re-encoded %s from %s to %s", path, source, target)
    return True


def apply_preprocesses(path: Path, directives: Iterable[Directive]) -> list[str]:
    """Apply directives in order; returns a note per directive that did something."""
    notes: list[str] = []
    for directive in directives:
        if directive.kind == "encoding" and directive.target:
            if encode_file(path, directive.target):
                notes.append(f"Converted encoding to {directive.target}")
            continue
        log.debug("Ignoring unrecognized preprocess directive %r", directive.raw)
    return notes
