from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Protocol

from .client import DimError, LockVersionError, StoreFormatError

log = logging.getLogger(__name__)

LOCK_FILE_VERSION = "1.0"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


@dataclass(frozen=True)
class Content:
    url: str
    name: str
    preprocesses: tuple[str, ...] = ()


@dataclass(frozen=True)
class LockContent:
    url: str
    path: str
    name: str
    preprocesses: tuple[str, ...]
    last_updated: datetime | None


def make_content(url: str, *, name: str | None = None, preprocesses: Iterable[str] = ()) -> Content:
    return Content(url=url, name=name or url, preprocesses=tuple(preprocesses))


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        # Accept full ISO 8601 as written by other tools (e.g. JavaScript's Date.toJSON()).
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)


def _str_list(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(v for v in value if isinstance(v, str))


def content_to_json(content: Content) -> dict[str, Any]:
    return {"url": content.url, "name": content.name, "preprocesses": list(content.preprocesses)}


def content_from_json(raw: Any) -> Content | None:
    if not isinstance(raw, dict):
        return None
    url = raw.get("url")
    if not isinstance(url, str) or not url.strip():
        return None
    name = raw.get("name")
    return Content(
        url=url,
        name=name if isinstance(name, str) and name else url,
        preprocesses=_str_list(raw.get("preprocesses")),
    )


def lock_content_to_json(item: LockContent) -> dict[str, Any]:
    out: dict[str, Any] = {
        "url": item.url,
        "path": item.path,
        "name": item.name,
        "preprocesses": list(item.preprocesses),
    }
    if item.last_updated is not None:
        out["lastUpdated"] = format_timestamp(item.last_updated)
    return out


def lock_content_from_json(raw: Any) -> LockContent | None:
    if not isinstance(raw, dict):
        return None
    url = raw.get("url")
    path = raw.get("path")
    if not isinstance(url, str) or not url.strip():
        return None
    if not isinstance(path, str) or not path:
        return None
    name = raw.get("name")
    stamp = raw.get("lastUpdated")
    try:
        last_updated = parse_timestamp(stamp) if isinstance(stamp, str) else None
    except ValueError:
        last_updated = None
    if last_updated is None:
        # Kept without a timestamp; dropping it would lose track of the file on the next write.
        log.warning("Lock entry for %s has no valid lastUpdated (%r)", url, stamp)
    return LockContent(
        url=url,
        path=path,
        name=name if isinstance(name, str) and name else url,
        preprocesses=_str_list(raw.get("preprocesses")),
        last_updated=last_updated,
    )


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False) + "\n", encoding="utf-8")
    tmp.replace(path)


def _read_json_object(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return None
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise StoreFormatError(f"{path} is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise StoreFormatError(f"{path} must contain a JSON object.")
    return raw


def _dedupe_by_url(entries: list[Any]) -> list[Any]:
    seen: set[str] = set()
    out = []
    for entry in entries:
        if entry.url in seen:
            continue
        seen.add(entry.url)
        out.append(entry)
    return out


class ManifestStore(Protocol):
    def list_all(self) -> list[Content]:
        ...

    def get(self, url: str) -> Content | None:
        ...

    def add_one(self, content: Content) -> bool:
        ...

    def add_many(self, contents: Iterable[Content]) -> list[Content]:
        ...

    def remove_by_url(self, url: str) -> bool:
        ...


class LockStore(Protocol):
    def list_all(self) -> list[LockContent]:
        ...

    def get(self, url: str) -> LockContent | None:
        ...

    def add_one(self, item: LockContent) -> bool:
        ...

    def add_many(self, items: Iterable[LockContent]) -> None:
        ...

    def remove_by_url(self, url: str) -> bool:
        ...


class _BaseManifestStore:
    """
    Manifest semantics on top of ``_read``/``_write``.

    Adds are exclusive: a url that is already present is left as it is.
    """

    def _read(self) -> list[Content]:
        raise NotImplementedError

    def _write(self, contents: list[Content]) -> None:
        raise NotImplementedError

    def list_all(self) -> list[Content]:
        return self._read()

    def get(self, url: str) -> Content | None:
        for content in self._read():
            if content.url == url:
                return content
        return None

    def add_one(self, content: Content) -> bool:
        return bool(self.add_many([content]))

    def add_many(self, contents: Iterable[Content]) -> list[Content]:
        current = self._read()
        known = {c.url for c in current}
        added: list[Content] = []
        for content in contents:
            if content.url in known:
                continue
            known.add(content.url)
            added.append(content)
        if added:
            self._write(current + added)
        return added

    def remove_by_url(self, url: str) -> bool:
        current = self._read()
        kept = [c for c in current if c.url != url]
        if len(kept) == len(current):
            return False
        self._write(kept)
        return True


class _BaseLockStore:
    """
    Lock semantics on top of ``_read``/``_write``.

    Adding an entry for a url that is already locked replaces the old entry
    wholesale; the new entry moves to the end of the list.
    """

    def _read(self) -> list[LockContent]:
        raise NotImplementedError

    def _write(self, items: list[LockContent]) -> None:
        raise NotImplementedError

    def list_all(self) -> list[LockContent]:
        return self._read()

    def get(self, url: str) -> LockContent | None:
        for item in self._read():
            if item.url == url:
                return item
        return None

    def add_one(self, item: LockContent) -> bool:
        current = self._read()
        replaced = any(c.url == item.url for c in current)
        self._write([c for c in current if c.url != item.url] + [item])
        return replaced

    def add_many(self, items: Iterable[LockContent]) -> None:
        incoming: dict[str, LockContent] = {}
        for item in items:
            incoming.pop(item.url, None)
            incoming[item.url] = item
        if not incoming:
            return
        current = self._read()
        self._write([c for c in current if c.url not in incoming] + list(incoming.values()))

    def remove_by_url(self, url: str) -> bool:
        current = self._read()
        kept = [c for c in current if c.url != url]
        if len(kept) == len(current):
            return False
        self._write(kept)
        return True


class JsonManifestStore(_BaseManifestStore):
    def __init__(self, path: Path) -> None:
        self.path = path

    def _read(self) -> list[Content]:
        raw = _read_json_object(self.path)
        if raw is None:
            return []
        items = raw.get("contents", [])
        if not isinstance(items, list):
            raise StoreFormatError(f"{self.path}: 'contents' must be a list.")
        parsed = [c for c in (content_from_json(item) for item in items) if c is not None]
        return _dedupe_by_url(parsed)

    def _write(self, contents: list[Content]) -> None:
        _write_json_atomic(self.path, {"contents": [content_to_json(c) for c in contents]})


class JsonLockStore(_BaseLockStore):
    def __init__(self, path: Path, *, version: str = LOCK_FILE_VERSION) -> None:
        self.path = path
        self.version = version

    def read_version(self) -> str | None:
        raw = _read_json_object(self.path)
        if raw is None:
            return None
        value = raw.get("lockFileVersion")
        return value if isinstance(value, str) else None

    def _read(self) -> list[LockContent]:
        raw = _read_json_object(self.path)
        if raw is None:
            return []
        version = raw.get("lockFileVersion")
        if version != self.version:
            raise LockVersionError(
                f"{self.path} has lockFileVersion {version!r}; this version of dim reads {self.version!r}."
            )
        items = raw.get("contents", [])
        if not isinstance(items, list):
            raise StoreFormatError(f"{self.path}: 'contents' must be a list.")
        parsed = [c for c in (lock_content_from_json(item) for item in items) if c is not None]
        return _dedupe_by_url(parsed)

    def _write(self, items: list[LockContent]) -> None:
        payload = {
            "lockFileVersion": self.version,
            "contents": [lock_content_to_json(c) for c in items],
        }
        _write_json_atomic(self.path, payload)


class MemoryManifestStore(_BaseManifestStore):
    def __init__(self, contents: Iterable[Content] = ()) -> None:
        self._contents = _dedupe_by_url(list(contents))
        self.writes = 0

    def _read(self) -> list[Content]:
        return list(self._contents)

    def _write(self, contents: list[Content]) -> None:
        self._contents = list(contents)
        self.writes += 1


class MemoryLockStore(_BaseLockStore):
    def __init__(self, items: Iterable[LockContent] = ()) -> None:
        self._items = _dedupe_by_url(list(items))
        self.writes = 0

    def _read(self) -> list[LockContent]:
        return list(self._items)

    def _write(self, items: list[LockContent]) -> None:
        self._items = list(items)
        self.writes += 1


@dataclass(frozen=True)
class BootstrapResult:
    data_dir: Path
    manifest_path: Path
    lock_path: Path
    created: tuple[Path, ...]


def bootstrap(*, data_dir: Path, manifest_path: Path, lock_path: Path, force: bool = False) -> BootstrapResult:
    """
    Make sure the data directory exists and both store files are present.

    Existing files are left alone unless ``force`` is set, which rewrites them empty.
    """
    created: list[Path] = []
    try:
        if not data_dir.exists():
            created.append(data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise DimError(f"Could not create data directory: {data_dir}") from e
    if not data_dir.is_dir():
        raise DimError(f"Data path is not a directory: {data_dir}")

    if force or not manifest_path.exists():
        _write_json_atomic(manifest_path, {"contents": []})
        created.append(manifest_path)
    if force or not lock_path.exists():
        _write_json_atomic(lock_path, {"lockFileVersion": LOCK_FILE_VERSION, "contents": []})
        created.append(lock_path)

    for path in created:
        log.debug("Created %s", path)
    return BootstrapResult(
        data_dir=data_dir,
        manifest_path=manifest_path,
        lock_path=lock_path,
        created=tuple(created),
    )

