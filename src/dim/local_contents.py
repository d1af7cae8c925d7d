from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Protocol

from .client import DimError, DownloadResult, validate_url
from .config import DEFAULT_MAX_WORKERS
from .preprocess import Directive, apply_preprocesses, parse_directives
from .store import Content, LockContent, LockStore, ManifestStore, make_content

log = logging.getLogger(__name__)


class Fetcher(Protocol):
    def download(self, url: str) -> DownloadResult:
        ...


Preprocessor = Callable[[Path, Iterable[Directive]], list[str]]
Clock = Callable[[], datetime]


@dataclass(frozen=True)
class UrlInstallResult:
    url: str
    status: str  # "installed", "updated" or "already_installed"
    lock_content: LockContent | None
    manifest_added: bool
    notes: tuple[str, ...] = ()


@dataclass(frozen=True)
class FetchFailure:
    url: str
    reason: str


@dataclass(frozen=True)
class BatchResult:
    status: str  # "ok", "partial", "no_contents" or "nothing_to_do"
    installed: tuple[LockContent, ...]
    failures: tuple[FetchFailure, ...]
    notes: tuple[str, ...] = ()


@dataclass(frozen=True)
class UninstallResult:
    url: str
    removed_from_manifest: bool
    removed_from_lock: bool
    removed_file: Path | None


@dataclass(frozen=True)
class StaleFileMissing:
    url: str
    path: str

    def __str__(self) -> str:
        return f"File for {self.url} is missing: {self.path}"


@dataclass(frozen=True)
class ListResult:
    contents: tuple[LockContent, ...]
    warnings: tuple[StaleFileMissing, ...]


@dataclass(frozen=True)
class ConsistencyReport:
    not_installed: tuple[str, ...]
    unmanaged: tuple[str, ...]
    missing_files: tuple[StaleFileMissing, ...]

    @property
    def ok(self) -> bool:
        return not self.missing_files


def compute_work_set(manifest: Iterable[Content], lock: Iterable[LockContent], *, update: bool) -> list[Content]:
    """
    Manifest entries an install must fetch, in manifest order.

    Updating selects the whole manifest; otherwise only urls absent from the lock.
    """
    contents = list(manifest)
    if update:
        return contents
    locked = {item.url for item in lock}
    return [c for c in contents if c.url not in locked]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


class LocalContentManager:
    def __init__(
        self,
        *,
        manifest: ManifestStore,
        lock: LockStore,
        fetcher: Fetcher | None = None,
        preprocessor: Preprocessor = apply_preprocesses,
        clock: Clock = _utcnow,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        self.manifest = manifest
        self.lock = lock
        self.fetcher = fetcher
        self.preprocessor = preprocessor
        self.clock = clock
        self.max_workers = max(1, max_workers)

    def install_url(
        self,
        url: str,
        preprocesses: Iterable[str] | None = None,
        *,
        name: str | None = None,
        update: bool = False,
    ) -> UrlInstallResult:
        url = validate_url(url)
        requested = list(preprocesses) if preprocesses is not None else None
        directives = parse_directives(requested or [])

        existing = self.lock.get(url)
        if existing is not None and not update:
            # Nothing is fetched; only a missing manifest entry is filled in.
            manifest_added = False
            if self.manifest.get(url) is None:
                content = make_content(url, name=name or existing.name, preprocesses=existing.preprocesses)
                manifest_added = self.manifest.add_one(content)
            log.debug("%s is already installed at %s", url, existing.path)
            return UrlInstallResult(
                url=url,
                status="already_installed",
                lock_content=existing,
                manifest_added=manifest_added,
            )

        declared = self.manifest.get(url)
        if declared is not None and requested is None:
            content = make_content(url, name=name or declared.name, preprocesses=declared.preprocesses)
            directives = parse_directives(content.preprocesses)
        else:
            fallback_name = declared.name if declared is not None else None
            content = make_content(url, name=name or fallback_name, preprocesses=requested or [])

        lock_content, notes = self._fetch(content, directives)

        # Manifest registration waits for the download so a failure leaves no orphan entry.
        manifest_added = False
        if declared is None:
            manifest_added = self.manifest.add_one(content)
        self.lock.add_one(lock_content)

        status = "updated" if existing is not None else "installed"
        log.info("%s %s -> %s", status.capitalize(), url, lock_content.path)
        return UrlInstallResult(
            url=url,
            status=status,
            lock_content=lock_content,
            manifest_added=manifest_added,
            notes=tuple(notes),
        )

    def update_url(self, url: str, preprocesses: Iterable[str] | None = None, *, name: str | None = None) -> UrlInstallResult:
        return self.install_url(url, preprocesses, name=name, update=True)

    def install_manifest(self, *, update: bool = False) -> BatchResult:
        contents = self.manifest.list_all()
        if not contents:
            return BatchResult(status="no_contents", installed=(), failures=())

        work = compute_work_set(contents, self.lock.list_all(), update=update)
        if not work:
            return BatchResult(status="nothing_to_do", installed=(), failures=())
        log.debug("Fetching %d of %d manifest contents (update=%s)", len(work), len(contents), update)

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(work))) as executor:
            futures = [executor.submit(self._fetch_isolated, content) for content in work]
            # Every fetch settles before anything is written.
            outcomes = [f.result() for f in futures]

        installed: list[LockContent] = []
        failures: list[FetchFailure] = []
        notes: list[str] = []
        for outcome in outcomes:
            if isinstance(outcome, FetchFailure):
                failures.append(outcome)
                continue
            lock_content, item_notes = outcome
            installed.append(lock_content)
            notes.extend(f"{lock_content.url}: {note}" for note in item_notes)

        if installed:
            self.lock.add_many(installed)

        return BatchResult(
            status="partial" if failures else "ok",
            installed=tuple(installed),
            failures=tuple(failures),
            notes=tuple(notes),
        )

    def update_all(self) -> BatchResult:
        return self.install_manifest(update=True)

    def uninstall(self, url: str) -> UninstallResult:
        url = url.strip()
        removed_from_manifest = self.manifest.remove_by_url(url)

        target = self.lock.get(url)
        removed_from_lock = self.lock.remove_by_url(url)

        removed_file: Path | None = None
        if target is not None and any(c.path == target.path for c in self.lock.list_all()):
            log.info("Keeping %s: another lock entry still points to it", target.path)
        elif target is not None:
            path = Path(target.path)
            try:
                path.unlink()
                removed_file = path
            except FileNotFoundError:
                log.debug("File for %s was already gone: %s", url, path)
            except OSError as e:
                raise DimError(f"Could not remove {path}: {e}") from e

        return UninstallResult(
            url=url,
            removed_from_manifest=removed_from_manifest,
            removed_from_lock=removed_from_lock,
            removed_file=removed_file,
        )

    def list_installed(self) -> ListResult:
        contents = self.lock.list_all()
        warnings = tuple(StaleFileMissing(url=c.url, path=c.path) for c in contents if not Path(c.path).exists())
        return ListResult(contents=tuple(contents), warnings=warnings)

    def check_consistency(self) -> ConsistencyReport:
        manifest_urls = [c.url for c in self.manifest.list_all()]
        listing = self.list_installed()
        locked_urls = {c.url for c in listing.contents}
        declared = set(manifest_urls)
        return ConsistencyReport(
            not_installed=tuple(u for u in manifest_urls if u not in locked_urls),
            unmanaged=tuple(c.url for c in listing.contents if c.url not in declared),
            missing_files=listing.warnings,
        )

    def _fetch(self, content: Content, directives: Iterable[Directive]) -> tuple[LockContent, list[str]]:
        if self.fetcher is None:
            raise DimError("This manager was created without a fetcher and cannot download.")
        result = self.fetcher.download(content.url)
        notes = self.preprocessor(result.full_path, directives)
        lock_content = LockContent(
            url=content.url,
            path=str(result.full_path),
            name=content.name,
            preprocesses=content.preprocesses,
            last_updated=self.clock(),
        )
        return lock_content, notes

    def _fetch_isolated(self, content: Content) -> tuple[LockContent, list[str]] | FetchFailure:
        try:
            directives = parse_directives(content.preprocesses)
            return self._fetch(content, directives)
        except DimError as e:
            log.warning("Failed to install %s: %s", content.url, e)
            return FetchFailure(url=content.url, reason=str(e))
        except Exception as e:
            # Anything else still fails only this url; the traceback goes to the log.
            log.exception("Unexpected error while installing %s", content.url)
            return FetchFailure(url=content.url, reason=f"{type(e).__name__}: {e}")
