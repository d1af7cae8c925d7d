from __future__ import annotations

import hashlib
import logging
import os
import posixpath
import tempfile
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote, urlsplit

import httpx

from .config import DEFAULT_TIMEOUT_S, DEFAULT_USER_AGENT

log = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


class DimError(RuntimeError):
    pass


class NotFoundError(DimError):
    pass


class PreprocessError(DimError):
    pass


class StoreFormatError(DimError):
    pass


class LockVersionError(StoreFormatError):
    pass


class DownloadError(DimError):
    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Failed to download {url}: {reason}")
        self.url = url
        self.reason = reason


class DimHTTPError(DownloadError):
    def __init__(self, url: str, status_code: int, body: str = "") -> None:
        detail = f"HTTP {status_code}"
        snippet = body.strip()
        if snippet:
            detail = f"{detail} {snippet[:200]}"
        super().__init__(url, detail)
        self.status_code = status_code
        self.body = body


@dataclass(frozen=True)
class DownloadResult:
    url: str
    full_path: Path
    size_bytes: int


def validate_url(url: str) -> str:
    value = url.strip()
    parts = urlsplit(value)
    if parts.scheme not in ("http", "https"):
        raise DimError(f"Invalid url {url!r}. Only http/https urls are supported.")
    if not parts.netloc:
        raise DimError(f"Invalid url {url!r}. The url must include a host.")
    try:
        parts.port
    except ValueError as e:
        raise DimError(f"Invalid url {url!r}: {e}") from e
    return value


def target_path_for(url: str, data_dir: Path) -> Path:
    """
    Local location of the artifact for ``url``: ``<data_dir>/<host>/<url path>``.

    Urls whose path is empty or ends with ``/`` are stored as ``index``. A query
    string adds a short hash to the file name, so ``x.csv?v=1`` and ``x.csv?v=2``
    never share a file.
    """
    parts = urlsplit(validate_url(url))
    raw_path = unquote(parts.path)
    if not raw_path or raw_path.endswith("/"):
        raw_path = raw_path + "index"
    rel = posixpath.normpath(raw_path.lstrip("/"))
    segments = [s for s in rel.split("/") if s not in ("", ".")]
    if not segments or ".." in segments:
        raise DimError(f"Invalid url {url!r}. The path escapes the data directory.")
    if parts.query:
        digest = hashlib.sha256(parts.query.encode("utf-8")).hexdigest()[:10]
        stem, ext = posixpath.splitext(segments[-1])
        segments[-1] = f"{stem}-{digest}{ext}"
    host = parts.hostname or parts.netloc
    if parts.port:
        host = f"{host}_{parts.port}"

    base = data_dir.expanduser().resolve()
    target = base.joinpath(host, *segments).resolve()
    if base not in target.parents:
        raise DimError(f"Invalid url {url!r}. The path escapes the data directory.")
    return target


def _discard(tmp: Path | None) -> None:
    if tmp is not None:
        tmp.unlink(missing_ok=True)


class HttpDownloader:
    """
    Downloads urls into the data directory.

    One httpx client is shared by all callers, so a single downloader can serve the
    worker threads of a batch install.
    """

    def __init__(
        self,
        *,
        data_dir: Path,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.data_dir = data_dir
        self.timeout_s = timeout_s
        self._http = httpx.Client(
            timeout=timeout_s,
            follow_redirects=True,
            headers={"User-Agent": user_agent},
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "HttpDownloader":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def download(self, url: str) -> DownloadResult:
        target = target_path_for(url, self.data_dir)

        log.debug("GET %s -> %s", url, target)
        size = 0
        tmp: Path | None = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with self._http.stream("GET", url) as resp:
                if resp.status_code >= 400:
                    resp.read()
                    raise DimHTTPError(url, resp.status_code, resp.text)
                # One temp file per call: concurrent downloads of the same target must not interleave.
                fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f"{target.name}.", suffix=".part")
                tmp = Path(tmp_name)
                with os.fdopen(fd, "wb") as out:
                    for chunk in resp.iter_bytes(_CHUNK_SIZE):
                        out.write(chunk)
                        size += len(chunk)
            tmp.replace(target)
        except httpx.HTTPError as e:
            _discard(tmp)
            raise DownloadError(url, str(e) or type(e).__name__) from e
        except OSError as e:
            _discard(tmp)
            raise DownloadError(url, f"could not write {target}: {e}") from e

        log.debug("Downloaded %s (%d bytes)", url, size)
        return DownloadResult(url=url, full_path=target, size_bytes=size)
