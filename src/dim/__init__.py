from ._version import __version__
from .client import DimError, DownloadError, HttpDownloader
from .local_contents import LocalContentManager
from .store import Content, JsonLockStore, JsonManifestStore, LockContent

__all__ = [
    "Content",
    "DimError",
    "DownloadError",
    "HttpDownloader",
    "JsonLockStore",
    "JsonManifestStore",
    "LocalContentManager",
    "LockContent",
    "__version__",
]
