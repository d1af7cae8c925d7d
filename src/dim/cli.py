from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from dataclasses import asdict
from pathlib import Path
from typing import Any

from ._version import __version__
from .client import DimError, DownloadError, HttpDownloader, NotFoundError
from .config import Config, config_path, load_config, merge_overrides, save_config
from .local_contents import BatchResult, LocalContentManager, UrlInstallResult
from .store import JsonLockStore, JsonManifestStore, LockContent, bootstrap, format_timestamp

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_DOWNLOAD_FAILED = 2
EXIT_NOT_FOUND = 3
EXIT_STALE_FILES = 4
EXIT_PARTIAL_FAILURE = 5


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [max(len(r[i]) for r in rows) for i in range(len(rows[0]))]
    for row in rows:
        print("  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip())


def _warn(message: str) -> None:
    print(f"warning: {message}", file=sys.stderr)


def _lock_content_payload(item: LockContent) -> dict[str, Any]:
    return {
        "url": item.url,
        "name": item.name,
        "path": item.path,
        "preprocesses": list(item.preprocesses),
        "lastUpdated": format_timestamp(item.last_updated) if item.last_updated else None,
    }


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="dim",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Data-file dependency manager: keeps dim.json and dim-lock.json in sync with downloaded files.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              DIM_CONFIG_PATH, DIM_DATA_DIR, DIM_MANIFEST_PATH, DIM_LOCK_PATH, DIM_TIMEOUT_S, DIM_MAX_WORKERS
            """
        ),
    )

    def _add_runtime_overrides(parser: argparse.ArgumentParser) -> None:
        # Accepted both before and after the subcommand, e.g.:
        #   dim --data-dir ./data install
        #   dim install --data-dir ./data
        # SUPPRESS keeps a subparser from resetting a value given before the subcommand.
        parser.add_argument("--data-dir", default=argparse.SUPPRESS, help="Directory downloaded files are stored in")
        parser.add_argument("--manifest", dest="manifest_path", default=argparse.SUPPRESS, help="Manifest file path")
        parser.add_argument("--lock", dest="lock_path", default=argparse.SUPPRESS, help="Lock file path")
        parser.add_argument("--timeout-s", type=float, default=argparse.SUPPRESS, help="HTTP timeout in seconds")
        parser.add_argument(
            "--max-workers", type=int, default=argparse.SUPPRESS, help="Parallel downloads for batch installs"
        )
        parser.add_argument("-v", "--verbose", action="store_true", default=argparse.SUPPRESS, help="Debug logging")

    _add_runtime_overrides(p)
    p.add_argument("--version", action="version", version=f"dim {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    init = sub.add_parser("init", help="Create the data directory, dim.json and dim-lock.json")
    _add_runtime_overrides(init)
    init.add_argument("--force", action="store_true", help="Overwrite existing dim.json and dim-lock.json")

    install = sub.add_parser("install", aliases=["i"], help="Install a url, or every manifest content not yet installed")
    _add_runtime_overrides(install)
    install.add_argument("url", nargs="?", help="Data url to install (default: install from dim.json)")
    install.add_argument(
        "-p",
        "--preprocess",
        action="append",
        default=None,
        metavar="DIRECTIVE",
        help="Preprocess directive applied after download, e.g. encoding-utf8 (repeatable)",
    )
    install.add_argument("--name", help="Display name for the url (default: the url)")
    install.add_argument("--json", action="store_true", help="Output JSON")

    update = sub.add_parser("update", aliases=["up"], help="Re-download a url, or every manifest content")
    _add_runtime_overrides(update)
    update.add_argument("url", nargs="?", help="Data url to update (default: update everything in dim.json)")
    update.add_argument(
        "-p",
        "--preprocess",
        action="append",
        default=None,
        metavar="DIRECTIVE",
        help="Preprocess directive applied after download (default: the manifest's directives)",
    )
    update.add_argument("--name", help="Display name for the url")
    update.add_argument("--json", action="store_true", help="Output JSON")

    uninstall = sub.add_parser("uninstall", aliases=["remove", "rm"], help="Remove a url from dim.json, dim-lock.json and disk")
    _add_runtime_overrides(uninstall)
    uninstall.add_argument("url", help="Data url to remove")
    uninstall.add_argument("--json", action="store_true", help="Output JSON")

    lst = sub.add_parser("list", aliases=["ls"], help="List installed contents")
    _add_runtime_overrides(lst)
    lst.add_argument("--json", action="store_true", help="Output JSON")

    verify = sub.add_parser("verify", help="Check dim.json, dim-lock.json and the data files against each other")
    _add_runtime_overrides(verify)
    verify.add_argument("--json", action="store_true", help="Output JSON")

    cfg = sub.add_parser("config", help="Manage user config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--data-dir")
    cfg_set.add_argument("--manifest", dest="manifest_path")
    cfg_set.add_argument("--lock", dest="lock_path")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--max-workers", type=int)

    return p


def _runtime_config(args: argparse.Namespace) -> Config:
    overrides = {
        "data_dir": getattr(args, "data_dir", None),
        "manifest_path": getattr(args, "manifest_path", None),
        "lock_path": getattr(args, "lock_path", None),
        "timeout_s": getattr(args, "timeout_s", None),
        "max_workers": getattr(args, "max_workers", None),
    }
    return merge_overrides(load_config(), overrides)


def _bootstrap(cfg: Config, *, force: bool = False):
    return bootstrap(
        data_dir=Path(cfg.data_dir).expanduser(),
        manifest_path=Path(cfg.manifest_path).expanduser(),
        lock_path=Path(cfg.lock_path).expanduser(),
        force=force,
    )


def _make_manager(cfg: Config, downloader: HttpDownloader | None = None) -> LocalContentManager:
    return LocalContentManager(
        manifest=JsonManifestStore(Path(cfg.manifest_path).expanduser()),
        lock=JsonLockStore(Path(cfg.lock_path).expanduser()),
        fetcher=downloader,
        max_workers=cfg.max_workers,
    )


def _make_downloader(cfg: Config) -> HttpDownloader:
    return HttpDownloader(data_dir=Path(cfg.data_dir).expanduser(), timeout_s=cfg.timeout_s, user_agent=cfg.user_agent)


def cmd_init(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    result = _bootstrap(cfg, force=args.force)
    for path in result.created:
        print(f"created: {path}")
    print("Initialized the project for dim.")
    return EXIT_OK


def _report_url_result(result: UrlInstallResult, *, as_json: bool) -> int:
    if as_json:
        payload = {
            "url": result.url,
            "status": result.status,
            "manifest_added": result.manifest_added,
            "lock_content": _lock_content_payload(result.lock_content) if result.lock_content else None,
            "notes": list(result.notes),
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return EXIT_OK

    if result.status == "already_installed":
        print(f"{result.url} has already been installed.")
        if result.manifest_added:
            print("Added it to the manifest.")
        return EXIT_OK
    for note in result.notes:
        print(note)
    print(f"{result.status.capitalize()} {result.url}")
    if result.lock_content is not None:
        print(f"File path: {result.lock_content.path}")
    return EXIT_OK


def _report_batch_result(result: BatchResult, *, as_json: bool, verb: str) -> int:
    rc = EXIT_PARTIAL_FAILURE if result.failures else EXIT_OK
    if as_json:
        payload = {
            "status": result.status,
            "installed": [_lock_content_payload(c) for c in result.installed],
            "failures": [{"url": f.url, "reason": f.reason} for f in result.failures],
            "notes": list(result.notes),
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return rc

    if result.status == "no_contents":
        print("No contents.\nRun 'dim install <data url>' first.")
        return EXIT_OK
    if result.status == "nothing_to_do":
        print("All contents have already been installed.")
        return EXIT_OK

    for item in result.installed:
        print(f"{verb} {item.url}")
        print(f"File path: {item.path}")
    for note in result.notes:
        print(note)
    for failure in result.failures:
        print(f"error: {failure.reason}", file=sys.stderr)
    _print_table(
        [
            ["RESULT", "COUNT"],
            [verb.lower(), str(len(result.installed))],
            ["failed", str(len(result.failures))],
        ]
    )
    return rc


def _run_install(args: argparse.Namespace, *, update: bool) -> int:
    cfg = _runtime_config(args)
    _bootstrap(cfg)
    with _make_downloader(cfg) as downloader:
        manager = _make_manager(cfg, downloader)
        if args.url is not None:
            result = manager.install_url(args.url, args.preprocess, name=args.name, update=update)
            return _report_url_result(result, as_json=args.json)
        if args.preprocess or args.name:
            raise DimError("--preprocess and --name need a url.")
        batch = manager.install_manifest(update=update)
        return _report_batch_result(batch, as_json=args.json, verb="Updated" if update else "Installed")


def cmd_install(args: argparse.Namespace) -> int:
    return _run_install(args, update=False)


def cmd_update(args: argparse.Namespace) -> int:
    return _run_install(args, update=True)


def cmd_uninstall(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    result = _make_manager(cfg).uninstall(args.url)

    if not (result.removed_from_manifest or result.removed_from_lock):
        raise NotFoundError(f"{result.url} was not found in {cfg.manifest_path} or {cfg.lock_path}.")
    if args.json:
        payload = {
            "url": result.url,
            "removed_from_manifest": result.removed_from_manifest,
            "removed_from_lock": result.removed_from_lock,
            "removed_file": str(result.removed_file) if result.removed_file else None,
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return EXIT_OK

    if result.removed_from_manifest:
        print(f"Removed {result.url} from {cfg.manifest_path}.")
    else:
        print(f"error: {result.url} was not found in {cfg.manifest_path}.", file=sys.stderr)
    if result.removed_from_lock:
        print(f"Removed {result.url} from {cfg.lock_path}.")
    else:
        print(f"error: {result.url} was not found in {cfg.lock_path}.", file=sys.stderr)
    if result.removed_file is not None:
        print(f"Removed file '{result.removed_file}'.")
    return EXIT_OK


def cmd_list(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    listing = _make_manager(cfg).list_installed()

    for warning in listing.warnings:
        _warn(str(warning))

    if args.json:
        print(json.dumps([_lock_content_payload(c) for c in listing.contents], indent=2, sort_keys=True))
        return EXIT_OK

    for item in listing.contents:
        print(item.name)
        print(f"  - URL:       {item.url}")
        print(f"  - File path: {item.path}")
        print(f"  - Updated:   {format_timestamp(item.last_updated) if item.last_updated else 'unknown'}")
        print()
    return EXIT_OK


def cmd_verify(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    report = _make_manager(cfg).check_consistency()

    rc = EXIT_OK if report.ok else EXIT_STALE_FILES
    if args.json:
        payload = {
            "ok": report.ok,
            "not_installed": list(report.not_installed),
            "unmanaged": list(report.unmanaged),
            "missing_files": [{"url": w.url, "path": w.path} for w in report.missing_files],
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return rc

    _print_table(
        [
            ["CHECK", "COUNT"],
            ["not_installed", str(len(report.not_installed))],
            ["unmanaged", str(len(report.unmanaged))],
            ["missing_files", str(len(report.missing_files))],
        ]
    )
    for url in report.not_installed:
        print(f"not installed: {url}")
    for url in report.unmanaged:
        print(f"not in manifest: {url}")
    for warning in report.missing_files:
        _warn(str(warning))
    return rc


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return EXIT_OK

    if args.subcmd == "show":
        print(json.dumps(asdict(load_config()), indent=2, sort_keys=True))
        return EXIT_OK

    if args.subcmd == "set":
        # Only explicit flags are layered on the saved file; DIM_* variables stay out of it.
        cfg = load_config()
        max_workers = args.max_workers if args.max_workers is not None else cfg.max_workers
        if max_workers < 1:
            raise DimError("--max-workers must be at least 1.")
        new_cfg = Config(
            data_dir=args.data_dir if args.data_dir is not None else cfg.data_dir,
            manifest_path=args.manifest_path if args.manifest_path is not None else cfg.manifest_path,
            lock_path=args.lock_path if args.lock_path is not None else cfg.lock_path,
            timeout_s=args.timeout_s if args.timeout_s is not None else cfg.timeout_s,
            max_workers=max_workers,
            user_agent=cfg.user_agent,
        )
        path = save_config(new_cfg)
        print(f"Saved config to {path}")
        return EXIT_OK

    raise AssertionError("unreachable")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(bool(getattr(args, "verbose", False)))
    try:
        if args.cmd == "init":
            return cmd_init(args)
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd in ("update", "up"):
            return cmd_update(args)
        if args.cmd in ("uninstall", "remove", "rm"):
            return cmd_uninstall(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        if args.cmd == "verify":
            return cmd_verify(args)
        if args.cmd == "config":
            return cmd_config(args)
        raise AssertionError("unreachable")
    except DownloadError as e:
        print(f"error: Failed to {'update' if args.cmd in ('update', 'up') else 'install'}. {e}", file=sys.stderr)
        return EXIT_DOWNLOAD_FAILED
    except NotFoundError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_NOT_FOUND
    except DimError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
