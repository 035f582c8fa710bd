from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .app import StudioApp
from .backend import LocalBackend, ensure_default_repository
from .catalog import SortKey
from .config import StudioSettings, cli_overrides_from_args
from .errors import RepositoryNotFound, StudioError
from .fingerprint_queue import FingerprintQueue
from .logging import configure
from .models import Repository
from .processor import ProcessorState, ProgressState
from .watcher import FolderWatcher


EXIT_OK = 0
EXIT_ERROR = 1
EXIT_WITH_FILE_ERRORS = 2
EXIT_CANCELLED = 130

SELECTED_REPOSITORY_KEY = "selected_repository"

# tag command option -> editable field
TAG_OPTIONS = (
    ("--title", "meta_title"),
    ("--album", "meta_album"),
    ("--album-artist", "meta_album_artist"),
    ("--genre", "meta_genre"),
    ("--track", "meta_track_number"),
    ("--comment", "meta_comment"),
    ("--tags", "tags"),
)


def open_backend(cfg: StudioSettings) -> LocalBackend:
    return LocalBackend.open(cfg.db_file, audio_extensions=cfg.audio_extensions)


async def resolve_repository(backend: LocalBackend, cfg: StudioSettings) -> Repository:
    """The configured repository, else the last one used, else the first one.

    The default repository is created when none exist. An explicitly configured
    repository is remembered for later runs.
    """
    repos = await ensure_default_repository(backend)
    if cfg.selected_repository:
        for r in repos:
            if cfg.selected_repository in (r.id, r.name):
                await backend.set_setting(SELECTED_REPOSITORY_KEY, r.id)
                return r
        raise RepositoryNotFound(cfg.selected_repository)
    remembered = await backend.get_setting(SELECTED_REPOSITORY_KEY)
    for r in repos:
        if r.id == remembered:
            return r
    return repos[0]


def _install_sigint(handler: Callable[[], None]) -> bool:
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, handler)
    except (NotImplementedError, RuntimeError):
        return False  # Windows: KeyboardInterrupt reaches main() instead
    return True


# -- commands ------------------------------------------------------------------


async def cmd_repos(cfg: StudioSettings) -> int:
    backend = open_backend(cfg)
    repos = await ensure_default_repository(backend)
    for r in repos:
        marker = "*" if cfg.selected_repository in (r.id, r.name) else " "
        desc = f"  {r.description}" if r.description else ""
        print(f"{marker} {r.id}  {r.name}{desc}")
    return EXIT_OK


async def cmd_create_repo(cfg: StudioSettings, name: str, description: str) -> int:
    backend = open_backend(cfg)
    repo = await backend.create_repository(name, description)
    print(repo.id)
    return EXIT_OK


async def cmd_rename_repo(cfg: StudioSettings, repository_id: str, name: str, description: Optional[str]) -> int:
    backend = open_backend(cfg)
    current = await backend.get_repository(repository_id)
    await backend.update_repository(repository_id, name, current.description if description is None else description)
    return EXIT_OK


async def cmd_delete_repo(cfg: StudioSettings, repository_id: str) -> int:
    backend = open_backend(cfg)
    await backend.delete_repository(repository_id)
    if await backend.get_setting(SELECTED_REPOSITORY_KEY) == repository_id:
        await backend.set_setting(SELECTED_REPOSITORY_KEY, None)
    print(f"Deleted repository {repository_id}")
    return EXIT_OK


async def cmd_dedupe(cfg: StudioSettings) -> int:
    backend = open_backend(cfg)
    repo = await resolve_repository(backend, cfg)
    removed = await backend.remove_duplicates(repo.id)
    print(f"Removed {removed} duplicate record(s) from {repo.name}")
    return EXIT_OK


async def cmd_add(cfg: StudioSettings, paths: List[str]) -> int:
    backend = open_backend(cfg)
    repo = await resolve_repository(backend, cfg)
    errors = 0
    added = 0
    for raw in paths:
        p = Path(raw).expanduser()
        try:
            if p.is_dir():
                added += len(await backend.add_folder(repo.id, str(p)))
            else:
                await backend.add_file(repo.id, str(p))
                added += 1
        except StudioError as e:
            logger.error(f"Failed to add {p}: {e}")
            errors += 1
    print(f"Added {added} file(s) to {repo.name}")
    return EXIT_OK if errors == 0 else EXIT_WITH_FILE_ERRORS


async def cmd_tag(cfg: StudioSettings, file_ids: List[str], changes: Dict[str, str]) -> int:
    if not changes:
        logger.error("Nothing to change; pass at least one tag option")
        return EXIT_ERROR
    backend = open_backend(cfg)
    repo = await resolve_repository(backend, cfg)
    updated = await backend.update_metadata(repo.id, file_ids, changes)
    print(f"Updated {len(updated)} file(s)")
    return EXIT_OK


async def cmd_list(cfg: StudioSettings, sort: str, descending: bool, query: str, as_json: bool) -> int:
    backend = open_backend(cfg)
    repo = await resolve_repository(backend, cfg)
    # read-only: a private queue keeps persisted work from resuming here
    async with StudioApp(backend, cfg, queue=FingerprintQueue()) as app:
        await app.activate(repo.id)
        app.catalog.set_view(query=query or "", sort_key=SortKey(sort), descending=descending)
        for f in app.catalog.visible_files():
            if as_json:
                print(json.dumps(f.to_dict(), ensure_ascii=False))
                continue
            status = "ok " if f.accessible else "n/a"
            fp = f.audio_fingerprint or "-"
            print(f"{status} {f.id}  {f.encoding:<6} {fp:<20.20} {f.name}")
    return EXIT_OK


def _print_progress(app: StudioApp) -> Callable[[ProgressState], None]:
    def show(p: ProgressState) -> None:
        state = app.processor.current_state
        if state is ProcessorState.RUNNING and p.total:
            print(f"[{p.completed}/{p.total}] {p.message(state)}", flush=True)

    return show


async def cmd_fingerprint(cfg: StudioSettings) -> int:
    backend = open_backend(cfg)
    repo = await resolve_repository(backend, cfg)
    async with StudioApp(backend, cfg) as app:
        cancelled = False

        def on_sigint() -> None:
            nonlocal cancelled
            cancelled = True
            print("Cancelling after the current file...", file=sys.stderr, flush=True)
            app.cancel()

        _install_sigint(on_sigint)
        app.processor.progress.subscribe(_print_progress(app))
        await app.activate(repo.id)
        queued = app.process_repository()
        if queued:
            print(f"Fingerprinting {queued} File(s)...")
        await app.wait_idle()
        failed = app.processor.failed_ids
        if cancelled:
            print("Processing cancelled. Fingerprint queue cleared.")
            return EXIT_CANCELLED
        if failed:
            print(f"{len(failed)} file(s) failed to fingerprint")
            return EXIT_WITH_FILE_ERRORS
        print("Done!")
    return EXIT_OK


async def cmd_bundle(cfg: StudioSettings, out: str, ids: Optional[List[str]]) -> int:
    backend = open_backend(cfg)
    repo = await resolve_repository(backend, cfg)
    async with StudioApp(backend, cfg, queue=FingerprintQueue()) as app:
        await app.activate(repo.id)
        app.catalog.set_selected_ids(ids if ids else [f.id for f in app.catalog.files()])
        missing = set(ids or []) - {f.id for f in app.catalog.selected_files()}
        if missing:
            logger.warning(f"Ignoring unknown file id(s): {', '.join(sorted(missing))}")
        data = await app.bundle_selected()
    dest = Path(out).expanduser()
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(data)
    print(f"Bundle written to: {dest}")
    return EXIT_OK


async def cmd_watch(cfg: StudioSettings) -> int:
    backend = open_backend(cfg)
    repo = await resolve_repository(backend, cfg)
    stop = asyncio.Event()
    async with StudioApp(backend, cfg) as app:
        await app.activate(repo.id)
        watcher = FolderWatcher(backend)
        if not watcher.watch_all(await backend.tracked_folders(repo.id)):
            logger.warning(f"Repository {repo.name} has no tracked folders; add one with `add <folder>`")
            return EXIT_ERROR
        app.catalog.all_files.subscribe(lambda files: print(f"{len(files)} file(s) in {repo.name}", flush=True))
        _install_sigint(stop.set)
        watcher.start()
        try:
            await stop.wait()
        finally:
            watcher.stop()
    return EXIT_OK


# -- entry point ---------------------------------------------------------------


def _tag_changes(args: argparse.Namespace) -> Dict[str, str]:
    return {field: getattr(args, field) for _, field in TAG_OPTIONS if getattr(args, field) is not None}


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="repo-studio")
    p.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ~/.config/repo-studio/config.toml)",
    )
    p.add_argument(
        "--write-config",
        action="store_true",
        help="Write current effective settings to the config file and exit",
    )
    p.add_argument("--log-level", default=None, help="Console log level (DEBUG, INFO, WARNING, ERROR)")
    p.add_argument("--log-json", dest="log_json", default=None, help="Path to write JSON lines log (structured events)")
    p.add_argument("--db", dest="db_path", default=None, help="Catalog database path")
    p.add_argument("--queue-file", dest="queue_path", default=None, help="Persisted fingerprint queue path")
    p.add_argument(
        "--repo",
        dest="selected_repository",
        default=None,
        help="Repository id or name (default: the last one used)",
    )
    sub = p.add_subparsers(dest="cmd")

    sub.add_parser("repos", help="List repositories")

    p_create = sub.add_parser("create-repo", help="Create a repository")
    p_create.add_argument("name")
    p_create.add_argument("--description", default="")

    p_rename = sub.add_parser("rename-repo", help="Rename a repository")
    p_rename.add_argument("repository_id")
    p_rename.add_argument("name")
    p_rename.add_argument("--description", default=None)

    p_delete = sub.add_parser("delete-repo", help="Delete a repository and its file records")
    p_delete.add_argument("repository_id")

    sub.add_parser("dedupe", help="Drop duplicate file records, keeping the most recently modified")

    p_add = sub.add_parser("add", help="Add audio files or folders (folders are tracked)")
    p_add.add_argument("paths", nargs="+")

    p_tag = sub.add_parser("tag", help="Edit tags of files; an empty value clears a tag")
    p_tag.add_argument("file_ids", nargs="+")
    for flag, field in TAG_OPTIONS:
        p_tag.add_argument(flag, dest=field, default=None)

    p_list = sub.add_parser("list", help="List files of the repository")
    p_list.add_argument("--sort", choices=[k.value for k in SortKey], default=SortKey.ALPHABETICAL.value)
    p_list.add_argument("--desc", action="store_true", help="Sort descending")
    p_list.add_argument("--query", default="", help="Case-insensitive name/tag filter")
    p_list.add_argument("--json", dest="as_json", action="store_true", help="Print JSON lines")

    p_fp = sub.add_parser("fingerprint", help="Fingerprint every file lacking one (Ctrl-C cancels)")
    p_fp.add_argument(
        "--timeout",
        dest="fingerprint_timeout",
        type=float,
        default=None,
        help="Per-file timeout in seconds",
    )

    p_bundle = sub.add_parser("bundle", help="Zip files of the repository")
    p_bundle.add_argument("--out", required=True, help="Destination .zip path")
    p_bundle.add_argument("--ids", nargs="*", default=None, help="File ids to include (default: all)")

    sub.add_parser("watch", help="Watch tracked folders and keep the catalog current")
    return p


def main(argv: list[str] | None = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    overrides = cli_overrides_from_args(args)
    config_path = Path(args.config_path).expanduser() if args.config_path else None
    cfg = StudioSettings.load(config_path=config_path, overrides=overrides)

    if args.write_config:
        written = cfg.write(config_path)
        print(f"Config written to: {written}")
        return EXIT_OK
    if not args.cmd:
        p.error("a command is required")

    configure(cfg.log_level, cfg.log_json)
    commands: dict[str, Callable[[], Any]] = {
        "repos": lambda: cmd_repos(cfg),
        "create-repo": lambda: cmd_create_repo(cfg, args.name, args.description),
        "rename-repo": lambda: cmd_rename_repo(cfg, args.repository_id, args.name, args.description),
        "delete-repo": lambda: cmd_delete_repo(cfg, args.repository_id),
        "dedupe": lambda: cmd_dedupe(cfg),
        "add": lambda: cmd_add(cfg, args.paths),
        "tag": lambda: cmd_tag(cfg, args.file_ids, _tag_changes(args)),
        "list": lambda: cmd_list(cfg, args.sort, args.desc, args.query, args.as_json),
        "fingerprint": lambda: cmd_fingerprint(cfg),
        "bundle": lambda: cmd_bundle(cfg, args.out, args.ids),
        "watch": lambda: cmd_watch(cfg),
    }
    try:
        return asyncio.run(commands[args.cmd]())
    except StudioError as e:
        logger.error(str(e))
        return EXIT_ERROR
    except KeyboardInterrupt:
        return EXIT_CANCELLED
