"""Zip bundles of selected files."""
from __future__ import annotations

import io
import zipfile
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set

from loguru import logger

from .errors import BundleError


def _unique_arcname(name: str, taken: Set[str]) -> str:
    """Return `name`, or `stem (n)suffix` when a case-insensitive clash exists."""
    if name.casefold() not in taken:
        taken.add(name.casefold())
        return name
    p = Path(name)
    n = 1
    while True:
        candidate = f"{p.stem} ({n}){p.suffix}"
        if candidate.casefold() not in taken:
            taken.add(candidate.casefold())
            return candidate
        n += 1


def bundle_files(
    paths: Iterable[str],
    *,
    progress_callback: Optional[Callable[[int], None]] = None,
) -> bytes:
    """Pack `paths` into an in-memory zip archive and return its bytes.

    Files are stored flat under their base names. `progress_callback`
    receives a 0..100 percentage after each file.
    """
    files: List[Path] = [Path(p) for p in paths]
    if not files:
        raise BundleError("Nothing to bundle")
    missing = [str(p) for p in files if not p.is_file()]
    if missing:
        raise BundleError(f"Cannot bundle missing file(s): {', '.join(missing)}")

    buf = io.BytesIO()
    taken: Set[str] = set()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for i, p in enumerate(files, start=1):
            zf.write(p, arcname=_unique_arcname(p.name, taken))
            if progress_callback:
                progress_callback(int(i * 100 / len(files)))
    logger.info(f"Bundled {len(files)} file(s)")
    return buf.getvalue()


def write_bundle(paths: Iterable[str], dest: Path) -> Path:
    data = bundle_files(paths)
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(data)
    return dest


__all__ = ["bundle_files", "write_bundle"]
