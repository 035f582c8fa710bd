"""Audio file discovery, metadata reading and content fingerprints."""
from __future__ import annotations

import hashlib
import os
import uuid
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from loguru import logger

from .models import FileRecord, format_interval

DEFAULT_EXTENSIONS = ("mp3", "wav", "flac", "ogg", "aac", "m4a", "opus")

_CHUNK = 1024 * 1024


def is_audio(path: Path, extensions: Iterable[str] = DEFAULT_EXTENSIONS) -> bool:
    return path.suffix.lower().lstrip(".") in {e.lower().lstrip(".") for e in extensions}


def iter_audio_files(root: Path, extensions: Iterable[str] = DEFAULT_EXTENSIONS) -> Iterator[Path]:
    exts = {e.lower().lstrip(".") for e in extensions}
    for dirpath, _, filenames in os.walk(root):
        for name in sorted(filenames):
            p = Path(dirpath) / name
            if p.suffix.lower().lstrip(".") in exts:
                yield p


def _first(tags, key: str) -> Optional[str]:
    try:
        values = tags.get(key) if tags is not None else None
    except (KeyError, ValueError):
        return None
    if not values:
        return None
    if isinstance(values, (list, tuple)):
        return str(values[0])
    return str(values)


# FileRecord field -> mutagen easy tag key
EDITABLE_TAGS = {
    "meta_title": "title",
    "meta_album": "album",
    "meta_album_artist": "albumartist",
    "meta_genre": "genre",
    "meta_track_number": "tracknumber",
    "meta_comment": "comment",
}


def read_audio_metadata(path: Path) -> Dict[str, Optional[str]]:
    """Read encoding, stream facts and common tags with mutagen.

    Returns an empty mapping when mutagen cannot identify the file.
    """
    try:
        from mutagen import File as MutagenFile
        audio = MutagenFile(str(path), easy=True)
    except Exception as e:
        logger.debug(f"mutagen could not read {path}: {e}")
        return {}
    if audio is None:
        return {}
    info = getattr(audio, "info", None)
    tags = getattr(audio, "tags", None)
    out: Dict[str, Optional[str]] = {
        "encoding": type(audio).__name__.upper(),
        "meta_bit_rate": str(getattr(info, "bitrate", "") or "") or None,
        "meta_channels": str(getattr(info, "channels", "") or "") or None,
        "meta_sample_rate": str(getattr(info, "sample_rate", "") or "") or None,
    }
    out.update({field: _first(tags, key) for field, key in EDITABLE_TAGS.items()})
    return out


def write_audio_metadata(path: Path, record: FileRecord) -> bool:
    """Write the editable tags of `record` into the audio file at `path`.

    Empty values remove the tag; keys the container cannot hold are skipped.
    Returns False when mutagen cannot parse the file or only offers raw
    ID3 frames (WAV, AIFF), in which case the file is left untouched.
    Errors while saving propagate.
    """
    from mutagen import File as MutagenFile, MutagenError
    from mutagen.id3 import ID3

    try:
        audio = MutagenFile(str(path), easy=True)
    except MutagenError as e:
        logger.debug(f"Not writing tags to {path}: {e}")
        return False
    if audio is None:
        logger.debug(f"Not writing tags to {path}: unknown format")
        return False
    if audio.tags is None:
        audio.add_tags()
    if isinstance(audio.tags, ID3):
        # raw frames only (WAV, AIFF); nothing is saved
        logger.debug(f"Not writing tags to {path}: no easy tag support")
        return False
    for field, key in EDITABLE_TAGS.items():
        value = getattr(record, field)
        try:
            if value:
                audio.tags[key] = [value]
            elif key in audio.tags:
                del audio.tags[key]
        except (KeyError, ValueError) as e:
            logger.debug(f"{path.name}: tag {key} not supported ({e})")
    audio.save()
    return True


def read_file_record(path: Path, file_id: Optional[str] = None) -> FileRecord:
    """Build a FileRecord for `path` from the filesystem and embedded tags."""
    path = Path(path)
    st = path.stat()
    meta = read_audio_metadata(path)
    encoding = meta.pop("encoding", None) or path.suffix.lstrip(".").upper()
    created_ns = getattr(st, "st_birthtime", None)
    created_ns = int(created_ns * 1e9) if created_ns else st.st_ctime_ns
    return FileRecord(
        id=file_id or str(uuid.uuid4()),
        name=path.name,
        path=str(path),
        accessible=True,
        audio_fingerprint=None,
        encoding=encoding,
        date_created=format_interval(created_ns),
        date_modified=format_interval(st.st_mtime_ns),
        meta_size_on_disk=str(st.st_size),
        **meta,
    )


def read_flac_streaminfo_md5(path: Path) -> Optional[str]:
    """Read the STREAMINFO MD5 from a FLAC file without hashing the file.

    Returns a 32-hex string or None if not found (or all zeros, i.e. unset).
    """
    with path.open("rb") as f:
        sig = f.read(4)
        if sig != b"fLaC":
            return None
        last = False
        while not last:
            header = f.read(4)
            if len(header) < 4:
                return None
            last = bool(header[0] & 0x80)
            block_type = header[0] & 0x7F
            length = int.from_bytes(header[1:4], "big")
            data = f.read(length)
            if len(data) < length:
                return None
            if block_type == 0:  # STREAMINFO
                if length < 34:
                    return None
                md5 = data[-16:]
                if not any(md5):
                    return None
                return md5.hex()
        return None


def compute_fingerprint(path: Path) -> str:
    """Content fingerprint for duplicate detection.

    FLAC files use the decoder-verified STREAMINFO MD5 of the audio samples so
    retagging does not change the value; everything else hashes the file bytes.
    """
    path = Path(path)
    if path.suffix.lower() == ".flac":
        md5 = read_flac_streaminfo_md5(path)
        if md5:
            return f"flac-md5:{md5}"
    h = hashlib.sha1()
    with path.open("rb") as f:
        while True:
            chunk = f.read(_CHUNK)
            if not chunk:
                break
            h.update(chunk)
    return f"sha1:{h.hexdigest()}"


def scan_audio_files(root: Path, extensions: Iterable[str] = DEFAULT_EXTENSIONS) -> List[FileRecord]:
    """Read a FileRecord for every audio file below `root`; unreadable files are skipped."""
    results: List[FileRecord] = []
    for p in iter_audio_files(Path(root).resolve(), extensions):
        try:
            results.append(read_file_record(p))
        except OSError as e:
            logger.warning(f"Skipping unreadable file {p}: {e}")
    return results


__all__ = [
    "DEFAULT_EXTENSIONS",
    "is_audio",
    "iter_audio_files",
    "EDITABLE_TAGS",
    "read_audio_metadata",
    "write_audio_metadata",
    "read_file_record",
    "read_flac_streaminfo_md5",
    "compute_fingerprint",
    "scan_audio_files",
]
