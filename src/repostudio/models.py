"""Catalog records exchanged with the backend.

`FileRecord` is the client's cached copy of one tracked audio file. The
authoritative copy lives in the backend; records here are immutable and are
replaced wholesale on reload.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, fields, asdict, replace
from typing import Any, Dict, Optional


_INTERVALS_RE = re.compile(r"intervals:\s*(\d+)")


def parse_interval(stamp: Optional[str]) -> int:
    """Return the integer embedded after ``intervals:`` in a backend timestamp.

    Unparseable or missing stamps yield 0 so they sort first.
    """
    if not stamp:
        return 0
    m = _INTERVALS_RE.search(stamp)
    return int(m.group(1)) if m else 0


def format_interval(mtime_ns: int) -> str:
    """Render a filesystem mtime the way the backend reports timestamps.

    One interval is 100ns, matching the Windows FILETIME resolution.
    """
    return f"SystemTime {{ intervals: {mtime_ns // 100} }}"


@dataclass(frozen=True)
class Repository:
    id: str
    name: str
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Repository":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            description=str(data.get("description", "") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class FileRecord:
    """One audio file tracked by a repository."""

    id: str
    name: str
    path: str
    accessible: bool = True
    audio_fingerprint: Optional[str] = None  # None = needs processing
    encoding: str = ""
    date_created: str = ""
    date_modified: str = ""
    tags: Optional[str] = None
    related_files: Optional[str] = None

    # Editable metadata
    meta_title: Optional[str] = None
    meta_comment: Optional[str] = None
    meta_album_artist: Optional[str] = None
    meta_album: Optional[str] = None
    meta_track_number: Optional[str] = None
    meta_genre: Optional[str] = None

    # Audio facts
    meta_bit_rate: Optional[str] = None
    meta_channels: Optional[str] = None
    meta_sample_rate: Optional[str] = None
    meta_size_on_disk: Optional[str] = None

    @property
    def needs_fingerprint(self) -> bool:
        return not self.audio_fingerprint

    def with_fingerprint(self, token: str) -> "FileRecord":
        return replace(self, audio_fingerprint=token)

    def replace(self, **changes: Any) -> "FileRecord":
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileRecord":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["id"] = str(values["id"])
        values["accessible"] = bool(values.get("accessible", True))
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


__all__ = ["FileRecord", "Repository", "parse_interval", "format_interval"]
