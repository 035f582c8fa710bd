from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional

import tomlkit
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_CONFIG_PATH = Path("~/.config/repo-studio/config.toml").expanduser()
ENV_PREFIX = "REPOSTUDIO_"


class StudioSettings(BaseSettings):
    """Global settings for repo-studio.

    Priority (lowest -> highest):
    - Class defaults below
    - TOML file at `config_path` (default: ~/.config/repo-studio/config.toml)
    - Environment variables with prefix REPOSTUDIO_
    - CLI overrides passed to `load(overrides=...)`
    """

    # Logging
    log_level: str = Field(default="INFO", description="Console log level")
    log_json: Optional[str] = Field(default=None, description="Path for structured JSON log file")

    # General
    auto_fingerprint: bool = Field(
        default=True, description="Queue fingerprinting for newly selected files lacking one"
    )
    selected_repository: Optional[str] = Field(
        default=None, description="Repository activated on startup"
    )

    # Storage
    db_path: str = Field(
        default="~/.local/share/repo-studio/studio.db", description="Path to the catalog DB file"
    )
    queue_path: str = Field(
        default="~/.local/share/repo-studio/fingerprint-queue.json",
        description="Path of the persisted fingerprint queue",
    )

    # Queue processing
    done_hold_seconds: float = Field(
        default=2.0, description="How long the 'Done' state is held after a run exhausts the queue"
    )
    cancel_reset_seconds: float = Field(
        default=0.1, description="Delay before the cancellation flag resets after a cancel"
    )
    reload_debounce_seconds: float = Field(
        default=0.05, description="Window in which file-system events coalesce into one reload"
    )
    fingerprint_timeout: Optional[float] = Field(
        default=None, description="Per-file fingerprint timeout in seconds; None waits indefinitely"
    )

    # Scanning
    audio_extensions: List[str] = Field(
        default_factory=lambda: ["mp3", "wav", "flac", "ogg", "aac", "m4a", "opus"],
        description="File extensions treated as audio when adding folders",
    )

    # Config source/path (not persisted as part of effective config when writing)
    config_path: Path = Field(default=DEFAULT_CONFIG_PATH, exclude=True)

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    @field_validator("done_hold_seconds", "cancel_reset_seconds", "reload_debounce_seconds")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("delays must be >= 0")
        return v

    @field_validator("audio_extensions")
    @classmethod
    def _normalize_extensions(cls, v: List[str]) -> List[str]:
        return [e.lower().lstrip(".") for e in v if e]

    @property
    def db_file(self) -> Path:
        return Path(self.db_path).expanduser()

    @property
    def queue_file(self) -> Path:
        return Path(self.queue_path).expanduser()

    @classmethod
    def load(
        cls,
        *,
        config_path: Optional[Path] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> "StudioSettings":
        """Resolve settings: defaults < TOML file < REPOSTUDIO_* env < CLI overrides.

        None values in `overrides` mean "not given on the command line".
        """
        path = Path(config_path or DEFAULT_CONFIG_PATH).expanduser()
        values = read_toml_file(path)
        from_env = cls()
        values.update({k: getattr(from_env, k) for k in from_env.model_fields_set})
        values.update({k: v for k, v in (overrides or {}).items() if v is not None})
        settings = cls(**values)
        settings.config_path = path
        return settings

    def to_toml(self) -> str:
        """Effective settings as a commented TOML document; unset optionals are omitted."""
        doc = tomlkit.document()
        doc.add(tomlkit.comment("repo-studio settings"))
        for name, field in type(self).model_fields.items():
            if field.exclude:
                continue
            value = getattr(self, name)
            if value is None:
                continue
            if field.description:
                doc.add(tomlkit.comment(field.description))
            doc.add(name, value)
        return tomlkit.dumps(doc)

    def write(self, path: Optional[Path] = None) -> Path:
        """Write `to_toml()` to `path` (default: the loaded config path); returns the path."""
        target = Path(path or self.config_path).expanduser()
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.to_toml(), encoding="utf-8")
        return target


def read_toml_file(path: Path) -> Dict[str, Any]:
    """Top-level table of the TOML file at `path`, or {} when it does not exist."""
    if not path.exists():
        return {}
    with path.open("rb") as f:
        return dict(tomllib.load(f))


def cli_overrides_from_args(args: Any) -> Dict[str, Any]:
    """Extract known settings keys from argparse Namespace into an overrides dict.

    Unknown keys are ignored; None values are preserved for filtering by `load()`.
    """
    keys = {
        "log_level",
        "log_json",
        "auto_fingerprint",
        "selected_repository",
        "db_path",
        "queue_path",
        "done_hold_seconds",
        "cancel_reset_seconds",
        "reload_debounce_seconds",
        "fingerprint_timeout",
    }
    result: Dict[str, Any] = {}
    for k in keys:
        if hasattr(args, k):
            result[k] = getattr(args, k)
    return result
