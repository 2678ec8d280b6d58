"""Read-only settings — TOML file plus environment overrides.

Reads from:
    PRFLEET_CONFIG            — TOML file path (default: $XDG_CONFIG_HOME/prfleet.toml)
    PRFLEET_ROOT_DIR          — paths.root_dir
    PRFLEET_TICKET_PATTERN    — tickets.pattern ("" disables extraction)
    PRFLEET_LINEAR_ORG        — tickets.linear_org
    PRFLEET_SCAN_CONCURRENCY  — scan.max_concurrency
    GITHUB_TOKEN              — github.token when the file has none
"""

from __future__ import annotations

import os
import re
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from prfleet.exceptions import ConfigError


class PathsConfig(BaseModel):
    root_dir: str = "~/Programming/repos"
    frontend_glob: str = "frontend/*"
    backend_glob: str = "backend/*"

    @property
    def root(self) -> Path:
        return Path(self.root_dir).expanduser()


class TicketsConfig(BaseModel):
    pattern: str = "ATT-[0-9]+"
    linear_org: str = "attuned"

    @field_validator("pattern")
    @classmethod
    def _pattern_compiles(cls, value: str) -> str:
        compile_ticket_pattern(value)
        return value

    @property
    def regex(self) -> re.Pattern[str] | None:
        return compile_ticket_pattern(self.pattern)


class ScanConfig(BaseModel):
    max_concurrency: int | None = Field(default=None, ge=1)
    surface_errors: bool = False
    cancel_grace_seconds: float = 5.0


class GitHubConfig(BaseModel):
    token: str | None = None
    api_url: str = "https://api.github.com"


class Settings(BaseModel):
    paths: PathsConfig = Field(default_factory=PathsConfig)
    tickets: TicketsConfig = Field(default_factory=TicketsConfig)
    scan: ScanConfig = Field(default_factory=ScanConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)


def compile_ticket_pattern(pattern: str) -> re.Pattern[str] | None:
    """Compile *pattern* case-insensitively with the ticket in group 1.

    An empty pattern disables ticket extraction and yields ``None``.
    """
    if not pattern:
        return None
    try:
        return re.compile(f"(?i)({pattern})")
    except re.error as exc:
        raise ValueError(f"invalid tickets.pattern {pattern!r}: {exc}") from exc


def default_config_path() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    return Path(base) / "prfleet.toml"


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings; a missing file means defaults.

    Raises :class:`ConfigError` on unreadable TOML or invalid values.
    """
    config_path = Path(path or os.environ.get("PRFLEET_CONFIG") or default_config_path())
    data: dict[str, Any] = {}
    if config_path.is_file():
        try:
            data = tomllib.loads(config_path.read_text())
        except (OSError, tomllib.TOMLDecodeError) as exc:
            raise ConfigError(f"cannot read {config_path}: {exc}") from exc

    _apply_env(data)
    try:
        return Settings.model_validate(data)
    except ValidationError as exc:
        messages = []
        for err in exc.errors():
            loc = ".".join(str(part) for part in err["loc"])
            messages.append(f"{loc}: {err['msg']}")
        raise ConfigError("; ".join(messages)) from exc


def _apply_env(data: dict[str, Any]) -> None:
    env = os.environ
    if "PRFLEET_ROOT_DIR" in env:
        data.setdefault("paths", {})["root_dir"] = env["PRFLEET_ROOT_DIR"]
    if "PRFLEET_TICKET_PATTERN" in env:
        data.setdefault("tickets", {})["pattern"] = env["PRFLEET_TICKET_PATTERN"]
    if "PRFLEET_LINEAR_ORG" in env:
        data.setdefault("tickets", {})["linear_org"] = env["PRFLEET_LINEAR_ORG"]
    if "PRFLEET_SCAN_CONCURRENCY" in env:
        data.setdefault("scan", {})["max_concurrency"] = env["PRFLEET_SCAN_CONCURRENCY"] or None
    github = data.setdefault("github", {})
    if not github.get("token") and env.get("GITHUB_TOKEN"):
        github["token"] = env["GITHUB_TOKEN"]
