from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

DispatchDefaultMode = Literal["none", "git"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

LOG_LEVEL_ENV = "WORKGRAPH_LOG_LEVEL"


@dataclass(slots=True)
class StorageConfig:
    root: str = ".workgraph"
    lock_timeout_seconds: float = 3.0


@dataclass(slots=True)
class LifecycleConfig:
    max_title_length: int = 200
    allow_reopen: bool = True


@dataclass(slots=True)
class DispatchSettings:
    default_mode: DispatchDefaultMode = "none"
    branch_prefix: str = "workgraph"
    timeout_seconds: float = 60.0


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevel = "INFO"


@dataclass(slots=True)
class WorkgraphConfig:
    storage: StorageConfig
    lifecycle: LifecycleConfig
    dispatch: DispatchSettings
    logging: LoggingConfig

    @classmethod
    def default(cls) -> WorkgraphConfig:
        return cls(
            storage=StorageConfig(),
            lifecycle=LifecycleConfig(),
            dispatch=DispatchSettings(),
            logging=LoggingConfig(),
        )

    @classmethod
    def from_dict(cls, data: dict) -> WorkgraphConfig:
        return cls(
            storage=StorageConfig(**data.get("storage", {})),
            lifecycle=LifecycleConfig(**data.get("lifecycle", {})),
            dispatch=DispatchSettings(**data.get("dispatch", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "storage": {
                "root": self.storage.root,
                "lock_timeout_seconds": self.storage.lock_timeout_seconds,
            },
            "lifecycle": {
                "max_title_length": self.lifecycle.max_title_length,
                "allow_reopen": self.lifecycle.allow_reopen,
            },
            "dispatch": {
                "default_mode": self.dispatch.default_mode,
                "branch_prefix": self.dispatch.branch_prefix,
                "timeout_seconds": self.dispatch.timeout_seconds,
            },
            "logging": {
                "level": self.logging.level,
            },
        }

    def storage_root(self, project_root: Path) -> Path:
        root = Path(self.storage.root)
        if not root.is_absolute():
            root = project_root / root
        return root.resolve()

    def effective_log_level(self) -> str:
        override = os.environ.get(LOG_LEVEL_ENV, "").strip().upper()
        if override in {"DEBUG", "INFO", "WARNING", "ERROR"}:
            return override
        return self.logging.level


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        if rendered.endswith("."):
            rendered += "0"
        return rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: WorkgraphConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["storage", "lifecycle", "dispatch", "logging"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> WorkgraphConfig:
    if not path.exists():
        return WorkgraphConfig.default()
    return WorkgraphConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: WorkgraphConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
