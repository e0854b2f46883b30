"""Configuration loading from environment variables and decision-os.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

_DEFAULT_GLOBAL_DIR = Path.home() / ".decision-os"
_CONFIG_FILENAME = "decision-os.toml"


@dataclass
class DecisionOSConfig:
    """Runtime configuration for the store and its tool surface."""

    workspace_path: Path = field(default_factory=Path.cwd)
    global_dir: Path = _DEFAULT_GLOBAL_DIR
    log_level: str = "INFO"


def load_config(config_path: Path | None = None) -> DecisionOSConfig:
    """Load configuration from environment variables and optional decision-os.toml.

    Priority: environment variables > decision-os.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and the global layer
        for candidate in [Path.cwd() / _CONFIG_FILENAME, _DEFAULT_GLOBAL_DIR / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    store_data = file_data.get("store", {})

    workspace = (
        os.getenv("DECISION_OS_PATH") or store_data.get("workspace_path") or os.getenv("PWD")
    )
    return DecisionOSConfig(
        workspace_path=Path(workspace).expanduser() if workspace else Path.cwd(),
        global_dir=Path(
            os.getenv("DECISION_OS_GLOBAL_DIR", store_data.get("global_dir", str(_DEFAULT_GLOBAL_DIR)))
        ).expanduser(),
        log_level=os.getenv("DECISION_OS_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
