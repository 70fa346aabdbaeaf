"""Configuration loading for the loop runner.

Settings live in a YAML file validated against CONFIG_SCHEMA. Lookup order:
explicit path -> local .rwl/rwl.yml -> global ~/.config/rwl/rwl.yml ->
built-in defaults. Secrets (OPENROUTER_API_KEY, DATABASE_URL) come from the
environment, with .env support.

The resulting Config is frozen: it is built once and passed explicitly into
the controller, and never changes while a run is in progress.
"""

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import jsonschema
import yaml
from dotenv import load_dotenv

from rwl.constants import (
    CONFIG_FILENAME,
    DEFAULT_COMMIT_TEMPLATE,
    DEFAULT_COMPLETION_SIGNAL,
    DEFAULT_CYCLE_TIMEOUT_S,
    DEFAULT_MAX_CYCLES,
    DEFAULT_MODEL,
    DEFAULT_PROGRESS_MAX_CHARS,
    DEFAULT_PROGRESS_MAX_ENTRIES,
    DEFAULT_SLEEP_BETWEEN_S,
    DEFAULT_VALIDATION_COMMAND,
    DEFAULT_VALIDATION_TIMEOUT_S,
    RWL_DIR,
)
from rwl.gates import QualityGate


logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is missing or invalid."""
    pass


@dataclass(frozen=True)
class LoopSettings:
    max_cycles: int = DEFAULT_MAX_CYCLES
    cycle_timeout: float = DEFAULT_CYCLE_TIMEOUT_S
    sleep_between: float = DEFAULT_SLEEP_BETWEEN_S
    completion_signal: str = DEFAULT_COMPLETION_SIGNAL


@dataclass(frozen=True)
class ValidationSettings:
    command: str = DEFAULT_VALIDATION_COMMAND
    timeout: float = DEFAULT_VALIDATION_TIMEOUT_S


@dataclass(frozen=True)
class ProgressSettings:
    max_entries: Optional[int] = DEFAULT_PROGRESS_MAX_ENTRIES
    max_chars: Optional[int] = DEFAULT_PROGRESS_MAX_CHARS


@dataclass(frozen=True)
class GitSettings:
    auto_commit: bool = True
    commit_template: str = DEFAULT_COMMIT_TEMPLATE


@dataclass(frozen=True)
class LimitSettings:
    max_tokens: Optional[int] = None
    max_cost: Optional[float] = None
    max_time: Optional[float] = None  # seconds of wall-clock per run


@dataclass(frozen=True)
class LlmSettings:
    provider: str = "openrouter"  # openrouter | claude
    model: str = DEFAULT_MODEL


@dataclass(frozen=True)
class StorageSettings:
    backend: str = "local"  # local | postgres


@dataclass(frozen=True)
class Config:
    """Immutable loop configuration."""
    loop: LoopSettings = field(default_factory=LoopSettings)
    validation: ValidationSettings = field(default_factory=ValidationSettings)
    quality_gates: Tuple[QualityGate, ...] = ()
    progress: ProgressSettings = field(default_factory=ProgressSettings)
    git: GitSettings = field(default_factory=GitSettings)
    limits: LimitSettings = field(default_factory=LimitSettings)
    llm: LlmSettings = field(default_factory=LlmSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)

    def with_overrides(
        self,
        max_cycles: Optional[int] = None,
        model: Optional[str] = None,
        cycle_timeout: Optional[float] = None,
    ) -> "Config":
        """Return a copy with CLI overrides applied (None = keep)."""
        loop = self.loop
        llm = self.llm
        if max_cycles is not None:
            loop = dataclasses.replace(loop, max_cycles=max_cycles)
        if cycle_timeout is not None:
            loop = dataclasses.replace(loop, cycle_timeout=cycle_timeout)
        if model is not None:
            llm = dataclasses.replace(llm, model=model)
        return dataclasses.replace(self, loop=loop, llm=llm)


_POSITIVE_NUMBER = {"type": "number", "exclusiveMinimum": 0}
_OPTIONAL_POSITIVE_INT = {"type": ["integer", "null"], "minimum": 1}
_OPTIONAL_POSITIVE_NUMBER = {"type": ["number", "null"], "exclusiveMinimum": 0}

CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "loop": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "max_cycles": {"type": "integer", "minimum": 1},
                "cycle_timeout": _POSITIVE_NUMBER,
                "sleep_between": {"type": "number", "minimum": 0},
                "completion_signal": {"type": "string", "minLength": 1},
            },
        },
        "validation": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "command": {"type": "string", "minLength": 1},
                "timeout": _POSITIVE_NUMBER,
            },
        },
        "quality_gates": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["name", "pattern"],
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "pattern": {"type": "string", "minLength": 1},
                    "forbidden": {"type": "boolean"},
                    "paths": {"type": "array", "items": {"type": "string"}},
                },
            },
        },
        "progress": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "max_entries": _OPTIONAL_POSITIVE_INT,
                "max_chars": _OPTIONAL_POSITIVE_INT,
            },
        },
        "git": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "auto_commit": {"type": "boolean"},
                "commit_template": {"type": "string", "minLength": 1},
            },
        },
        "limits": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "max_tokens": _OPTIONAL_POSITIVE_INT,
                "max_cost": _OPTIONAL_POSITIVE_NUMBER,
                "max_time": _OPTIONAL_POSITIVE_NUMBER,
            },
        },
        "llm": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "provider": {"enum": ["openrouter", "claude"]},
                "model": {"type": "string", "minLength": 1},
            },
        },
        "storage": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "backend": {"enum": ["local", "postgres"]},
            },
        },
    },
}


def load_env() -> None:
    """Load .env into the process environment (existing variables win)."""
    load_dotenv()


def local_config_path(work_dir: Path) -> Path:
    return Path(work_dir) / RWL_DIR / CONFIG_FILENAME


def global_config_path() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / "rwl" / CONFIG_FILENAME


def config_from_dict(data: Optional[Dict[str, Any]]) -> Config:
    """
    Validate a parsed YAML mapping and build a Config.

    Raises:
        ConfigError: If the mapping does not match CONFIG_SCHEMA
    """
    data = data or {}
    try:
        jsonschema.validate(instance=data, schema=CONFIG_SCHEMA)
    except jsonschema.ValidationError as e:
        location = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigError(f"Invalid configuration at {location}: {e.message}")

    gates = []
    for item in data.get("quality_gates") or []:
        gate = QualityGate(
            name=item["name"],
            pattern=item["pattern"],
            forbidden=item.get("forbidden", True),
            paths=tuple(item.get("paths") or ()),
        )
        try:
            gate.compiled()
        except Exception as e:
            raise ConfigError(f"Quality gate {gate.name!r} has an invalid pattern: {e}")
        gates.append(gate)

    template = (data.get("git") or {}).get("commit_template")
    if template is not None and not template.strip():
        raise ConfigError("git.commit_template must not be blank")

    return Config(
        loop=LoopSettings(**(data.get("loop") or {})),
        validation=ValidationSettings(**(data.get("validation") or {})),
        quality_gates=tuple(gates),
        progress=ProgressSettings(**(data.get("progress") or {})),
        git=GitSettings(**(data.get("git") or {})),
        limits=LimitSettings(**(data.get("limits") or {})),
        llm=LlmSettings(**(data.get("llm") or {})),
        storage=StorageSettings(**(data.get("storage") or {})),
    )


def config_to_dict(config: Config) -> Dict[str, Any]:
    """Inverse of config_from_dict, suitable for yaml.safe_dump."""
    data = dataclasses.asdict(config)
    data["quality_gates"] = [
        {
            "name": gate.name,
            "pattern": gate.pattern,
            "forbidden": gate.forbidden,
            **({"paths": list(gate.paths)} if gate.paths else {}),
        }
        for gate in config.quality_gates
    ]
    return data


def load_config_file(path: Path) -> Config:
    """Load and validate a single YAML config file."""
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text())
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigError(f"YAML parse error in {path}: {str(e)[:200]}")
    if data is not None and not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    config = config_from_dict(data)
    logger.info("Loaded config from %s", path)
    return config


def load_config(config_path: Optional[Path] = None, work_dir: Path = Path(".")) -> Config:
    """
    Load configuration with the cascade: explicit -> local -> global -> defaults.

    Args:
        config_path: Explicit config file; errors loading it are fatal
        work_dir: Directory whose .rwl/rwl.yml is the local config

    Returns:
        Config object

    Raises:
        ConfigError: If the explicit file, or a present local/global file, is invalid
    """
    load_env()

    if config_path is not None:
        return load_config_file(config_path)

    for candidate in (local_config_path(work_dir), global_config_path()):
        if candidate.exists():
            return load_config_file(candidate)

    logger.info("No config file found, using defaults")
    return Config()


def save_config(config: Config, path: Path) -> Path:
    """Write a config as YAML, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(config_to_dict(config), sort_keys=False))
    logger.info("Saved config to %s", path)
    return path
