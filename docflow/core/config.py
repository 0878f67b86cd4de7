"""
Configuration system for docflow.

Loads YAML configuration files and provides typed access to settings.
Uses Pydantic v2 for validation and immutable config objects.

Configuration Hierarchy (highest priority first):
1. CLI arguments (passed to load_config)
2. Environment variables (DOCFLOW_*)
3. YAML configuration file
4. Pydantic field defaults
"""

import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_HOME = Path.home() / ".docflow"

SECTIONS = {"workflow", "storage", "scan", "content", "docs", "audit"}


class WorkflowSettings(BaseModel):
    """Batch-phase timing and retry budget."""

    model_config = ConfigDict(frozen=True)

    stale_after_minutes: float = Field(
        default=30, gt=0, description="Minutes after which a dispatched task may be reissued"
    )
    max_retries: int = Field(default=3, ge=0, description="Re-dispatches allowed after a task fails")
    expiry_hours: float = Field(default=168, gt=0, description="Age after which cleanup removes workflows")

    @property
    def stale_after(self) -> timedelta:
        return timedelta(minutes=self.stale_after_minutes)

    @property
    def expiry(self) -> timedelta:
        return timedelta(hours=self.expiry_hours)


class StorageConfig(BaseModel):
    """Where workflow records live."""

    model_config = ConfigDict(frozen=True)

    backend: Literal["sqlite", "memory"] = Field(default="sqlite", description="Store backend")
    path: Path = Field(default=DEFAULT_HOME / "workflows.db", description="SQLite database path")


class ScanConfig(BaseModel):
    """Settings for the default project scanner."""

    model_config = ConfigDict(frozen=True)

    include_extensions: list[str] = Field(
        default=[
            ".py", ".js", ".jsx", ".ts", ".tsx", ".java", ".go", ".rs", ".rb",
            ".php", ".cs", ".c", ".h", ".cpp", ".hpp", ".kt", ".swift", ".scala",
        ],
        description="File extensions to document",
    )
    ignore_dirs: list[str] = Field(
        default=[
            ".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv", "venv",
            "dist", "build", "target", ".idea", ".vscode", ".docflow",
        ],
        description="Directory names never descended into",
    )
    max_files: int = Field(default=2000, gt=0, description="Cap on enumerated files")

    @field_validator("include_extensions", "ignore_dirs", mode="before")
    @classmethod
    def split_single_value(cls, v: Any) -> Any:
        # DOCFLOW_SCAN_IGNORE_DIRS=vendor arrives as a plain string
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("include_extensions")
    @classmethod
    def normalize_extensions(cls, v: list[str]) -> list[str]:
        return [e.lower() if e.startswith(".") else f".{e.lower()}" for e in v]


class ContentConfig(BaseModel):
    """Settings for the file-content provider."""

    model_config = ConfigDict(frozen=True)

    max_content_length: int = Field(default=50000, gt=0, description="Characters returned per file")


class DocsConfig(BaseModel):
    """Where generated documentation is written, relative to the project."""

    model_config = ConfigDict(frozen=True)

    output_dir: str = Field(default="docflow_docs", description="Docs directory inside the project")

    @field_validator("output_dir")
    @classmethod
    def validate_output_dir(cls, v: str) -> str:
        if not v or Path(v).is_absolute() or ".." in Path(v).parts:
            raise ValueError(f"output_dir must be a relative path inside the project, got {v!r}")
        return v


class AuditConfig(BaseModel):
    """JSONL audit trail settings."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(default=True)
    log_dir: Path = Field(default=DEFAULT_HOME / "audit")
    retention_days: int = Field(default=30, ge=0, description="0 keeps entries forever")


class DocflowConfig(BaseModel):
    """Central configuration object."""

    model_config = ConfigDict(frozen=True)

    workflow: WorkflowSettings = Field(default_factory=WorkflowSettings)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    scan: ScanConfig = Field(default_factory=ScanConfig)
    content: ContentConfig = Field(default_factory=ContentConfig)
    docs: DocsConfig = Field(default_factory=DocsConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> "DocflowConfig":
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data, base_path=Path(path).parent)

    @classmethod
    def from_dict(cls, data: dict, base_path: Optional[Path] = None) -> "DocflowConfig":
        """Create from a dictionary, resolving relative paths against ``base_path``."""
        base_path = base_path or Path(".")

        storage = dict(data.get("storage", {}))
        if storage.get("path"):
            storage["path"] = _resolve(base_path, storage["path"])

        audit = dict(data.get("audit", {}))
        if audit.get("log_dir"):
            audit["log_dir"] = _resolve(base_path, audit["log_dir"])

        return cls.model_validate({
            "workflow": data.get("workflow", {}),
            "storage": storage,
            "scan": data.get("scan", {}),
            "content": data.get("content", {}),
            "docs": data.get("docs", {}),
            "audit": audit,
        })


def _resolve(base_path: Path, value: Union[str, Path]) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else base_path / path


def load_config(
    path: Optional[Path] = None,
    env_prefix: str = "DOCFLOW_",
    cli_overrides: Optional[Dict[str, Any]] = None,
    use_env: bool = True,
) -> DocflowConfig:
    """Load configuration with hierarchy: defaults → YAML → env vars → CLI args.

    Args:
        path: Optional explicit path to YAML config file
        env_prefix: Prefix for environment variables (default: "DOCFLOW_")
        cli_overrides: Optional dictionary of CLI argument overrides
        use_env: Whether to load environment variables (default: True)

    Returns:
        Merged DocflowConfig

    Examples:
        # Environment variable: DOCFLOW_WORKFLOW_MAX_RETRIES=5
        config = load_config()  # max_retries will be 5

        config = load_config(cli_overrides={"storage": {"backend": "memory"}})
    """
    yaml_path = _find_config_file(path)
    base_path = yaml_path.parent if yaml_path else Path(".")

    if yaml_path:
        with open(yaml_path) as f:
            config_dict = yaml.safe_load(f) or {}
    else:
        config_dict = {}

    if use_env:
        _deep_merge(config_dict, _extract_env_config(env_prefix))

    if cli_overrides:
        _deep_merge(config_dict, cli_overrides)

    if not config_dict:
        return DocflowConfig()

    return DocflowConfig.from_dict(config_dict, base_path=base_path)


def _find_config_file(path: Optional[Path] = None) -> Optional[Path]:
    """Find configuration file.

    Searches in this order:
    1. Provided path
    2. ./docflow.yaml
    3. ./.docflow.yaml
    """
    if path and path.exists():
        return path

    for filename in ["docflow.yaml", ".docflow.yaml"]:
        config_path = Path(filename)
        if config_path.exists():
            return config_path

    return None


def _extract_env_config(prefix: str = "DOCFLOW_") -> Dict[str, Any]:
    """Extract configuration from environment variables.

    - DOCFLOW_WORKFLOW_MAX_RETRIES=5 → {"workflow": {"max_retries": 5}}
    - DOCFLOW_STORAGE_BACKEND=memory → {"storage": {"backend": "memory"}}
    - DOCFLOW_SCAN_IGNORE_DIRS=.git,vendor → {"scan": {"ignore_dirs": [".git", "vendor"]}}

    Variables whose first segment is not a known section are ignored.
    """
    config: Dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix):].lower().split("_")
        if len(parts) < 2 or parts[0] not in SECTIONS:
            continue

        section = parts[0]
        field = "_".join(parts[1:])
        config.setdefault(section, {})[field] = _convert_env_value(value)

    return config


def _convert_env_value(value: str) -> Union[str, int, float, bool, List[str]]:
    """Convert an environment variable string to int, float, bool, list or str."""
    if not value:
        return value

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    if "," in value:
        return [v.strip() for v in value.split(",") if v.strip()]

    return value


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    """Deep merge override into base dictionary (mutates base)."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
