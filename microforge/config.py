"""microforge configuration.

Typed configuration for the scaffolder and the local orchestrator. All
settings use Pydantic v2 models so they can be validated at construction time
and serialised to/from JSON or environment variables without boiler-plate.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class SupervisorConfig(BaseModel):
    """Defaults for ``run local``. Per-node probe settings override these."""

    probe_timeout: float = Field(
        default=60.0, gt=0, description="Seconds a node may take to become ready"
    )
    probe_interval: float = Field(
        default=0.5, gt=0, description="Initial delay between readiness probes"
    )
    probe_max_interval: float = Field(
        default=5.0, gt=0, description="Upper bound for the exponential probe backoff"
    )
    probe_max_attempts: Optional[int] = Field(
        default=None, ge=1, description="Stop probing after this many attempts"
    )
    grace_period: float = Field(
        default=10.0, ge=0, description="Seconds to wait after SIGTERM before killing"
    )
    max_concurrency: Optional[int] = Field(
        default=None, ge=1, description="Global cap on nodes starting at the same time"
    )


class LoggingConfig(BaseModel):
    """Logging knobs for the CLI."""

    level: str = Field(default="WARNING")
    format: Literal["pretty", "structured"] = Field(default="pretty")
    file: Optional[Path] = Field(default=None, description="Optional log file")


class Config(BaseModel):
    """Global microforge configuration.

    Instances are created once by the CLI entry point and then passed to the
    scaffolding engine and the process supervisor.
    """

    root: Path = Field(default=Path("."))
    manifest_filename: str = Field(default="microforge.yaml")
    state_dir: str = Field(default=".microforge")
    template_dir: Optional[Path] = Field(
        default=None, description="Override the bundled template catalog"
    )
    docker_binary: str = Field(default="docker")
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # ------------------------------------------------------------------
    # Derived paths (read-only properties)
    # ------------------------------------------------------------------

    @property
    def manifest_path(self) -> Path:
        """Path to the solution manifest."""
        return self.root / self.manifest_filename

    @property
    def state_path(self) -> Path:
        """Root of the ``.microforge/`` working directory."""
        return self.root / self.state_dir

    @property
    def staging_path(self) -> Path:
        """Directory where generated files are staged before commit."""
        return self.state_path / "staging"

    @property
    def logs_path(self) -> Path:
        """Directory receiving the output of launched processes."""
        return self.state_path / "logs"

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path | None = None) -> Path:
        """Persist the configuration to a JSON file.

        Args:
            path: Destination file. Defaults to ``<state_path>/config.json``.

        Returns:
            The resolved path where the file was written.
        """
        target = path or (self.state_path / "config.json")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load a previously-saved configuration from JSON."""
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls) -> "Config":
        """Build a ``Config`` from environment variables.

        Recognised variables (all optional):
            MICROFORGE_ROOT, MICROFORGE_TEMPLATE_DIR, MICROFORGE_DOCKER,
            MICROFORGE_PROBE_TIMEOUT, MICROFORGE_PROBE_INTERVAL,
            MICROFORGE_GRACE_PERIOD, MICROFORGE_MAX_CONCURRENCY,
            MICROFORGE_LOG_LEVEL, MICROFORGE_LOG_FORMAT, MICROFORGE_LOG_FILE.
        """
        supervisor_kwargs: dict[str, Any] = {}
        if os.environ.get("MICROFORGE_PROBE_TIMEOUT"):
            supervisor_kwargs["probe_timeout"] = float(os.environ["MICROFORGE_PROBE_TIMEOUT"])
        if os.environ.get("MICROFORGE_PROBE_INTERVAL"):
            supervisor_kwargs["probe_interval"] = float(os.environ["MICROFORGE_PROBE_INTERVAL"])
        if os.environ.get("MICROFORGE_GRACE_PERIOD"):
            supervisor_kwargs["grace_period"] = float(os.environ["MICROFORGE_GRACE_PERIOD"])
        if os.environ.get("MICROFORGE_MAX_CONCURRENCY"):
            supervisor_kwargs["max_concurrency"] = int(os.environ["MICROFORGE_MAX_CONCURRENCY"])

        logging_kwargs: dict[str, Any] = {}
        if os.environ.get("MICROFORGE_LOG_LEVEL"):
            logging_kwargs["level"] = os.environ["MICROFORGE_LOG_LEVEL"]
        if os.environ.get("MICROFORGE_LOG_FORMAT"):
            logging_kwargs["format"] = os.environ["MICROFORGE_LOG_FORMAT"]
        if os.environ.get("MICROFORGE_LOG_FILE"):
            logging_kwargs["file"] = Path(os.environ["MICROFORGE_LOG_FILE"])

        template_dir = os.environ.get("MICROFORGE_TEMPLATE_DIR")

        return cls(
            root=Path(os.environ.get("MICROFORGE_ROOT", ".")),
            template_dir=Path(template_dir) if template_dir else None,
            docker_binary=os.environ.get("MICROFORGE_DOCKER", "docker"),
            supervisor=SupervisorConfig(**supervisor_kwargs),
            logging=LoggingConfig(**logging_kwargs),
        )
