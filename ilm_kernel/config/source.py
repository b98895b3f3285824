"""
Configuration sources.

Policies, schedules and conditions are operator-managed and read-only to the
kernel. A source hands out a deep-copied ConfigSnapshot; components take one
snapshot at the start of a cycle and use it throughout, so edits made
mid-cycle are picked up by the next cycle only.
"""

import logging
from pathlib import Path
from typing import Optional, Protocol, Union

import yaml
from pydantic import ValidationError

from ilm_kernel.errors import ConfigError
from ilm_kernel.models.config import ConfigSnapshot

logger = logging.getLogger(__name__)


class ConfigSource(Protocol):
    def snapshot(self) -> ConfigSnapshot:
        """Return an immutable copy of the current configuration."""


class InMemoryConfigSource:
    """Holds a snapshot in memory. `update` swaps it for later cycles."""

    def __init__(self, snapshot: Optional[ConfigSnapshot] = None):
        self._snapshot = snapshot or ConfigSnapshot()

    def snapshot(self) -> ConfigSnapshot:
        return self._snapshot.model_copy(deep=True)

    def update(self, snapshot: ConfigSnapshot) -> None:
        self._snapshot = snapshot.model_copy(deep=True)


class FileConfigSource:
    """
    Reads a JSON or YAML configuration file.

    The file is re-read on every `snapshot()` call so operators can edit it
    between cycles without restarting the heartbeat.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def snapshot(self) -> ConfigSnapshot:
        return load_snapshot(self.path)


def load_snapshot(path: Union[str, Path]) -> ConfigSnapshot:
    """Load and validate a configuration file (.json, .yaml or .yml)."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        text = path.read_text(encoding="utf-8")
        if path.suffix.lower() in (".yaml", ".yml"):
            snapshot = ConfigSnapshot.model_validate(yaml.safe_load(text) or {})
        else:
            snapshot = ConfigSnapshot.model_validate_json(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e

    logger.debug(
        "Loaded %d policies, %d schedules, %d conditions from %s",
        len(snapshot.policies),
        len(snapshot.schedules),
        len(snapshot.conditions),
        path,
    )
    return snapshot
