"""Probing and compensation settings with JSON file persistence."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from surface_mesh._logging import get_logger
from surface_mesh.errors import PersistenceError, ValidationError
from surface_mesh.probe.controller import ProbeParams
from surface_mesh.probe.planner import MAX_POINTS_PER_AXIS


_LOGGER = get_logger(__name__)


class MeshSettings(BaseModel):
    """Operator-facing configuration (lengths in mm, feeds in mm/min)."""

    grid_mode: Literal["manual", "auto"] = "manual"
    rows: int = Field(default=5, ge=1, le=MAX_POINTS_PER_AXIS)
    cols: int = Field(default=5, ge=1, le=MAX_POINTS_PER_AXIS)
    size_x: float = Field(default=100.0, ge=0)
    size_y: float = Field(default=100.0, ge=0)
    probe_feed_rate: float = Field(default=100.0, ge=1, le=1000)
    travel_feed_rate: float = Field(default=2000.0, ge=100, le=5000)
    clearance_height: float = Field(default=5.0, ge=1)
    max_plunge: float = Field(default=20.0, ge=1)
    reference_z: float = 0.0
    max_bounces: int = Field(default=25, ge=1, le=1000)

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
        allow_inf_nan=False,
    )

    def probe_params(self) -> ProbeParams:
        """Controller parameters derived from these settings."""

        return ProbeParams(
            probe_feed_rate=self.probe_feed_rate,
            travel_feed_rate=self.travel_feed_rate,
            clearance_height=self.clearance_height,
            max_plunge=self.max_plunge,
            max_bounces=self.max_bounces,
        )

    def merged(self, **changes: object) -> "MeshSettings":
        """Return a validated copy with ``changes`` applied (names or aliases)."""

        data = self.model_dump()
        for key, value in changes.items():
            data[_FIELD_BY_ALIAS.get(key, key)] = value
        return build_settings(**data)


_FIELD_BY_ALIAS = {to_camel(name): name for name in MeshSettings.model_fields}


def build_settings(**values: object) -> MeshSettings:
    """Validate ``values`` into :class:`MeshSettings`."""

    try:
        return MeshSettings.model_validate(values)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid settings: {exc}") from exc


def load_settings(path: Path) -> MeshSettings:
    """Read settings from ``path``; defaults when the file does not exist."""

    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        _LOGGER.info("No settings file at %s, using defaults", path)
        return MeshSettings()
    except OSError as exc:
        raise ValidationError(f"Cannot read settings {path}: {exc}") from exc

    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Settings file {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError(f"Settings file {path} must contain an object")
    return build_settings(**data)


def save_settings(settings: MeshSettings, path: Path) -> Path:
    """Write ``settings`` as camelCase JSON to ``path``."""

    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(settings.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
    except OSError as exc:
        raise PersistenceError(f"Cannot save settings to {path}: {exc}") from exc
    _LOGGER.info("Saved settings to %s", path)
    return path


__all__ = ["MeshSettings", "build_settings", "load_settings", "save_settings"]
