"""Versioned JSON persistence for probed meshes."""

from __future__ import annotations

import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from surface_mesh._logging import get_logger
from surface_mesh.errors import PersistenceError
from surface_mesh.probe.planner import GridParams, MeshPoint, SurfaceMesh


_LOGGER = get_logger(__name__)

DOCUMENT_VERSION = 1
APP_NAME = "surface-mesh"


def default_data_dir() -> Path:
    """Per-platform user data directory for the application."""

    home = Path.home()
    if sys.platform.startswith("win"):
        return home / "AppData" / "Roaming" / APP_NAME
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / APP_NAME
    if sys.platform.startswith("linux"):
        return home / ".config" / APP_NAME
    return home / f".{APP_NAME}"


class MeshDocument(BaseModel):
    """On-disk representation ``{version, timestamp, gridParams, mesh}``."""

    version: int = DOCUMENT_VERSION
    timestamp: str
    grid_params: GridParams = Field(alias="gridParams")
    mesh: List[List[MeshPoint]]

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_mesh(cls, mesh: SurfaceMesh) -> "MeshDocument":
        return cls(
            timestamp=datetime.now(timezone.utc).isoformat(),
            grid_params=mesh.grid,
            mesh=mesh.points,
        )

    def to_mesh(self) -> SurfaceMesh:
        return SurfaceMesh(grid=self.grid_params, points=self.mesh).freeze()


class MeshStore:
    """Read and write the mesh document at a fixed path."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = Path(path) if path is not None else default_data_dir() / "mesh.json"

    @property
    def path(self) -> Path:
        return self._path

    def save(self, mesh: SurfaceMesh) -> Path:
        """Persist ``mesh``; raises :class:`PersistenceError` on failure."""

        document = MeshDocument.from_mesh(mesh)
        payload = document.model_dump_json(by_alias=True, indent=2)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as exc:
            _LOGGER.error("Failed to save mesh to %s: %s", self._path, exc)
            raise PersistenceError(f"Cannot save mesh to {self._path}: {exc}") from exc
        _LOGGER.info(
            "Saved %dx%d mesh to %s", mesh.grid.cols, mesh.grid.rows, self._path
        )
        return self._path

    def load(self) -> Optional[SurfaceMesh]:
        """Return the stored mesh, or ``None`` when missing or unreadable."""

        try:
            content = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            _LOGGER.debug("No saved mesh at %s", self._path)
            return None
        except OSError as exc:
            _LOGGER.warning("Cannot read mesh %s: %s", self._path, exc)
            return None

        try:
            document = MeshDocument.model_validate_json(content)
            if document.version != DOCUMENT_VERSION:
                _LOGGER.warning(
                    "Ignoring mesh %s with unsupported version %s", self._path, document.version
                )
                return None
            mesh = document.to_mesh()
        except (PydanticValidationError, ValueError) as exc:
            _LOGGER.warning("Ignoring corrupt mesh document %s: %s", self._path, exc)
            return None

        _LOGGER.info("Loaded saved mesh: %d x %d", mesh.grid.cols, mesh.grid.rows)
        return mesh

    def clear(self) -> bool:
        """Delete the stored document; ``True`` if one existed."""

        try:
            self._path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise PersistenceError(f"Cannot remove mesh {self._path}: {exc}") from exc
        return True


__all__ = ["DOCUMENT_VERSION", "MeshDocument", "MeshStore", "default_data_dir"]
