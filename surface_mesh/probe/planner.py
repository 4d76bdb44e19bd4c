"""Grid planning helpers and the probed surface mesh model."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, List, Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from surface_mesh._logging import get_logger
from surface_mesh.errors import ValidationError
from surface_mesh.gcode.analyzer import BoundingBox

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from surface_mesh.config import MeshSettings


_LOGGER = get_logger(__name__)

MAX_POINTS_PER_AXIS = 50
_SPACING_TOLERANCE = 1e-6


def _spacing(size: float, count: int) -> float:
    return size / (count - 1) if count > 1 else 0.0


class GridSpec(BaseModel):
    """Grid discretisation not yet anchored to a machine position."""

    rows: int = Field(ge=1, le=MAX_POINTS_PER_AXIS)
    cols: int = Field(ge=1, le=MAX_POINTS_PER_AXIS)
    size_x: float = Field(ge=0.0)
    size_y: float = Field(ge=0.0)

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    @model_validator(mode="after")
    def _check_grid(self) -> "GridSpec":
        """Reject single-point grids and collapsed axes."""

        if self.rows == 1 and self.cols == 1:
            raise ValueError("Grid must have more than 1 point total")
        if self.cols > 1 and self.size_x <= 0:
            raise ValueError("size_x must be positive when cols > 1")
        if self.rows > 1 and self.size_y <= 0:
            raise ValueError("size_y must be positive when rows > 1")
        return self

    @property
    def spacing_x(self) -> float:
        return _spacing(self.size_x, self.cols)

    @property
    def spacing_y(self) -> float:
        return _spacing(self.size_y, self.rows)

    @property
    def total_points(self) -> int:
        return self.rows * self.cols

    def anchored_at(self, start_x: float, start_y: float) -> "GridParams":
        """Place the grid with its first point at ``(start_x, start_y)``."""

        return GridParams(
            start_x=start_x,
            start_y=start_y,
            end_x=start_x + self.spacing_x * (self.cols - 1),
            end_y=start_y + self.spacing_y * (self.rows - 1),
            spacing_x=self.spacing_x,
            spacing_y=self.spacing_y,
            rows=self.rows,
            cols=self.cols,
        )


class GridParams(BaseModel):
    """Anchored grid geometry shared by the mesh and its persisted document."""

    start_x: float
    start_y: float
    end_x: float
    end_y: float
    spacing_x: float = Field(ge=0.0)
    spacing_y: float = Field(ge=0.0)
    rows: int = Field(ge=1)
    cols: int = Field(ge=1)

    model_config = ConfigDict(
        frozen=True,
        allow_inf_nan=False,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @model_validator(mode="after")
    def _check_spacing(self) -> "GridParams":
        """Keep spacing consistent with the start/end span and point counts."""

        if self.rows == 1 and self.cols == 1:
            raise ValueError("Grid must have more than 1 point total")
        for label, start, end, spacing, count in (
            ("x", self.start_x, self.end_x, self.spacing_x, self.cols),
            ("y", self.start_y, self.end_y, self.spacing_y, self.rows),
        ):
            expected = _spacing(end - start, count)
            if not math.isclose(spacing, expected, rel_tol=1e-9, abs_tol=_SPACING_TOLERANCE):
                raise ValueError(f"spacing_{label} must equal {expected} for this grid")
        return self

    def point(self, row: int, col: int) -> tuple[float, float]:
        """Nominal X/Y of the grid point at ``(row, col)``."""

        return self.start_x + col * self.spacing_x, self.start_y + row * self.spacing_y


class GridPlanner:
    """Derive grid layouts from explicit sizes or program bounds."""

    @staticmethod
    def from_size(size_x: float, size_y: float, rows: int, cols: int) -> GridSpec:
        """Grid covering ``size_x`` × ``size_y`` with ``rows`` × ``cols`` points."""

        try:
            return GridSpec(rows=rows, cols=cols, size_x=size_x, size_y=size_y)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid grid: {exc}") from exc

    @staticmethod
    def from_bounds(bounds: BoundingBox, rows: int, cols: int) -> GridParams:
        """Grid covering the X/Y extent of ``bounds`` anchored at its minimum."""

        spec = GridPlanner.from_size(bounds.width, bounds.height, rows, cols)
        return spec.anchored_at(bounds.min.x, bounds.min.y)

    @staticmethod
    def plan(settings: "MeshSettings", bounds: Optional[BoundingBox] = None) -> GridSpec:
        """Resolve the configured grid mode into an unanchored :class:`GridSpec`."""

        if settings.grid_mode == "auto":
            if bounds is None:
                raise ValidationError("Auto grid mode requires a loaded program")
            return GridPlanner.from_size(bounds.width, bounds.height, settings.rows, settings.cols)
        return GridPlanner.from_size(settings.size_x, settings.size_y, settings.rows, settings.cols)


class MeshPoint(BaseModel):
    """Single grid sample; ``z`` stays ``None`` until probed."""

    x: float
    y: float
    z: Optional[float] = None


class MeshStats(BaseModel):
    """Summary of the probed heights."""

    min_z: float
    max_z: float
    range_z: float
    mean_z: float
    probed: int
    total: int


class SurfaceMesh(BaseModel):
    """Row-major grid of probed points with height interpolation."""

    grid: GridParams
    points: List[List[MeshPoint]]

    _frozen: bool = PrivateAttr(default=False)

    @model_validator(mode="after")
    def _check_shape(self) -> "SurfaceMesh":
        """Row and column counts must match the grid."""

        if len(self.points) != self.grid.rows:
            raise ValueError(f"mesh must contain {self.grid.rows} rows")
        for row in self.points:
            if len(row) != self.grid.cols:
                raise ValueError(f"every mesh row must contain {self.grid.cols} points")
        return self

    @classmethod
    def empty(cls, grid: GridParams) -> "SurfaceMesh":
        """Mesh with nominal X/Y for every point and no heights."""

        points = []
        for row in range(grid.rows):
            line = []
            for col in range(grid.cols):
                x, y = grid.point(row, col)
                line.append(MeshPoint(x=x, y=y))
            points.append(line)
        return cls(grid=grid, points=points)

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def complete(self) -> bool:
        return all(point.z is not None for row in self.points for point in row)

    def freeze(self) -> "SurfaceMesh":
        self._frozen = True
        return self

    def record(self, row: int, col: int, z: float) -> None:
        """Store the measured height of ``(row, col)``."""

        if self._frozen:
            raise RuntimeError("Mesh is frozen; start a new probing run to replace it")
        if not math.isfinite(z):
            raise ValueError("Probed height must be finite")
        x, y = self.grid.point(row, col)
        self.points[row][col] = MeshPoint(x=x, y=y, z=float(z))

    def _z(self, row: int, col: int, fallback: float) -> float:
        value = self.points[row][col].z
        return fallback if value is None else value

    def height_at(self, x: float, y: float) -> float:
        """Interpolated surface height at ``(x, y)``.

        Queries outside the probed envelope clamp to the nearest edge,
        infinite coordinates included; unset corners fall back to the cell's
        first corner, then to 0. A NaN coordinate raises
        :class:`~surface_mesh.errors.ValidationError`.
        """

        if math.isnan(x) or math.isnan(y):
            raise ValidationError(f"Height query is not a number: ({x}, {y})")
        grid = self.grid
        rows, cols = grid.rows, grid.cols

        if rows == 1 and cols == 1:
            return self._z(0, 0, 0.0)

        if cols == 1:
            row, ty = _locate(y, grid.start_y, grid.spacing_y, rows)
            z0 = self._z(row, 0, 0.0)
            z1 = self._z(row + 1, 0, z0)
            return z0 * (1 - ty) + z1 * ty

        if rows == 1:
            col, tx = _locate(x, grid.start_x, grid.spacing_x, cols)
            z0 = self._z(0, col, 0.0)
            z1 = self._z(0, col + 1, z0)
            return z0 * (1 - tx) + z1 * tx

        col, tx = _locate(x, grid.start_x, grid.spacing_x, cols)
        row, ty = _locate(y, grid.start_y, grid.spacing_y, rows)
        z00 = self._z(row, col, 0.0)
        z10 = self._z(row, col + 1, z00)
        z01 = self._z(row + 1, col, z00)
        z11 = self._z(row + 1, col + 1, z00)
        return (
            z00 * (1 - tx) * (1 - ty)
            + z10 * tx * (1 - ty)
            + z01 * (1 - tx) * ty
            + z11 * tx * ty
        )

    def z_grid(self) -> np.ndarray:
        """Heights as a ``rows × cols`` array with NaN for unset points."""

        return np.array(
            [[np.nan if point.z is None else point.z for point in row] for row in self.points],
            dtype=float,
        )

    def stats(self) -> Optional[MeshStats]:
        """Min/max/range/mean of the probed heights, ``None`` before any probe."""

        grid_z = self.z_grid()
        probed = int(np.count_nonzero(~np.isnan(grid_z)))
        if probed == 0:
            return None
        min_z = float(np.nanmin(grid_z))
        max_z = float(np.nanmax(grid_z))
        return MeshStats(
            min_z=min_z,
            max_z=max_z,
            range_z=max_z - min_z,
            mean_z=float(np.nanmean(grid_z)),
            probed=probed,
            total=int(grid_z.size),
        )

    def format_table(self) -> str:
        """Fixed-width table of heights, highest row first."""

        header = ["    "] + [f"{'C' + str(col):>9}" for col in range(self.grid.cols)]
        lines = ["".join(header)]
        for row in reversed(range(self.grid.rows)):
            cells = [f"{'R' + str(row):<4}"]
            for point in self.points[row]:
                cells.append(f"{'-':>9}" if point.z is None else f"{point.z:>9.3f}")
            lines.append("".join(cells))
        return "\n".join(lines)


def _locate(value: float, start: float, spacing: float, count: int) -> tuple[int, float]:
    """Cell index in ``[0, count - 2]`` and clamped fraction within that cell."""

    position = (value - start) / spacing if spacing > 0 else 0.0
    position = min(max(position, 0.0), float(count - 1))
    index = max(0, min(count - 2, math.floor(position)))
    fraction = max(0.0, min(1.0, position - index))
    return index, fraction


__all__ = [
    "GridSpec",
    "GridParams",
    "GridPlanner",
    "MeshPoint",
    "MeshStats",
    "SurfaceMesh",
]
