"""Program source/sink backed by a directory of G-code files."""

from __future__ import annotations

from pathlib import Path, PurePath

from surface_mesh._logging import get_logger
from surface_mesh.errors import RewriteIOError


_LOGGER = get_logger(__name__)


class ProgramStore:
    """Store loaded programs and receive compensated ones by name."""

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, name: str) -> Path:
        """Resolve ``name`` inside the store; directory parts are dropped."""

        base = PurePath(name.replace("\\", "/")).name
        if not base or base in {".", ".."}:
            raise RewriteIOError(f"Invalid program name: {name!r}")
        return self._directory / base

    def read(self, name: str) -> str:
        path = self.path_for(name)
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            _LOGGER.error("Cannot read program %s: %s", path, exc)
            raise RewriteIOError(f"Cannot read program {path.name}: {exc}") from exc

    def write(self, name: str, text: str) -> str:
        """Store ``text`` under ``name`` and return the stored name."""

        path = self.path_for(name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")
        except OSError as exc:
            _LOGGER.error("Cannot write program %s: %s", path, exc)
            raise RewriteIOError(f"Cannot write program {path.name}: {exc}") from exc
        _LOGGER.info("Stored program %s (%d bytes)", path.name, len(text))
        return path.name


__all__ = ["ProgramStore"]
