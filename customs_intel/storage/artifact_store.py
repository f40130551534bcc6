"""
Blob store for uploaded PDFs and extraction artifacts.
Local filesystem under ARTIFACT_ROOT (volume mount).
"""

import json
from pathlib import Path
from typing import Optional

import structlog

from customs_intel.config import settings
from customs_intel.storage.paths import ensure_parent_dirs

logger = structlog.get_logger(__name__)


class ArtifactStore:
    """
    Save and load blobs by path relative to ARTIFACT_ROOT.
    Paths that escape the root are rejected: request bodies carry file paths.
    """

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.ARTIFACT_ROOT).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, relative_path: str) -> Path:
        full_path = (self.root / relative_path.lstrip("/")).resolve()
        if full_path != self.root and self.root not in full_path.parents:
            raise ValueError(f"Path escapes artifact root: {relative_path}")
        return full_path

    def save_bytes(self, relative_path: str, data: bytes) -> str:
        """Save raw bytes (PDF). Returns the relative path."""
        self._resolve(relative_path)
        full_path = ensure_parent_dirs(str(self.root), relative_path)
        full_path.write_bytes(data)
        logger.info("artifact_saved", path=relative_path, size_bytes=len(data))
        return relative_path

    def save_json(self, relative_path: str, data: dict) -> str:
        self._resolve(relative_path)
        full_path = ensure_parent_dirs(str(self.root), relative_path)
        full_path.write_text(json.dumps(data, default=str, ensure_ascii=False, indent=2), encoding="utf-8")
        logger.info("artifact_saved_json", path=relative_path)
        return relative_path

    def save_text(self, relative_path: str, text: str) -> str:
        self._resolve(relative_path)
        full_path = ensure_parent_dirs(str(self.root), relative_path)
        full_path.write_text(text, encoding="utf-8")
        logger.debug("artifact_saved_text", path=relative_path)
        return relative_path

    def load_bytes(self, relative_path: str) -> bytes:
        full_path = self._resolve(relative_path)
        if not full_path.is_file():
            raise FileNotFoundError(f"Artifact not found: {relative_path}")
        return full_path.read_bytes()

    def load_json(self, relative_path: str) -> dict:
        full_path = self._resolve(relative_path)
        if not full_path.is_file():
            raise FileNotFoundError(f"Artifact not found: {relative_path}")
        return json.loads(full_path.read_text(encoding="utf-8"))

    def exists(self, relative_path: str) -> bool:
        try:
            return self._resolve(relative_path).is_file()
        except ValueError:
            return False
