"""
Single-value store for the most recently created mint.

Trade requests that omit the mint fall back to whatever was recorded here by
the last successful token creation.
"""

import os
import tempfile
from typing import Optional

from loguru import logger

from bundler.config import LAST_MINT_FILE


class LastMintStore:
    """Simple file-based storage for the last created mint."""

    def __init__(self, path: str = LAST_MINT_FILE):
        """
        Initialize the store.

        Args:
            path: File holding the mint address
        """
        self.path = path
        self._ensure_data_directory()

    def _ensure_data_directory(self) -> None:
        """Ensure the parent directory exists."""
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def read(self) -> Optional[str]:
        """Return the recorded mint, or None if nothing was recorded."""
        if not os.path.exists(self.path):
            return None
        with open(self.path, "r", encoding="utf-8") as f:
            mint = f.read().strip()
        return mint or None

    def write(self, mint: str) -> None:
        directory = os.path.dirname(self.path) or "."
        fd, tmp_path = tempfile.mkstemp(prefix=".latest_mint.", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(mint)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.info(f"Recorded latest mint {mint}")


class InMemoryMintStore:
    """Last-mint record kept in process memory."""

    def __init__(self, mint: Optional[str] = None):
        self._mint = mint

    def read(self) -> Optional[str]:
        return self._mint

    def write(self, mint: str) -> None:
        self._mint = mint
