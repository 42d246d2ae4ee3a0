"""
Transfer manager: owns the active upload.

Only one upload token is valid at a time. Starting a new upload replaces
the previous state wholesale; a download already streaming keeps the
snapshot it matched.
"""

import asyncio
import logging
import os

from config import FILE_TOKEN_EXTENSION, TOKEN_HEX_LENGTH
from security.crypto import file_md5, random_hex
from transfer.models import TransferState

logger = logging.getLogger(__name__)


class TransferManager:
    """Tracks the current upload and its auto-print request."""

    def __init__(self) -> None:
        self._active: TransferState | None = None
        self._announced_filename: str | None = None

    @property
    def active(self) -> TransferState | None:
        return self._active

    async def begin_upload(self, local_path: str, auto_start: bool) -> TransferState:
        """
        Hash the file and register it under a fresh token.

        Raises:
            OSError: the file could not be read; the previous state is kept.
        """
        md5_hex, size = await asyncio.to_thread(file_md5, local_path)
        state = TransferState(
            token=random_hex(TOKEN_HEX_LENGTH) + FILE_TOKEN_EXTENSION,
            local_path=local_path,
            filename=os.path.basename(local_path),
            md5_hex=md5_hex,
            size_bytes=size,
            auto_print_requested=auto_start,
        )
        if self._active:
            logger.info(f"Token {self._active.token} superseded by {state.token}")
        self._active = state
        self._announced_filename = None
        logger.info(f"Prepared {state.filename} ({size} bytes, md5 {md5_hex}) as {state.token}")
        return state

    def lookup(self, token: str) -> TransferState | None:
        """Return a snapshot of the active transfer if ``token`` names it."""
        if self._active and token == self._active.token:
            return self._active.model_copy()
        return None

    def consume_auto_print(self) -> str | None:
        """
        Clear the auto-print request and return the filename to print,
        or None if no print was requested.
        """
        if not self._active or not self._active.auto_print_requested:
            return None
        self._active.auto_print_requested = False
        return self._active.filename

    def cancel_auto_print(self) -> None:
        if self._active:
            self._active.auto_print_requested = False

    def mark_ready_announced(self, filename: str) -> bool:
        """
        Record that ``filename`` was announced as ready to print.

        Returns False if it was already announced for this transfer.
        """
        if self._announced_filename == filename:
            return False
        self._announced_filename = filename
        return True

    def clear_ready_announced(self) -> None:
        self._announced_filename = None
