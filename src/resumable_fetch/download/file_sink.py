"""
Temp file that a download streams into.

FileSink wraps an aiofiles handle. It has no retry logic and does no error
classification: every failure surfaces as OSError to the session.
"""

from typing import Optional

import aiofiles
import aiofiles.os

from resumable_fetch.download.models import OpenMode
from resumable_fetch.logging.setup import get_logger

logger = get_logger(__name__)


async def remove_if_exists(path: str) -> bool:
    """Delete a file, returning False when there was nothing to delete."""
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        return False
    return True


class FileSink:
    """
    Exclusive owner of one temp file on local storage.

    Usage:
        sink = FileSink("/data/map.bin.downloading")
        await sink.open(OpenMode.APPEND)
        await sink.write(chunk)
        await sink.close()
        await sink.rename("/data/map.bin")
    """

    def __init__(self, path: str):
        self.path = path
        self._file = None
        self._mode: Optional[OpenMode] = None

    @property
    def is_open(self) -> bool:
        return self._file is not None

    async def open(self, mode: OpenMode) -> None:
        """
        Open the file for writing.

        APPEND keeps existing content and writes at the end; TRUNCATE
        empties the file first. Creates the file if missing.

        Raises:
            OSError: If the file can't be opened
        """
        if self._file is not None:
            await self.close()
        self._file = await aiofiles.open(self.path, mode.value)
        self._mode = mode

    async def write(self, data: bytes) -> int:
        """Append bytes at the current position."""
        if self._file is None:
            raise OSError(f"File not open: {self.path}")
        return await self._file.write(data)

    async def flush(self) -> None:
        if self._file is not None:
            await self._file.flush()

    async def truncate_to_zero(self) -> None:
        """Discard all content and leave the file open for writing at offset 0."""
        if self._file is None:
            await self.open(OpenMode.TRUNCATE)
            return
        await self._file.seek(0)
        await self._file.truncate(0)

    async def size(self) -> int:
        """Current size on disk, including bytes buffered by an open handle."""
        await self.flush()
        try:
            return await aiofiles.os.path.getsize(self.path)
        except FileNotFoundError:
            return 0

    async def close(self) -> None:
        if self._file is None:
            return
        f, self._file = self._file, None
        await f.close()

    async def remove(self) -> bool:
        """Close and delete the file. Returns False if it was already gone."""
        await self.close()
        removed = await remove_if_exists(self.path)
        if removed:
            logger.debug(f"Removed temp file: {self.path}")
        return removed

    async def rename(self, new_path: str) -> None:
        """
        Close and move the file to new_path; the sink then refers to new_path.

        Raises:
            OSError: If the rename fails (e.g. destination locked)
        """
        await self.close()
        await aiofiles.os.rename(self.path, new_path)
        logger.debug(f"Renamed {self.path} -> {new_path}")
        self.path = new_path
