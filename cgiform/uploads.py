"""
Persisting uploaded files and keeping the upload directory within budget.

Uploads land in one shared directory as ``<prefix><random>`` files.  Before
each new file is written a quota policy frees space: either by evicting the
least recently accessed uploads until the directory fits its budget, or by
removing every earlier upload so only one is ever retained.
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
from enum import IntEnum
from typing import TYPE_CHECKING, NamedTuple

from .exceptions import FileError

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Mapping
    from typing import Any, Protocol

    from .multipart import Part

    class QuotaPolicy(Protocol):
        def make_room(self, incoming_size: int) -> int: ...


logger = logging.getLogger(__name__)


class UploadError(IntEnum):
    """Upload status reported for each file, using PHP's numbering."""

    OK = 0
    FAILED_WRITE = 6


class TrackedFile(NamedTuple):
    path: str
    size: int
    last_access: float


class UploadDirectory:
    """
    The filesystem side of the upload directory: lists the files we own
    (those carrying our prefix), deletes them, and creates new ones.
    """

    def __init__(self, path: str, prefix: str) -> None:
        self.logger = logging.getLogger(__name__)
        self.path = path
        self.prefix = prefix

    def list_tracked_files(self) -> list[TrackedFile]:
        files: list[TrackedFile] = []
        try:
            with os.scandir(self.path) as it:
                for entry in it:
                    if not entry.name.startswith(self.prefix):
                        continue
                    try:
                        if not entry.is_file(follow_symlinks=False):
                            continue
                        st = entry.stat(follow_symlinks=False)
                    except OSError as e:
                        self.logger.warning("Failed to stat upload %s: %s", entry.path, e)
                        continue
                    files.append(TrackedFile(entry.path, st.st_size, st.st_atime))
        except OSError as e:
            self.logger.error("Failed to read upload directory %s: %s", self.path, e)
        return files

    def delete(self, path: str) -> None:
        os.unlink(path)

    def create_file(self) -> tuple[int, str]:
        """Creates a new, uniquely named upload file.  Returns ``(fd, path)``."""
        return tempfile.mkstemp(prefix=self.prefix, dir=self.path)

    def __repr__(self) -> str:
        return "%s(path=%r, prefix=%r)" % (self.__class__.__name__, self.path, self.prefix)


class DiskQuotaManager:
    """
    Keeps the tracked uploads plus an incoming file within ``max_disk_space``
    by deleting the least recently accessed uploads first.
    """

    def __init__(
        self, directory: UploadDirectory, max_disk_space: int, clock: Callable[[], float] = time.time
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.directory = directory
        self.max_disk_space = max_disk_space
        self.clock = clock

    def make_room(self, incoming_size: int) -> int:
        """
        Evicts uploads until the total, counting ``incoming_size``, fits the
        budget or nothing is left to evict.  A failed delete is logged and
        its size stays counted.  Returns the resulting total.
        """
        files = self.directory.list_tracked_files()
        total = incoming_size + sum(f.size for f in files)
        if total <= self.max_disk_space:
            return total

        now = self.clock()
        # Oldest first.  The sort is stable, so equal ages keep listing order.
        files.sort(key=lambda f: now - f.last_access, reverse=True)

        for f in files:
            if total <= self.max_disk_space:
                break
            self.logger.info("Removing upload %s (%d bytes) to free space", f.path, f.size)
            try:
                self.directory.delete(f.path)
            except OSError as e:
                self.logger.error("Failed to remove upload %s: %s", f.path, e)
                continue
            total -= f.size

        return total

    def __repr__(self) -> str:
        return "%s(directory=%r, max_disk_space=%r)" % (self.__class__.__name__, self.directory, self.max_disk_space)


class RemoveAllQuota:
    """
    Single-upload policy: every earlier upload is removed before a new one
    is written.
    """

    def __init__(self, directory: UploadDirectory) -> None:
        self.logger = logging.getLogger(__name__)
        self.directory = directory

    def make_room(self, incoming_size: int) -> int:
        total = incoming_size
        for f in self.directory.list_tracked_files():
            self.logger.info("Removing previous upload %s", f.path)
            try:
                self.directory.delete(f.path)
            except OSError as e:
                self.logger.error("Failed to remove upload %s: %s", f.path, e)
                total += f.size
        return total

    def __repr__(self) -> str:
        return "%s(directory=%r)" % (self.__class__.__name__, self.directory)


class UploadWriter:
    """
    Writes file parts to the upload directory, recording the outcome on the
    part itself (``upload_error`` and ``stored_path``).
    """

    def __init__(self, directory: UploadDirectory, quota: QuotaPolicy, max_file_size: int) -> None:
        self.logger = logging.getLogger(__name__)
        self.directory = directory
        self.quota = quota
        self.max_file_size = max_file_size

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> UploadWriter:
        directory = UploadDirectory(config["UPLOAD_DIR"], config["UPLOAD_PREFIX"])
        quota: QuotaPolicy
        if config.get("MULTI_FILE_UPLOAD", True):
            quota = DiskQuotaManager(directory, config["MAX_DISK_SPACE"])
        else:
            quota = RemoveAllQuota(directory)
        return cls(directory, quota, config["MAX_FILE_SIZE"])

    def write(self, part: Part) -> UploadError:
        if part.body_length > self.max_file_size:
            self.logger.warning(
                "Not saving upload %r, file size %d exceeds limit %d",
                part.file_name,
                part.body_length,
                self.max_file_size,
            )
            part.upload_error = UploadError.FAILED_WRITE
            return UploadError.FAILED_WRITE

        self.quota.make_room(part.body_length)

        try:
            part.stored_path = self._write_file(part.body)
        except FileError:
            part.upload_error = UploadError.FAILED_WRITE
        else:
            self.logger.info("File %r uploaded to %r", part.file_name, part.stored_path)
            part.upload_error = UploadError.OK
        return UploadError(part.upload_error)

    def _write_file(self, body: bytes) -> bytes:
        try:
            fd, path = self.directory.create_file()
        except OSError:
            self.logger.exception("Error creating upload file in %s", self.directory.path)
            raise FileError("Error creating upload file in %r" % self.directory.path)

        try:
            with os.fdopen(fd, "wb", buffering=0) as f:
                written = f.write(body)
        except OSError:
            self.logger.exception("Error writing upload file %s", path)
            raise FileError("Error writing upload file %r" % path)

        if written != len(body):
            self.logger.error("Short write to upload file %s (%r != %d)", path, written, len(body))
            raise FileError("Short write to upload file %r" % path)

        return os.fsencode(path)

    def __repr__(self) -> str:
        return "%s(directory=%r, quota=%r, max_file_size=%r)" % (
            self.__class__.__name__,
            self.directory,
            self.quota,
            self.max_file_size,
        )
