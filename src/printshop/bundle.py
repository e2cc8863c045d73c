"""
Streamed zip archives of a product's uploaded files.

The archive is produced on the fly: each stored object is read chunk by
chunk into a deflated entry, and every chunk of compressed output is handed
to the caller as soon as it exists. Nothing is spooled to disk and memory
stays bounded by the chunk size regardless of how large the folder is.
"""

import io
import zipfile
from dataclasses import dataclass
from datetime import timezone
from typing import Iterator

import structlog
from botocore.exceptions import BotoCoreError

from .errors import BundleStreamError, EmptyFolderError, ForbiddenError, NotAuthenticatedError, StorageError
from .models import Identity
from .object_store import DEFAULT_CHUNK_SIZE, ObjectStore, StoredObject, normalize_folder
from .orders import OrderStateMachine

logger = structlog.get_logger(__name__)

ZIP_CONTENT_TYPE = "application/zip"

# Earliest timestamp a zip entry can hold
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


class _ChunkSink(io.RawIOBase):
    """
    Write-only, unseekable buffer that zipfile writes into.

    Because ``tell()`` and ``seek()`` are unsupported, zipfile falls back to
    data descriptors after each entry instead of patching local headers.
    """

    def __init__(self):
        super().__init__()
        self._buffer = bytearray()
        self.written = 0

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        self._buffer += data
        self.written += len(data)
        return len(data)

    def drain(self) -> bytes:
        """Return and forget everything written since the last drain."""
        data = bytes(self._buffer)
        self._buffer.clear()
        return data


@dataclass
class Bundle:
    """A ready-to-send archive; ``chunks`` yields its bytes in order."""

    filename: str
    chunks: Iterator[bytes]
    entries: int = 0
    content_type: str = ZIP_CONTENT_TYPE


def entry_timestamp(obj: StoredObject) -> tuple[int, int, int, int, int, int]:
    """UTC last-modified time of a stored object, as zip entry date_time."""
    stamp = obj.last_modified
    if stamp is None:
        return ZIP_EPOCH
    if stamp.tzinfo is not None:
        stamp = stamp.astimezone(timezone.utc)
    if stamp.year < ZIP_EPOCH[0]:
        return ZIP_EPOCH
    return stamp.timetuple()[:6]


def bundle_filename(folder: str) -> str:
    """``products/prd00001/`` -> ``prd00001.zip``."""
    segments = [s for s in folder.split("/") if s]
    return f"{segments[-1] if segments else 'bundle'}.zip"


class BundleBuilder:
    """Builds downloadable archives for staff and the owning customer."""

    def __init__(
        self,
        orders: OrderStateMachine,
        store: ObjectStore,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.orders = orders
        self.store = store
        self.chunk_size = chunk_size

    def open_bundle(self, identity: Identity | None, folder_path: str) -> Bundle:
        """
        Prepare a streamed archive of every file under a product folder.

        All checks run here, before the first byte is produced, so callers
        can still answer with a plain error status.

        Raises:
            NotAuthenticatedError: If no identity is available.
            FolderNotFoundError: If no product references the folder.
            ForbiddenError: If the caller is neither staff nor the owner.
            EmptyFolderError: If the folder holds no stored files.
        """
        if identity is None or not identity.email:
            raise NotAuthenticatedError()

        folder = normalize_folder(folder_path)
        product, order = self.orders.resolve_folder(folder)
        if not identity.can_access(order.email):
            logger.warning("bundle_access_denied", folder=folder, email=identity.email)
            raise ForbiddenError(f"folder {folder}", identity.email)

        objects = [
            obj
            for obj in self.store.list_objects(folder)
            if not obj.key.endswith("/") and obj.key != folder
        ]
        if not objects:
            raise EmptyFolderError(folder)

        logger.info(
            "bundle_opened",
            folder=folder,
            product_id=product.product_id,
            files=len(objects),
            by=identity.email,
        )
        return Bundle(
            filename=bundle_filename(folder),
            chunks=self._stream(folder, objects),
            entries=len(objects),
        )

    def _stream(self, folder: str, objects: list[StoredObject]) -> Iterator[bytes]:
        sink = _ChunkSink()
        archive = zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED)
        for obj in objects:
            yield from self._copy_entry(archive, sink, folder, obj)

        # Central directory goes out only once every entry is complete
        archive.close()
        tail = sink.drain()
        if tail:
            yield tail
        logger.info("bundle_streamed", folder=folder, files=len(objects), bytes=sink.written)

    def _copy_entry(
        self,
        archive: zipfile.ZipFile,
        sink: _ChunkSink,
        folder: str,
        obj: StoredObject,
    ) -> Iterator[bytes]:
        info = zipfile.ZipInfo(obj.key[len(folder):], date_time=entry_timestamp(obj))
        info.compress_type = zipfile.ZIP_DEFLATED
        info.external_attr = 0o644 << 16
        # Lets zipfile pick zip64 headers up front for very large files
        info.file_size = obj.size

        try:
            stream = self.store.open_object(obj.key)
        except StorageError as e:
            logger.error("bundle_open_failed", folder=folder, key=obj.key, error=str(e))
            raise BundleStreamError(folder, obj.key, e.reason) from e

        try:
            with archive.open(info, mode="w") as entry:
                for chunk in stream.iter_chunks(self.chunk_size):
                    entry.write(chunk)
                    data = sink.drain()
                    if data:
                        yield data
            data = sink.drain()
            if data:
                yield data
        except (StorageError, BotoCoreError, OSError) as e:
            logger.error("bundle_read_failed", folder=folder, key=obj.key, error=str(e))
            raise BundleStreamError(folder, obj.key, type(e).__name__) from e
        finally:
            stream.close()
