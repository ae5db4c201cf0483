#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Local collaborators for blobcopy
================================

Concrete implementations of the interfaces the copy pipeline talks to, so
blobs can be copied between local files and an OCI image-layout directory:

- DirectoryBlobSink: destination storing ``blobs/<algorithm>/<hex>``
- FileBlobSource: source blob backed by a local file
- MemoryBlobInfoCache: in-memory record of digest relationships
- DiffIDCalculator: side-copy consumer computing a layer's diff ID

Example:
    >>> from blobcopy import BlobCopier, CopyOptions
    >>> from blob_layout import DirectoryBlobSink, FileBlobSource, DiffIDCalculator
    >>>
    >>> sink = DirectoryBlobSink("./oci-dir", desired_compression=LayerCompression.COMPRESS)
    >>> diff_ids = DiffIDCalculator()
    >>> with FileBlobSource("layer.tar", media_type=MEDIA_TYPE_OCI_LAYER) as source:
    ...     result = BlobCopier(sink).copy_blob_from_stream(
    ...         source.reader, source.info, diff_ids.writer, can_modify_blob=True)
    >>> print(result.digest, diff_ids.finish())
"""

from __future__ import annotations

import os
import json
import queue
import hashlib
import tempfile
import threading
from typing import Any, BinaryIO, Dict, Optional

from blobcopy import (
    BlobInfo,
    BlobReader,
    Config,
    DataIntegrityError,
    DecompressorFunc,
    FileIOError,
    LayerCompression,
    PutBlobOptions,
    UploadedBlobInfo,
    ValidationError,
    logger,
    validate_digest,
)

__all__ = [
    'DirectoryBlobSink',
    'FileBlobSource',
    'MemoryBlobInfoCache',
    'DiffIDCalculator',
    'OCI_LAYOUT_FILE',
    'OCI_LAYOUT_VERSION',
]

OCI_LAYOUT_FILE = "oci-layout"
OCI_LAYOUT_VERSION = "1.0.0"


# ============================================================================
# DESTINATION - OCI image-layout directory
# ============================================================================

class DirectoryBlobSink:
    """
    Destination storing blobs in an OCI image-layout directory.

    Input is streamed into a temporary file under ``blobs/`` while being
    hashed, checked against the declared digest and size, then renamed into
    place, so a partially written blob is never visible under its digest.

    When the declared digest is already stored the sink does not read the
    stream at all and reports the existing blob.

    Args:
        root: Layout directory (created if missing)
        desired_compression: What this destination wants done with layers
        reuse_existing: Short-circuit uploads of blobs already present
    """

    def __init__(
        self,
        root: str,
        desired_compression: LayerCompression = LayerCompression.PRESERVE_ORIGINAL,
        reuse_existing: bool = True,
    ) -> None:
        self.root = root
        self._desired_compression = desired_compression
        self._reuse_existing = reuse_existing
        self._blobs_dir = os.path.join(root, "blobs")
        try:
            os.makedirs(self._blobs_dir, exist_ok=True)
            layout_path = os.path.join(root, OCI_LAYOUT_FILE)
            if not os.path.exists(layout_path):
                with open(layout_path, "w", encoding="utf-8") as f:
                    json.dump({"imageLayoutVersion": OCI_LAYOUT_VERSION}, f)
        except OSError as e:
            raise FileIOError(f"Cannot initialize image layout at {root}: {e}") from e

    def desired_layer_compression(self) -> LayerCompression:
        return self._desired_compression

    def blob_path(self, digest: str) -> str:
        algorithm, encoded = validate_digest(digest)
        return os.path.join(self._blobs_dir, algorithm, encoded)

    def has_blob(self, digest: str) -> bool:
        return os.path.isfile(self.blob_path(digest))

    def put_blob_with_options(
        self,
        reader: BlobReader,
        info: BlobInfo,
        options: PutBlobOptions,
    ) -> UploadedBlobInfo:
        """
        Store the blob read from `reader`.

        Raises:
            DataIntegrityError: If the stored bytes don't match info.digest or info.size
            FileIOError: If the layout directory can't be written
        """
        if self._reuse_existing and info.digest and self.has_blob(info.digest):
            path = self.blob_path(info.digest)
            logger.debug("Blob %s already present in %s, skipping upload", info.digest, self.root)
            return UploadedBlobInfo(digest=info.digest, size=os.path.getsize(path))

        if info.digest:
            algorithm, _ = validate_digest(info.digest)
        else:
            algorithm = Config.CANONICAL_DIGEST_ALGORITHM
        hasher = hashlib.new(algorithm)
        size = 0

        try:
            fd, tmp_path = tempfile.mkstemp(dir=self._blobs_dir, prefix=".tmp-blob-")
        except OSError as e:
            raise FileIOError(f"Cannot create temporary blob in {self._blobs_dir}: {e}") from e

        committed = False
        try:
            with os.fdopen(fd, "wb") as f:
                while True:
                    chunk = reader.read(Config.CHUNK_SIZE_STREAMING)
                    if not chunk:
                        break
                    hasher.update(chunk)
                    f.write(chunk)
                    size += len(chunk)

            computed = f"{algorithm}:{hasher.hexdigest()}"
            if info.digest and computed != info.digest:
                raise DataIntegrityError(f"Digest mismatch: expected {info.digest}, computed {computed}")
            if info.size != -1 and size != info.size:
                raise DataIntegrityError(f"Size mismatch for {computed}: expected {info.size}, got {size}")

            final_path = self.blob_path(computed)
            os.makedirs(os.path.dirname(final_path), exist_ok=True)
            os.replace(tmp_path, final_path)
            committed = True
        except OSError as e:
            raise FileIOError(f"Cannot store blob in {self.root}: {e}") from e
        finally:
            if not committed and os.path.exists(tmp_path):
                os.unlink(tmp_path)

        logger.debug(
            "Stored blob %s (%d bytes, layer index %s)",
            computed, size, options.layer_index,
        )
        return UploadedBlobInfo(digest=computed, size=size)


# ============================================================================
# SOURCE - Local file
# ============================================================================

class FileBlobSource:
    """
    Blob source backed by a local file.

    Example:
        >>> with FileBlobSource("layer.tar.gz", digest="sha256:...") as source:
        ...     data = source.reader.read(4096)
    """

    def __init__(self, path: str, digest: str = "", media_type: str = "") -> None:
        self.path = path
        try:
            size = os.path.getsize(path)
        except OSError as e:
            raise FileIOError(f"Cannot access {path}: {e}") from e
        self.info = BlobInfo(digest=digest, size=size, media_type=media_type)
        self._file: Optional[BinaryIO] = None

    @property
    def reader(self) -> BinaryIO:
        if self._file is None:
            try:
                self._file = open(self.path, "rb")
            except OSError as e:
                raise FileIOError(f"Cannot open {self.path}: {e}") from e
        return self._file

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> FileBlobSource:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


# ============================================================================
# BLOB INFO CACHE - In-memory digest relationships
# ============================================================================

class MemoryBlobInfoCache:
    """Blob info cache kept in process memory."""

    def __init__(self) -> None:
        self._uncompressed: Dict[str, str] = {}
        self._compressors: Dict[str, str] = {}
        self._lock = threading.Lock()

    def record_digest_uncompressed_pair(self, any_digest: str, uncompressed: str) -> None:
        with self._lock:
            previous = self._uncompressed.get(any_digest)
            if previous is not None and previous != uncompressed:
                logger.warning(
                    "Uncompressed digest for blob %s previously recorded as %s, now %s",
                    any_digest, previous, uncompressed,
                )
            self._uncompressed[any_digest] = uncompressed

    def record_digest_compressor_name(self, blob_digest: str, compressor_name: str) -> None:
        with self._lock:
            self._compressors[blob_digest] = compressor_name

    def uncompressed_digest(self, any_digest: str) -> Optional[str]:
        """
        Return the uncompressed digest for `any_digest`, if known.

        A digest that is itself recorded as somebody's uncompressed form is
        returned unchanged.
        """
        with self._lock:
            if any_digest in self._uncompressed:
                return self._uncompressed[any_digest]
            if any_digest in self._uncompressed.values():
                return any_digest
            return None

    def compressor_name(self, blob_digest: str) -> Optional[str]:
        with self._lock:
            return self._compressors.get(blob_digest)


# ============================================================================
# DIFF ID CALCULATOR - Side-copy consumer
# ============================================================================

class _QueueReader:
    """Blocking reader over chunks pushed by the writer side; None marks EOF."""

    def __init__(self, chunks: queue.Queue) -> None:
        self._chunks = chunks
        self._buffer = b""
        self._eof = False

    def read(self, size: Optional[int] = -1) -> bytes:
        if size is None:
            size = -1
        if size < 0:
            while not self._eof:
                self._pull()
            data, self._buffer = self._buffer, b""
            return data
        while not self._buffer and not self._eof:
            self._pull()
        data, self._buffer = self._buffer[:size], self._buffer[size:]
        return data

    def readable(self) -> bool:
        return True

    def discard(self) -> None:
        while not self._eof:
            self._pull()
        self._buffer = b""

    def _pull(self) -> None:
        chunk = self._chunks.get()
        if chunk is None:
            self._eof = True
        else:
            self._buffer += chunk


class DiffIDCalculator:
    """
    Compute the digest of a layer's uncompressed contents while it is copied.

    Pass ``calculator.writer`` as the copier's side-copy callback: it receives
    the detected decompressor and returns a writer. Written bytes are handed
    to a worker thread that decompresses and hashes them. At most
    Config.SIDE_COPY_QUEUE_DEPTH chunks wait for the worker; beyond that
    write() blocks, so the copy slows down instead of buffering the blob.

    Example:
        >>> calc = DiffIDCalculator()
        >>> copier.copy_blob_from_stream(reader, info, calc.writer, can_modify_blob=True)
        >>> calc.finish()
        'sha256:...'
    """

    def __init__(self, algorithm: Optional[str] = None) -> None:
        self.algorithm = algorithm or Config.CANONICAL_DIGEST_ALGORITHM
        self._chunks: queue.Queue = queue.Queue(maxsize=Config.SIDE_COPY_QUEUE_DEPTH)
        self._thread: Optional[threading.Thread] = None
        self._closed = False
        self._digest: Optional[str] = None
        self._error: Optional[BaseException] = None

    def writer(self, decompressor: Optional[DecompressorFunc]) -> DiffIDCalculator:
        """Start the worker and return the object receiving the original bytes."""
        if self._thread is not None:
            raise ValidationError("diff ID writer was already requested")
        self._thread = threading.Thread(
            target=self._run,
            args=(decompressor,),
            name="blobcopy-diffid",
            daemon=True,
        )
        self._thread.start()
        return self

    def write(self, data: bytes) -> int:
        if self._closed:
            raise ValidationError("write to a finished diff ID calculator")
        self._chunks.put(bytes(data))
        return len(data)

    def _run(self, decompressor: Optional[DecompressorFunc]) -> None:
        source = _QueueReader(self._chunks)
        hasher = hashlib.new(self.algorithm)
        try:
            reader = decompressor(source) if decompressor is not None else source
            try:
                while chunk := reader.read(Config.CHUNK_SIZE_STREAMING):
                    hasher.update(chunk)
            finally:
                if reader is not source:
                    reader.close()
            self._digest = f"{self.algorithm}:{hasher.hexdigest()}"
        except Exception as e:
            # Reported by finish()
            self._error = e
        finally:
            source.discard()

    def close(self) -> None:
        """Signal end of input and wait for the worker."""
        if self._closed:
            return
        self._closed = True
        self._chunks.put(None)
        if self._thread is not None:
            self._thread.join()

    def finish(self) -> str:
        """
        Close the input and return the diff ID.

        Raises:
            ValidationError: If writer() was never called
            DataIntegrityError: If the layer could not be decompressed
        """
        if self._thread is None:
            raise ValidationError("diff ID writer was never requested")
        self.close()
        if self._error is not None:
            raise DataIntegrityError(f"Computing diff ID: {self._error}") from self._error
        if self._digest is None:
            raise DataIntegrityError("Computing diff ID: worker produced no digest")
        return self._digest
