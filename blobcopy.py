#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
blobcopy: Streaming Blob Copy Pipeline for Container Images
===========================================================

Copies a single content-addressed blob (an image layer or config object)
from a source stream into a destination sink in one pass, while verifying
its digest, detecting and optionally changing its compression, decrypting
or encrypting it, mirroring the original bytes to a side consumer and
reporting progress. The blob is never fully buffered in memory.

Quick Start:
-----------
    >>> from blobcopy import BlobCopier, BlobInfo, CopyOptions, GZIP
    >>>
    >>> copier = BlobCopier(dest, CopyOptions(compression_format=GZIP))
    >>> src_info = BlobInfo(digest="sha256:...", size=1024,
    ...                     media_type=MEDIA_TYPE_OCI_LAYER)
    >>> result = copier.copy_blob_from_stream(reader, src_info, can_modify_blob=True)
    >>> print(result.digest, result.compression_operation)

Pipeline (fixed stage order):
----------------------------
    source
      -> DigestingReader        verify the declared digest
      -> BarProxyReader         visual progress (raw bytes)
      -> decryption step        only for encrypted sources
      -> compression detection  peek at magic bytes, replay them
      -> TeeReader              side copy of the original bytes
      -> compression step       compress / decompress / recompress / preserve
      -> encryption step        only when requested
      -> ProgressReader         rate-limited progress events
      -> ErrorAnnotationReader  attribute read errors to the input
      -> destination sink

Compression Support:
-------------------
    gzip   compress + decompress (zlib)
    zstd   compress + decompress (zstandard)
    lz4    compress + decompress (lz4.frame)
    bzip2  decompress only
    xz     decompress only

CLI Usage:
---------
    $ blobcopy copy layer.tar ./oci-dir --compress zstd --diff-id
    $ blobcopy copy layer.tar.gz ./oci-dir --digest sha256:... --decompress
    $ blobcopy copy config.json ./oci-dir --config
    $ blobcopy --help

License: GPLv3+
"""

from __future__ import annotations

__version__ = "1.0.0"
__license__ = "GPL-3.0-or-later"

# Public API exports
__all__ = [
    # Orchestrator
    'BlobCopier',
    'CopyOptions',
    'reconcile_blob_info',

    # Data structures
    'BlobInfo',
    'UploadedBlobInfo',
    'PutBlobOptions',
    'SourceStream',
    'ProgressProperties',
    'CompressionAlgorithm',
    'DetectedCompression',
    'CompressionStep',
    'CompressionEdit',
    'DecryptionStep',
    'EncryptionStep',
    'CryptoEdit',

    # Enums
    'CompressionOperation',
    'LayerCompression',
    'LayerCrypto',
    'ProgressEvent',

    # Collaborator protocols
    'BlobReader',
    'BlobWriter',
    'BlobDestination',
    'BlobInfoCache',
    'ProgressBar',
    'ProgressChannel',
    'Encrypter',
    'Decrypter',

    # Stream stages
    'BlobStreamReader',
    'DigestingReader',
    'BarProxyReader',
    'PrefixedReader',
    'TeeReader',
    'CompressingReader',
    'ProgressReader',
    'ErrorAnnotationReader',

    # Compression
    'CompressionRegistry',
    'GZIP',
    'BZIP2',
    'XZ',
    'ZSTD',
    'LZ4',
    'detect_compression_format',
    'can_change_layer_compression',

    # Exceptions
    'BlobCopyError',
    'ValidationError',
    'DigestFormatError',
    'PolicyConflictError',
    'SourceReadError',
    'SinkWriteError',
    'FileIOError',
    'CryptoError',
    'ReconciliationError',
    'InternalCopyError',
    'DrainError',
    'DataIntegrityError',

    # Configuration
    'Config',
    'Colors',

    # Digest helpers
    'validate_digest',
    'compute_digest',
    'is_oci_encrypted',

    # Media types and constants
    'MEDIA_TYPE_OCI_CONFIG',
    'MEDIA_TYPE_OCI_LAYER',
    'MEDIA_TYPE_OCI_LAYER_GZIP',
    'MEDIA_TYPE_OCI_LAYER_ZSTD',
    'MEDIA_TYPE_DOCKER_CONFIG',
    'MEDIA_TYPE_DOCKER_LAYER',
    'ENCRYPTED_MEDIA_TYPE_SUFFIX',
    'ENCRYPTION_ANNOTATION_PREFIX',
    'UNCOMPRESSED',
    'UNKNOWN_COMPRESSION',

    # CLI
    'TextProgressBar',
    'format_size',
    'create_parser',
    'main',
]

import os
import sys
import bz2
import gzip
import lzma
import time
import zlib
import hashlib
import logging
import argparse
from contextlib import ExitStack
from dataclasses import dataclass, field, replace
from enum import Enum
from abc import ABC, abstractmethod
from typing import (
    Any, Callable, ClassVar, Dict, List, Optional, Protocol, Sequence, TextIO, Tuple, cast
)

# Compression backends beyond the standard library
import lz4.frame  # type: ignore[import]
import zstandard  # type: ignore[import]

# Normalize untyped third-party modules to `Any` so strict type-checkers
# don't treat member access as Unknown.
_lz4_frame: Any = cast(Any, lz4.frame)
_zstandard: Any = cast(Any, zstandard)


# ============================================================================
# MEDIA TYPES AND CONSTANTS - OCI image-spec / Docker schema2 values
# ============================================================================

MEDIA_TYPE_OCI_CONFIG = "application/vnd.oci.image.config.v1+json"
MEDIA_TYPE_OCI_LAYER = "application/vnd.oci.image.layer.v1.tar"
MEDIA_TYPE_OCI_LAYER_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"
MEDIA_TYPE_OCI_LAYER_ZSTD = "application/vnd.oci.image.layer.v1.tar+zstd"
MEDIA_TYPE_OCI_NONDISTRIBUTABLE_LAYER = "application/vnd.oci.image.layer.nondistributable.v1.tar"
MEDIA_TYPE_OCI_NONDISTRIBUTABLE_LAYER_GZIP = "application/vnd.oci.image.layer.nondistributable.v1.tar+gzip"
MEDIA_TYPE_OCI_NONDISTRIBUTABLE_LAYER_ZSTD = "application/vnd.oci.image.layer.nondistributable.v1.tar+zstd"
MEDIA_TYPE_DOCKER_CONFIG = "application/vnd.docker.container.image.v1+json"
MEDIA_TYPE_DOCKER_LAYER = "application/vnd.docker.image.rootfs.diff.tar.gzip"
MEDIA_TYPE_DOCKER_FOREIGN_LAYER = "application/vnd.docker.image.rootfs.foreign.diff.tar.gzip"

# Layer media types whose compression may be changed while copying.
# An empty media type (unknown, e.g. docker schema1) is also allowed.
_COMPRESSION_CHANGEABLE_MEDIA_TYPES = frozenset({
    MEDIA_TYPE_OCI_LAYER,
    MEDIA_TYPE_OCI_LAYER_GZIP,
    MEDIA_TYPE_OCI_LAYER_ZSTD,
    MEDIA_TYPE_OCI_NONDISTRIBUTABLE_LAYER,
    MEDIA_TYPE_OCI_NONDISTRIBUTABLE_LAYER_GZIP,
    MEDIA_TYPE_OCI_NONDISTRIBUTABLE_LAYER_ZSTD,
    MEDIA_TYPE_DOCKER_LAYER,
    MEDIA_TYPE_DOCKER_FOREIGN_LAYER,
})

# ocicrypt conventions
ENCRYPTED_MEDIA_TYPE_SUFFIX = "+encrypted"
ENCRYPTION_ANNOTATION_PREFIX = "org.opencontainers.image.enc"

# Compressor names recorded in the blob info cache
UNCOMPRESSED = "uncompressed"
UNKNOWN_COMPRESSION = "unknown"

# Supported digest algorithms and the length of their hex encoding
DIGEST_HEX_LENGTHS: Dict[str, int] = {
    "sha256": 64,
    "sha384": 96,
    "sha512": 128,
}
_HEX_DIGITS = frozenset("0123456789abcdef")


# ============================================================================
# GLOBAL CONFIGURATION - Performance and behavior tuning
# ============================================================================

class Config:
    """
    Global configuration for blobcopy behavior.

    Per-copy choices (compression target, crypto, progress channel) live in
    CopyOptions; this class only holds process-wide tuning knobs.

    Attributes:
        CHUNK_SIZE_STREAMING (int): Bytes pulled per read by internal copy loops
        CANONICAL_DIGEST_ALGORITHM (str): Digest algorithm used when none is declared
        SIDE_COPY_QUEUE_DEPTH (int): Chunks buffered ahead of a side-copy worker
        DEFAULT_PROGRESS_INTERVAL (float): Seconds between progress events
        ENABLE_PROGRESS (bool): Render CLI progress bars
        USE_COLORS (bool): Enable colored terminal output (auto-detected)
        VERBOSE_LOGGING (bool): Enable verbose logging output

    Example:
        >>> Config.CHUNK_SIZE_STREAMING = 1024 * 1024
        >>> Config.reset_defaults()
    """
    # Streaming
    CHUNK_SIZE_STREAMING: ClassVar[int] = 32 * 1024
    CANONICAL_DIGEST_ALGORITHM: ClassVar[str] = "sha256"
    SIDE_COPY_QUEUE_DEPTH: ClassVar[int] = 64

    # Progress
    DEFAULT_PROGRESS_INTERVAL: ClassVar[float] = 1.0
    ENABLE_PROGRESS: ClassVar[bool] = True

    # UI settings
    USE_COLORS: ClassVar[bool] = True
    VERBOSE_LOGGING: ClassVar[bool] = False

    @classmethod
    def reset_defaults(cls) -> None:
        """Reset all configuration to default values."""
        defaults: Dict[str, object] = {
            "CHUNK_SIZE_STREAMING": 32 * 1024,
            "CANONICAL_DIGEST_ALGORITHM": "sha256",
            "SIDE_COPY_QUEUE_DEPTH": 64,
            "DEFAULT_PROGRESS_INTERVAL": 1.0,
            "ENABLE_PROGRESS": True,
            "USE_COLORS": True,
            "VERBOSE_LOGGING": False,
        }
        for name, value in defaults.items():
            setattr(cls, name, value)


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

_default_log_level = logging.INFO if Config.VERBOSE_LOGGING else logging.WARNING
logging.basicConfig(
    level=_default_log_level,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('blobcopy')
logger.setLevel(_default_log_level)


# ============================================================================
# TERMINAL COLORS - CLI output helpers
# ============================================================================

class Colors:
    """
    ANSI color helpers for terminal output.

    Disabled on non-TTY streams or when Config.USE_COLORS is False, so that
    piped output stays clean.
    """
    _RESET = '\033[0m'
    _BOLD = '\033[1m'
    _DIM = '\033[2m'
    _RED = '\033[91m'
    _GREEN = '\033[92m'
    _YELLOW = '\033[93m'
    _BLUE = '\033[94m'

    @classmethod
    def _is_enabled(cls) -> bool:
        if not Config.USE_COLORS:
            return False
        return hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()

    @classmethod
    def success(cls, text: str) -> str:
        """Format text as success (green with checkmark)."""
        if cls._is_enabled():
            return f"{cls._GREEN}✓{cls._RESET} {text}"
        return f"[OK] {text}"

    @classmethod
    def error(cls, text: str) -> str:
        """Format text as error (red with X)."""
        if cls._is_enabled():
            return f"{cls._RED}✗{cls._RESET} {text}"
        return f"[ERROR] {text}"

    @classmethod
    def warning(cls, text: str) -> str:
        """Format text as warning (yellow with !)."""
        if cls._is_enabled():
            return f"{cls._YELLOW}⚠{cls._RESET} {text}"
        return f"[WARN] {text}"

    @classmethod
    def info(cls, text: str) -> str:
        """Format text as info (blue with i)."""
        if cls._is_enabled():
            return f"{cls._BLUE}ℹ{cls._RESET} {text}"
        return f"[INFO] {text}"

    @classmethod
    def bold(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._BOLD}{text}{cls._RESET}"
        return text

    @classmethod
    def dim(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._DIM}{text}{cls._RESET}"
        return text


# ============================================================================
# CUSTOM EXCEPTIONS - Hierarchical exception system
# ============================================================================

class BlobCopyError(Exception):
    """
    Base exception for all blobcopy errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code, also used as the CLI exit status

    Example:
        >>> raise BlobCopyError("Operation failed", code=1)
    """
    def __init__(self, message: str, code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return self.message


class ValidationError(BlobCopyError):
    """
    Raised when caller input is invalid.

    For example an unknown compression name, or a compression target that
    can only be decompressed.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=2)


class DigestFormatError(ValidationError):
    """
    Raised when an expected digest is malformed.

    Always raised before any byte is read from the source.
    """


class PolicyConflictError(BlobCopyError):
    """
    Raised when the requested crypto operations cannot be combined.

    A copy records a single crypto operation, so decrypting the source and
    encrypting for the destination in the same copy is rejected up front.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=3)


class SourceReadError(BlobCopyError):
    """
    Raised when reading the input stream fails.

    The error is raised inside the sink's write loop but belongs to the
    source side; ErrorAnnotationReader attaches this type so callers can tell
    the two apart.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=4)


class SinkWriteError(BlobCopyError):
    """Raised when the destination sink fails to store the blob."""
    def __init__(self, message: str) -> None:
        super().__init__(message, code=5)


class FileIOError(BlobCopyError):
    """
    Raised for file I/O errors.

    This wraps OS-level file errors with blob-specific context.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=6)


class CryptoError(BlobCopyError):
    """Raised when a decryption or encryption stage cannot be set up."""
    def __init__(self, message: str) -> None:
        super().__init__(message, code=7)


class ReconciliationError(BlobCopyError):
    """
    Raised when result metadata cannot be completed after a successful write.

    The destination already holds the bytes, but the descriptor returned to
    the caller would be incomplete. Callers must treat the destination state
    as uncertain.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=8)


class InternalCopyError(BlobCopyError):
    """
    Raised when the destination sink violated its contract.

    Either the digest verifier flagged a mismatch that the sink ignored, or
    the sink stored a layer under a different digest than the one it was
    given. Both indicate a sink bug and are never ignored.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=9)


class DrainError(BlobCopyError):
    """Raised when draining the side-copy tee after the write fails."""
    def __init__(self, message: str) -> None:
        super().__init__(message, code=10)


class DataIntegrityError(BlobCopyError):
    """
    Raised when content verification fails.

    Sinks that hash what they store raise this when the computed digest or
    size differs from what was declared.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=11)


# ============================================================================
# ENUMS - Operations and policies
# ============================================================================

class CompressionOperation(Enum):
    """Compression change applied while streaming a blob."""
    PRESERVE_ORIGINAL = "preserve-original"
    COMPRESS = "compress"
    DECOMPRESS = "decompress"
    RECOMPRESS = "recompress"  # algorithm change


class LayerCompression(Enum):
    """What a destination wants done with layer compression."""
    PRESERVE_ORIGINAL = "preserve-original"
    COMPRESS = "compress"
    DECOMPRESS = "decompress"


class LayerCrypto(Enum):
    """Crypto operation applied while streaming a blob."""
    PRESERVE_ORIGINAL = "preserve-original"
    ENCRYPT = "encrypt"
    DECRYPT = "decrypt"


class ProgressEvent(Enum):
    NEW_ARTIFACT = "new-artifact"
    READ = "read"
    DONE = "done"


# ============================================================================
# COLLABORATOR PROTOCOLS - Interfaces at the pipeline boundary
# ============================================================================

class BlobReader(Protocol):
    """Anything with a file-like read(); b"" means end of stream."""
    def read(self, size: int = -1) -> bytes: ...


class BlobWriter(Protocol):
    def write(self, data: bytes) -> Any: ...


class ProgressBar(Protocol):
    """Visual progress counter; common progress-bar objects satisfy this."""
    def update(self, n: int) -> Any: ...


class ProgressChannel(Protocol):
    """Notification channel for progress events, e.g. queue.Queue."""
    def put(self, item: ProgressProperties) -> Any: ...


class BlobInfoCache(Protocol):
    """Records relationships between digests learned while copying."""

    def record_digest_uncompressed_pair(self, any_digest: str, uncompressed: str) -> None:
        """Record that `uncompressed` is the uncompressed form of `any_digest`."""
        ...

    def record_digest_compressor_name(self, blob_digest: str, compressor_name: str) -> None:
        """Record the compressor used for `blob_digest` (or UNCOMPRESSED)."""
        ...


class BlobDestination(Protocol):
    """
    Destination sink protocol.

    Implementations persist the bytes read from `reader` and report what was
    stored. A sink may stop reading early when it already holds the blob.
    """

    def desired_layer_compression(self) -> LayerCompression:
        """Return what the destination wants done with layer compression."""
        ...

    def put_blob_with_options(
        self,
        reader: BlobReader,
        info: BlobInfo,
        options: PutBlobOptions,
    ) -> UploadedBlobInfo:
        """Store the blob and return the digest and size actually stored."""
        ...


class Decrypter(Protocol):
    def decrypt_layer(self, reader: BlobReader, annotations: Dict[str, str]) -> BlobReader:
        """Return a reader of the plaintext, given the encryption annotations."""
        ...


EncryptionFinalizer = Callable[[], Dict[str, str]]


class Encrypter(Protocol):
    def encrypt_layer(
        self,
        reader: BlobReader,
        info: BlobInfo,
    ) -> Tuple[BlobReader, EncryptionFinalizer]:
        """
        Return a reader of the ciphertext and a finalizer.

        The finalizer is called after the ciphertext has been fully written and
        returns the annotations describing the encryption.
        """
        ...


DecompressorFunc = Callable[[BlobReader], Any]
OriginalLayerCopyWriterFunc = Callable[[Optional[DecompressorFunc]], BlobWriter]


# ============================================================================
# DATA STRUCTURES - Blob metadata threaded through the pipeline
# ============================================================================

@dataclass(frozen=True)
class CompressionAlgorithm:
    """
    A compression format the pipeline can recognize.

    Attributes:
        name: Algorithm name recorded in results and caches
        prefix: Magic bytes identifying the format
        decompressor: Capability turning a compressed reader into a plain one
        compressor: Factory of streaming compressors (None if decompress-only)
        default_level: Level used when the caller does not choose one
    """
    name: str
    prefix: bytes
    decompressor: DecompressorFunc = field(compare=False, repr=False)
    compressor: Optional[Callable[[int], Any]] = field(default=None, compare=False, repr=False)
    default_level: int = 0

    @property
    def can_compress(self) -> bool:
        return self.compressor is not None

    def new_compressor(self, level: Optional[int] = None) -> Any:
        """Return a fresh compressor object with compress()/flush()."""
        if self.compressor is None:
            raise ValidationError(f"compression algorithm {self.name} cannot be used for compression")
        return self.compressor(self.default_level if level is None else level)


@dataclass
class BlobInfo:
    """
    Everything known about a blob.

    The pipeline works on copies and never mutates the caller's instance.
    `size` is -1 and `digest` is "" when unknown.
    """
    digest: str = ""
    size: int = -1
    media_type: str = ""
    annotations: Optional[Dict[str, str]] = None
    compression_operation: CompressionOperation = CompressionOperation.PRESERVE_ORIGINAL
    compression_algorithm: Optional[CompressionAlgorithm] = None
    crypto_operation: LayerCrypto = LayerCrypto.PRESERVE_ORIGINAL

    def copy(self) -> BlobInfo:
        """Return a copy that shares no mutable state with this one."""
        annotations = dict(self.annotations) if self.annotations is not None else None
        return replace(self, annotations=annotations)


@dataclass
class UploadedBlobInfo:
    """What the sink reports having stored."""
    digest: str
    size: int
    annotations: Optional[Dict[str, str]] = None


@dataclass
class PutBlobOptions:
    """Extra context handed to the sink together with the stream."""
    cache: Optional[BlobInfoCache] = None
    is_config: bool = False
    empty_layer: bool = False
    layer_index: Optional[int] = None  # None for config blobs


@dataclass
class SourceStream:
    """
    The bytes available now and what is known about them.

    Each pipeline step replaces `reader` and updates `info` so that `info`
    always describes exactly the bytes `reader` yields.
    """
    reader: BlobReader
    info: BlobInfo


@dataclass
class ProgressProperties:
    """One progress notification."""
    event: ProgressEvent
    artifact: BlobInfo
    offset: int = 0
    offset_update: int = 0


# ============================================================================
# UTILITY FUNCTIONS - Formatting and digest helpers
# ============================================================================

def format_size(size: int) -> str:
    """
    Format byte size in human-readable format.

    Example:
        >>> format_size(1234567890)
        '1.15 GB'
    """
    value = float(size)
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if abs(value) < 1024.0:
            return f"{value:.2f} {unit}" if unit != 'B' else f"{size} {unit}"
        value = value / 1024.0
    return f"{value:.2f} PB"


def validate_digest(digest: str) -> Tuple[str, str]:
    """
    Validate an ``algorithm:hex`` digest string.

    Args:
        digest: The digest to validate

    Returns:
        (algorithm, hex encoding)

    Raises:
        DigestFormatError: If the digest is malformed or uses an unsupported algorithm

    Example:
        >>> validate_digest("sha256:" + "0" * 64)
        ('sha256', '000...')
        >>> validate_digest("sha256:deadbeef")  # Raises DigestFormatError
    """
    algorithm, sep, encoded = digest.partition(":")
    if not sep or not algorithm or not encoded:
        raise DigestFormatError(f"invalid digest format {digest!r}")
    expected_length = DIGEST_HEX_LENGTHS.get(algorithm)
    if expected_length is None:
        raise DigestFormatError(f"unsupported digest algorithm {algorithm!r} in {digest!r}")
    if len(encoded) != expected_length or not set(encoded) <= _HEX_DIGITS:
        raise DigestFormatError(
            f"invalid {algorithm} digest encoding in {digest!r}, "
            f"expected {expected_length} lowercase hex characters"
        )
    return algorithm, encoded


def compute_digest(data: bytes, algorithm: Optional[str] = None) -> str:
    """Return the ``algorithm:hex`` digest of in-memory data."""
    algorithm = algorithm or Config.CANONICAL_DIGEST_ALGORITHM
    return f"{algorithm}:{hashlib.new(algorithm, data).hexdigest()}"


def is_oci_encrypted(media_type: str) -> bool:
    return media_type.endswith(ENCRYPTED_MEDIA_TYPE_SUFFIX)


def can_change_layer_compression(media_type: str) -> bool:
    """
    Return whether a blob of this media type may be stored with a different
    compression than its source.

    Config objects and unknown artifact types must be preserved bit-for-bit.
    Encrypted layers qualify by their plaintext type; the compression step
    still preserves them as long as they stay encrypted.
    """
    if is_oci_encrypted(media_type):
        media_type = media_type[:-len(ENCRYPTED_MEDIA_TYPE_SUFFIX)]
    return media_type == "" or media_type in _COMPRESSION_CHANGEABLE_MEDIA_TYPES


# ============================================================================
# STREAM STAGES - Readers wrapping the previous stage
# ============================================================================

class BlobStreamReader(ABC):
    """
    Abstract base class for pipeline stages.

    Every stage wraps the previous stage's reader and exposes the file-like
    read() contract: read(size) returns at most `size` bytes, read(-1)
    returns everything left, and b"" signals end of stream.

    Example:
        >>> with TeeReader(source, side_writer) as stage:
        ...     while chunk := stage.read(4096):
        ...         process(chunk)
    """

    @abstractmethod
    def read(self, size: Optional[int] = -1) -> bytes:
        raise NotImplementedError

    def readable(self) -> bool:
        return True

    def close(self) -> None:
        """Release resources held by this stage (not by the wrapped reader)."""
        pass

    def __enter__(self) -> BlobStreamReader:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class DigestingReader(BlobStreamReader):
    """
    Hash bytes as they are read and compare with the expected digest at EOF.

    A mismatch does not raise from read(); it only sets `validation_failed`.
    The orchestrator turns that into an error once the whole pipeline has
    finished, because a sink that stops reading early (blob already present)
    must not be reported as corruption.

    Exactly one of `validation_succeeded` / `validation_failed` is set once
    end of stream is observed, and neither is set before that. Without an
    expected digest the stream is still hashed (see `actual_digest`) but no
    verdict is recorded.

    Raises:
        DigestFormatError: If `expected_digest` is malformed (at construction)
    """

    def __init__(self, source: BlobReader, expected_digest: str) -> None:
        if expected_digest:
            algorithm, _ = validate_digest(expected_digest)
        else:
            algorithm = Config.CANONICAL_DIGEST_ALGORITHM
        self._source = source
        self._expected_digest = expected_digest
        self._algorithm = algorithm
        self._hasher = hashlib.new(algorithm)
        self._at_eof = False
        self.actual_digest = ""
        self.validation_succeeded = False
        self.validation_failed = False

    @property
    def expected_digest(self) -> str:
        return self._expected_digest

    def read(self, size: Optional[int] = -1) -> bytes:
        if size is None:
            size = -1
        data = self._source.read(size)
        if data:
            self._hasher.update(data)
            if size < 0:
                self._finish()
        elif size != 0:
            self._finish()
        return data

    def _finish(self) -> None:
        if self._at_eof:
            return
        self._at_eof = True
        self.actual_digest = f"{self._algorithm}:{self._hasher.hexdigest()}"
        if not self._expected_digest:
            logger.debug("Computed digest %s for blob without declared digest", self.actual_digest)
            return
        if self.actual_digest == self._expected_digest:
            self.validation_succeeded = True
        else:
            logger.debug(
                "Digest did not match, expected %s, got %s",
                self._expected_digest, self.actual_digest,
            )
            self.validation_failed = True


class BarProxyReader(BlobStreamReader):
    """Report every read to a visual progress bar."""

    def __init__(self, source: BlobReader, bar: ProgressBar) -> None:
        self._source = source
        self._bar = bar

    def read(self, size: Optional[int] = -1) -> bytes:
        data = self._source.read(-1 if size is None else size)
        if data:
            self._bar.update(len(data))
        return data


class PrefixedReader(BlobStreamReader):
    """Replay bytes already taken from `source` before continuing with it."""

    def __init__(self, prefix: bytes, source: BlobReader) -> None:
        self._prefix = prefix
        self._source = source

    def read(self, size: Optional[int] = -1) -> bytes:
        if size is None or size < 0:
            head, self._prefix = self._prefix, b""
            return head + self._source.read(-1)
        if self._prefix:
            head, self._prefix = self._prefix[:size], self._prefix[size:]
            return head
        return self._source.read(size)


class TeeReader(BlobStreamReader):
    """
    Write everything read from `source` to `writer`.

    The tee never reads on its own; the side consumer only sees bytes the
    pipeline (or the final drain) has pulled through it.
    """

    def __init__(self, source: BlobReader, writer: BlobWriter) -> None:
        self._source = source
        self._writer = writer

    def read(self, size: Optional[int] = -1) -> bytes:
        data = self._source.read(-1 if size is None else size)
        if data:
            self._writer.write(data)
        return data


class CompressingReader(BlobStreamReader):
    """
    Pull-based streaming compressor.

    Refills from `source` in Config.CHUNK_SIZE_STREAMING chunks and feeds a
    compressor object exposing compress()/flush() (zlib, zstandard and lz4
    compressors all fit).
    """

    def __init__(self, source: BlobReader, compressor: Any, chunk_size: Optional[int] = None) -> None:
        self._source = source
        self._compressor = compressor
        self._chunk_size = chunk_size or Config.CHUNK_SIZE_STREAMING
        self._buffer = bytearray()
        self._finished = False

    def read(self, size: Optional[int] = -1) -> bytes:
        if size is None:
            size = -1
        while not self._finished and (size < 0 or len(self._buffer) < size):
            chunk = self._source.read(self._chunk_size)
            if chunk:
                self._buffer += self._compressor.compress(chunk)
            else:
                self._buffer += self._compressor.flush()
                self._finished = True
        if size < 0:
            size = len(self._buffer)
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data


class ProgressReader(BlobStreamReader):
    """
    Emit cumulative byte counts on a channel, at most once per `interval`.

    A NEW_ARTIFACT event is sent on construction. report_done() sends the
    final DONE event; it is safe to call more than once and only the first
    call emits.
    """

    def __init__(
        self,
        source: BlobReader,
        channel: ProgressChannel,
        interval: float,
        artifact: BlobInfo,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source
        self._channel = channel
        self._interval = interval
        self._artifact = artifact
        self._clock = clock
        self._offset = 0
        self._offset_update = 0
        self._done = False
        self._channel.put(ProgressProperties(event=ProgressEvent.NEW_ARTIFACT, artifact=artifact))
        self._last_update = clock()

    @property
    def offset(self) -> int:
        return self._offset

    def read(self, size: Optional[int] = -1) -> bytes:
        data = self._source.read(-1 if size is None else size)
        self._offset += len(data)
        self._offset_update += len(data)
        now = self._clock()
        if now - self._last_update > self._interval:
            self._channel.put(ProgressProperties(
                event=ProgressEvent.READ,
                artifact=self._artifact,
                offset=self._offset,
                offset_update=self._offset_update,
            ))
            self._last_update = now
            self._offset_update = 0
        return data

    def report_done(self) -> None:
        if self._done:
            return
        self._done = True
        self._channel.put(ProgressProperties(
            event=ProgressEvent.DONE,
            artifact=self._artifact,
            offset=self._offset,
            offset_update=self._offset_update,
        ))


class ErrorAnnotationReader(BlobStreamReader):
    """
    Last wrapper before the sink.

    Read failures surface inside the sink's write loop; re-raising them as
    SourceReadError keeps them from being attributed to the destination.
    """

    def __init__(self, source: BlobReader) -> None:
        self._source = source

    def read(self, size: Optional[int] = -1) -> bytes:
        try:
            return self._source.read(-1 if size is None else size)
        except Exception as e:
            raise SourceReadError(f"happened during read: {e}") from e


# ============================================================================
# COMPRESSION ALGORITHMS - Detection, decompressors and streaming compressors
# ============================================================================

def _gzip_decompressor(reader: BlobReader) -> Any:
    return gzip.GzipFile(fileobj=cast(Any, reader), mode='rb')


def _bzip2_decompressor(reader: BlobReader) -> Any:
    return bz2.BZ2File(cast(Any, reader), mode='rb')


def _xz_decompressor(reader: BlobReader) -> Any:
    return lzma.LZMAFile(cast(Any, reader), mode='rb')


def _zstd_decompressor(reader: BlobReader) -> Any:
    return _zstandard.ZstdDecompressor().stream_reader(reader, read_across_frames=True, closefd=False)


def _lz4_decompressor(reader: BlobReader) -> Any:
    return _lz4_frame.LZ4FrameFile(reader, mode='rb')


def _gzip_compressor(level: int) -> Any:
    # wbits=31 selects the gzip container; header mtime is 0, so output is reproducible
    return zlib.compressobj(level, zlib.DEFLATED, 31)


def _zstd_compressor(level: int) -> Any:
    return _zstandard.ZstdCompressor(level=level).compressobj()


class _LZ4FrameStreamCompressor:
    """Adapt LZ4FrameCompressor (begin/compress/flush) to compress()/flush()."""

    def __init__(self, level: int) -> None:
        self._context = _lz4_frame.LZ4FrameCompressor(compression_level=level)
        self._header = cast(bytes, self._context.begin())

    def compress(self, data: bytes) -> bytes:
        out = self._header + cast(bytes, self._context.compress(data))
        self._header = b""
        return out

    def flush(self) -> bytes:
        out = self._header + cast(bytes, self._context.flush())
        self._header = b""
        return out


def _lz4_compressor(level: int) -> Any:
    return _LZ4FrameStreamCompressor(level)


GZIP = CompressionAlgorithm("gzip", b"\x1f\x8b\x08", _gzip_decompressor, _gzip_compressor, 6)
BZIP2 = CompressionAlgorithm("bzip2", b"BZh", _bzip2_decompressor)
XZ = CompressionAlgorithm("xz", b"\xfd7zXZ\x00", _xz_decompressor)
ZSTD = CompressionAlgorithm("zstd", b"\x28\xb5\x2f\xfd", _zstd_decompressor, _zstd_compressor, 3)
LZ4 = CompressionAlgorithm("lz4", b"\x04\x22\x4d\x18", _lz4_decompressor, _lz4_compressor, 1)


class CompressionRegistry:
    """
    Registry of recognized compression algorithms.

    Detection tries every registered prefix; only algorithms with a
    compressor can be requested as a destination format.

    Example:
        >>> CompressionRegistry.get("zstd").can_compress
        True
        >>> [a.name for a in CompressionRegistry.compressible()]
        ['gzip', 'zstd', 'lz4']
    """
    _algorithms: ClassVar[Dict[str, CompressionAlgorithm]] = {}

    @classmethod
    def register(cls, algorithm: CompressionAlgorithm) -> None:
        cls._algorithms[algorithm.name] = algorithm

    @classmethod
    def get(cls, name: str) -> CompressionAlgorithm:
        """
        Look up an algorithm by name.

        Raises:
            ValidationError: If no algorithm with that name is registered
        """
        try:
            return cls._algorithms[name]
        except KeyError:
            known = ", ".join(sorted(cls._algorithms))
            raise ValidationError(f"unknown compression algorithm {name!r} (known: {known})") from None

    @classmethod
    def all(cls) -> List[CompressionAlgorithm]:
        return list(cls._algorithms.values())

    @classmethod
    def compressible(cls) -> List[CompressionAlgorithm]:
        return [a for a in cls._algorithms.values() if a.can_compress]


for _algorithm in (GZIP, BZIP2, XZ, ZSTD, LZ4):
    CompressionRegistry.register(_algorithm)
del _algorithm

# Compression implied by a layer media type; a detected format must agree.
_EXPECTED_COMPRESSION_BY_MEDIA_TYPE: Dict[str, CompressionAlgorithm] = {
    MEDIA_TYPE_OCI_LAYER_GZIP: GZIP,
    MEDIA_TYPE_OCI_LAYER_ZSTD: ZSTD,
    MEDIA_TYPE_OCI_NONDISTRIBUTABLE_LAYER_GZIP: GZIP,
    MEDIA_TYPE_OCI_NONDISTRIBUTABLE_LAYER_ZSTD: ZSTD,
    MEDIA_TYPE_DOCKER_LAYER: GZIP,
    MEDIA_TYPE_DOCKER_FOREIGN_LAYER: GZIP,
}


def _prefix_agrees(prefix: bytes, buffer: bytes) -> bool:
    n = min(len(prefix), len(buffer))
    return prefix[:n] == buffer[:n]


def detect_compression_format(
    reader: BlobReader,
) -> Tuple[Optional[CompressionAlgorithm], BlobReader]:
    """
    Classify the compression of a stream by its magic bytes.

    Reads one byte at a time and stops as soon as no registered prefix can
    still match, so an uncompressed stream usually costs a single byte of
    look-ahead. Consumed bytes are replayed by the returned reader, which
    yields the entire original stream.

    Args:
        reader: Stream positioned at the start of the blob

    Returns:
        (detected algorithm or None for uncompressed/unrecognized, replaying reader)
    """
    buffer = b""
    candidates = CompressionRegistry.all()
    detected: Optional[CompressionAlgorithm] = None
    while candidates:
        matched = [a for a in candidates if buffer.startswith(a.prefix)]
        if matched:
            detected = matched[0]
            break
        chunk = reader.read(1)
        if not chunk:
            break  # shorter than any remaining magic number
        buffer += chunk
        candidates = [a for a in candidates if _prefix_agrees(a.prefix, buffer)]
    if not buffer:
        return detected, reader
    return detected, PrefixedReader(buffer, reader)


@dataclass
class DetectedCompression:
    """Outcome of compression detection on the (decrypted) source stream."""
    is_compressed: bool
    format: Optional[CompressionAlgorithm]
    decompressor: Optional[DecompressorFunc]
    src_compressor_name: str


def blob_pipeline_detect_compression_step(stream: SourceStream, src_info: BlobInfo) -> DetectedCompression:
    """Detect compression and splice the replaying reader into `stream`."""
    try:
        algorithm, reader = detect_compression_format(stream.reader)
    except Exception as e:
        raise SourceReadError(f"reading blob {src_info.digest}: {e}") from e
    stream.reader = reader

    if algorithm is None:
        return DetectedCompression(False, None, None, UNCOMPRESSED)

    expected = _EXPECTED_COMPRESSION_BY_MEDIA_TYPE.get(stream.info.media_type)
    if expected is not None and expected.name != algorithm.name:
        raise ValidationError(
            f"blob {src_info.digest} with type {stream.info.media_type} should be compressed "
            f"with {expected.name}, but compressor appears to be {algorithm.name}"
        )
    return DetectedCompression(True, algorithm, algorithm.decompressor, algorithm.name)


@dataclass(frozen=True)
class CompressionEdit:
    """Pending change to result metadata produced by the compression step."""
    operation: CompressionOperation
    algorithm: Optional[CompressionAlgorithm]
    annotations: Dict[str, str] = field(default_factory=dict)

    def apply(self, info: BlobInfo) -> None:
        info.compression_operation = self.operation
        info.compression_algorithm = self.algorithm
        if self.annotations:
            if info.annotations is None:
                info.annotations = {}
            info.annotations.update(self.annotations)


@dataclass
class CompressionStep:
    """
    State of the compression transform for one copy.

    Attributes:
        operation: What was done to the stream
        uploaded_algorithm: Compression of the uploaded bytes, when known
        src_compressor_name: Compressor of the source bytes (or UNCOMPRESSED/UNKNOWN_COMPRESSION)
        uploaded_compressor_name: Compressor of the uploaded bytes
        uploaded_annotations: Annotations the compressor contributes
        closers: Transient codec objects released by close()
    """
    operation: CompressionOperation
    uploaded_algorithm: Optional[CompressionAlgorithm]
    src_compressor_name: str
    uploaded_compressor_name: str
    uploaded_annotations: Dict[str, str] = field(default_factory=dict)
    closers: List[Any] = field(default_factory=list)

    def pending_edit(self) -> CompressionEdit:
        return CompressionEdit(self.operation, self.uploaded_algorithm, dict(self.uploaded_annotations))

    def record_validated_digest_data(
        self,
        cache: BlobInfoCache,
        uploaded_info: BlobInfo,
        src_info: BlobInfo,
        encryption_step: EncryptionStep,
        decryption_step: DecryptionStep,
    ) -> None:
        """
        Record what this copy proved about digests in the blob info cache.

        Only called once the source digest was verified. Nothing is recorded
        for copies that encrypted or decrypted: digests on one side would
        describe ciphertext.
        """
        if encryption_step.encrypting or decryption_step.decrypting:
            return
        # src_info.digest was verified by DigestingReader; uploaded_info.digest
        # was computed afresh by the sink because the stream digest was cleared.
        if self.operation is CompressionOperation.COMPRESS:
            cache.record_digest_uncompressed_pair(uploaded_info.digest, src_info.digest)
        elif self.operation is CompressionOperation.DECOMPRESS:
            cache.record_digest_uncompressed_pair(src_info.digest, uploaded_info.digest)
        if self.uploaded_compressor_name and self.uploaded_compressor_name != UNKNOWN_COMPRESSION:
            cache.record_digest_compressor_name(uploaded_info.digest, self.uploaded_compressor_name)
        if src_info.digest and self.src_compressor_name and self.src_compressor_name != UNKNOWN_COMPRESSION:
            cache.record_digest_compressor_name(src_info.digest, self.src_compressor_name)

    def close(self) -> None:
        for closer in reversed(self.closers):
            closer.close()
        self.closers = []


# ============================================================================
# ENCRYPTION - Decryption and encryption steps
# ============================================================================

@dataclass(frozen=True)
class CryptoEdit:
    """Pending change to result metadata produced by a crypto step."""
    operation: LayerCrypto = LayerCrypto.PRESERVE_ORIGINAL
    annotations: Dict[str, str] = field(default_factory=dict)

    def apply(self, info: BlobInfo) -> None:
        if self.operation is LayerCrypto.PRESERVE_ORIGINAL:
            return
        info.crypto_operation = self.operation
        if self.annotations:
            if info.annotations is None:
                info.annotations = {}
            info.annotations.update(self.annotations)


@dataclass
class DecryptionStep:
    """Whether the source was decrypted; the result is then labelled DECRYPT."""
    decrypting: bool = False

    def pending_edit(self) -> CryptoEdit:
        if not self.decrypting:
            return CryptoEdit()
        return CryptoEdit(LayerCrypto.DECRYPT)


@dataclass
class EncryptionStep:
    encrypting: bool = False
    finalizer: Optional[EncryptionFinalizer] = None

    def pending_edit(self) -> CryptoEdit:
        """
        Build the encryption edit; only valid after the sink accepted the bytes.

        Raises:
            ReconciliationError: If the encrypter cannot produce its annotations
        """
        if not self.encrypting or self.finalizer is None:
            return CryptoEdit()
        try:
            annotations = self.finalizer()
        except Exception as e:
            raise ReconciliationError(f"Unable to finalize encryption: {e}") from e
        return CryptoEdit(LayerCrypto.ENCRYPT, dict(annotations or {}))


def reconcile_blob_info(
    uploaded: UploadedBlobInfo,
    stream_info: BlobInfo,
    edits: Sequence[Any],
) -> BlobInfo:
    """
    Build the result descriptor from what the sink stored.

    Caller-declared annotations (as they stand after the pipeline) are merged
    over the sink's, then `edits` are applied in order. The copier always
    passes compression, decryption, encryption.
    """
    annotations: Dict[str, str] = dict(uploaded.annotations or {})
    annotations.update(stream_info.annotations or {})
    result = BlobInfo(
        digest=uploaded.digest,
        size=uploaded.size,
        media_type=stream_info.media_type,
        annotations=annotations or None,
    )
    for edit in edits:
        edit.apply(result)
    return result


# ============================================================================
# PIPELINE ORCHESTRATOR - copy_blob_from_stream
# ============================================================================

@dataclass
class CopyOptions:
    """
    Per-copier settings.

    Attributes:
        compression_format: Destination compression explicitly requested by the
            user. None means "gzip when compressing uncompressed data, and never
            recompress already-compressed data".
        compression_level: Level for the chosen algorithm (None = its default)
        encrypter: Used for blobs copied with to_encrypt=True
        decrypter: Used for sources with an encrypted media type
        blob_info_cache: Receives digest relationships after verified copies
        progress: Channel receiving ProgressProperties events
        progress_interval: Seconds between READ events (None = Config default)
    """
    compression_format: Optional[CompressionAlgorithm] = None
    compression_level: Optional[int] = None
    encrypter: Optional[Encrypter] = None
    decrypter: Optional[Decrypter] = None
    blob_info_cache: Optional[BlobInfoCache] = None
    progress: Optional[ProgressChannel] = None
    progress_interval: Optional[float] = None


class BlobCopier:
    """
    Copies blobs into one destination.

    Example:
        >>> copier = BlobCopier(dest, CopyOptions(compression_format=ZSTD))
        >>> result = copier.copy_blob_from_stream(
        ...     reader, src_info, can_modify_blob=True, layer_index=0)
    """

    def __init__(self, dest: BlobDestination, options: Optional[CopyOptions] = None) -> None:
        self.dest = dest
        self.options = options or CopyOptions()
        requested = self.options.compression_format
        if requested is not None and not requested.can_compress:
            raise ValidationError(f"compression algorithm {requested.name} cannot be used for compression")

    def copy_blob_from_stream(
        self,
        src_reader: BlobReader,
        src_info: BlobInfo,
        get_original_layer_copy_writer: Optional[OriginalLayerCopyWriterFunc] = None,
        can_modify_blob: bool = False,
        is_config: bool = False,
        to_encrypt: bool = False,
        bar: Optional[ProgressBar] = None,
        layer_index: int = 0,
        empty_layer: bool = False,
    ) -> BlobInfo:
        """
        Copy one blob from `src_reader` to the destination.

        Args:
            src_reader: Raw source bytes
            src_info: Declared metadata; the digest may be "" and size -1
            get_original_layer_copy_writer: Called with the detected decompressor;
                the returned writer receives the decrypted, original-compression
                bytes, always to end of stream
            can_modify_blob: Whether the stored bytes may differ from the source
            is_config: Config blobs are always preserved bit-for-bit
            to_encrypt: Encrypt for the destination (layers only)
            bar: Visual progress counter fed with raw bytes read
            layer_index: Position of the layer within the image
            empty_layer: Whether this is the designated empty layer

        Returns:
            A new BlobInfo describing exactly what was stored

        Raises:
            DigestFormatError: Declared digest is malformed
            PolicyConflictError: Decryption and encryption both requested
            CryptoError: A crypto stage could not be set up
            SourceReadError: Reading the source failed
            SinkWriteError: The sink failed
            DrainError: Completing the side copy failed
            ReconciliationError: Encryption metadata could not be finalized
            InternalCopyError: The sink violated its digest contract
        """
        if is_config:
            can_modify_blob = False
        src_info = src_info.copy()

        if to_encrypt and self._decryption_applies(src_info):
            raise PolicyConflictError("Unable to support both decryption and encryption in the same copy")

        stream = SourceStream(reader=src_reader, info=src_info.copy())

        try:
            digesting_reader = DigestingReader(stream.reader, src_info.digest)
        except DigestFormatError as e:
            raise DigestFormatError(f"preparing to verify blob {src_info.digest}: {e}") from e
        stream.reader = digesting_reader

        if bar is not None:
            stream.reader = BarProxyReader(stream.reader, bar)

        decryption_step = self._blob_pipeline_decryption_step(stream, src_info)

        # Detection sees plaintext but reflects the source's own compression.
        detected = blob_pipeline_detect_compression_step(stream, src_info)

        original_layer_reader: Optional[BlobReader] = None
        if get_original_layer_copy_writer is not None:
            stream.reader = TeeReader(stream.reader, get_original_layer_copy_writer(detected.decompressor))
            original_layer_reader = stream.reader  # only for draining after the write

        with ExitStack() as cleanup:
            compression_step = self._blob_pipeline_compression_step(stream, can_modify_blob, detected)
            cleanup.callback(compression_step.close)

            encryption_step = self._blob_pipeline_encryption_step(
                stream, to_encrypt, is_config, src_info, decryption_step)

            interval = self.options.progress_interval
            if interval is None:
                interval = Config.DEFAULT_PROGRESS_INTERVAL
            if self.options.progress is not None and interval > 0:
                progress_reader = ProgressReader(stream.reader, self.options.progress, interval, src_info.copy())
                cleanup.callback(progress_reader.report_done)
                stream.reader = progress_reader

            options = PutBlobOptions(
                cache=self.options.blob_info_cache,
                is_config=is_config,
                empty_layer=empty_layer,
                layer_index=None if is_config else layer_index,
            )
            try:
                uploaded = self.dest.put_blob_with_options(
                    ErrorAnnotationReader(stream.reader), stream.info.copy(), options)
            except SourceReadError:
                self._drain_after_failure(original_layer_reader, src_info)
                raise
            except Exception as e:
                self._drain_after_failure(original_layer_reader, src_info)
                raise SinkWriteError(f"writing blob: {e}") from e

            if original_layer_reader is not None:
                logger.debug("Consuming rest of the original blob to satisfy the side-copy consumer")
                self._drain(original_layer_reader, src_info)

            result = reconcile_blob_info(uploaded, stream.info, [
                compression_step.pending_edit(),
                decryption_step.pending_edit(),
                encryption_step.pending_edit(),
            ])

            if digesting_reader.validation_failed:
                raise InternalCopyError(
                    f"Internal error writing blob {src_info.digest}, "
                    f"digest verification failed but was ignored"
                )
            # Config digests may legitimately change when the sink rewrites them
            if not is_config and stream.info.digest and result.digest != stream.info.digest:
                raise InternalCopyError(
                    f"Internal error writing blob {src_info.digest}, blob with digest "
                    f"{stream.info.digest} saved with digest {result.digest}"
                )
            cache = self.options.blob_info_cache
            if digesting_reader.validation_succeeded and cache is not None:
                compression_step.record_validated_digest_data(
                    cache, result, src_info, encryption_step, decryption_step)

        return result

    # ------------------------------------------------------------------
    # Side-copy drain
    # ------------------------------------------------------------------

    def _drain(self, reader: BlobReader, src_info: BlobInfo) -> int:
        total = 0
        try:
            while True:
                chunk = reader.read(Config.CHUNK_SIZE_STREAMING)
                if not chunk:
                    break
                total += len(chunk)
        except Exception as e:
            raise DrainError(f"reading input blob {src_info.digest}: {e}") from e
        return total

    def _drain_after_failure(self, reader: Optional[BlobReader], src_info: BlobInfo) -> None:
        # The copy is already failing; the sink's error is the one reported.
        if reader is None:
            return
        try:
            self._drain(reader, src_info)
        except DrainError as e:
            logger.warning("Could not complete side copy of blob %s: %s", src_info.digest, e)

    # ------------------------------------------------------------------
    # Crypto steps
    # ------------------------------------------------------------------

    def _decryption_applies(self, info: BlobInfo) -> bool:
        return self.options.decrypter is not None and is_oci_encrypted(info.media_type)

    def _blob_pipeline_decryption_step(self, stream: SourceStream, src_info: BlobInfo) -> DecryptionStep:
        decrypter = self.options.decrypter
        if decrypter is None or not is_oci_encrypted(stream.info.media_type):
            return DecryptionStep()

        annotations = dict(stream.info.annotations or {})
        try:
            stream.reader = decrypter.decrypt_layer(stream.reader, annotations)
        except Exception as e:
            raise CryptoError(f"decrypting layer {src_info.digest}: {e}") from e

        logger.debug("Decrypting blob %s", src_info.digest)
        stream.info.digest = ""
        stream.info.size = -1
        stream.info.media_type = stream.info.media_type[:-len(ENCRYPTED_MEDIA_TYPE_SUFFIX)]
        if stream.info.annotations is not None:
            stream.info.annotations = {
                k: v for k, v in stream.info.annotations.items()
                if not k.startswith(ENCRYPTION_ANNOTATION_PREFIX)
            }
        return DecryptionStep(decrypting=True)

    def _blob_pipeline_encryption_step(
        self,
        stream: SourceStream,
        to_encrypt: bool,
        is_config: bool,
        src_info: BlobInfo,
        decryption_step: DecryptionStep,
    ) -> EncryptionStep:
        encrypter = self.options.encrypter
        if not to_encrypt or is_config or is_oci_encrypted(src_info.media_type):
            return EncryptionStep()
        if encrypter is None:
            logger.debug("Encryption requested for blob %s but no encrypter is configured", src_info.digest)
            return EncryptionStep()

        descriptor = src_info.copy()
        if decryption_step.decrypting:
            descriptor.annotations = None
        try:
            reader, finalizer = encrypter.encrypt_layer(stream.reader, descriptor)
        except Exception as e:
            raise CryptoError(f"encrypting blob {src_info.digest}: {e}") from e

        logger.debug("Encrypting blob %s", src_info.digest)
        stream.reader = reader
        stream.info.digest = ""
        stream.info.size = -1
        if stream.info.media_type:
            stream.info.media_type += ENCRYPTED_MEDIA_TYPE_SUFFIX
        return EncryptionStep(encrypting=True, finalizer=finalizer)

    # ------------------------------------------------------------------
    # Compression step
    # ------------------------------------------------------------------
    #
    # If you add new reasons to change a blob here, callers that skip copies
    # of blobs already present at the destination must learn about them too.

    def _blob_pipeline_compression_step(
        self,
        stream: SourceStream,
        can_modify_blob: bool,
        detected: DetectedCompression,
    ) -> CompressionStep:
        change_supported = can_change_layer_compression(stream.info.media_type)
        if not change_supported:
            logger.debug(
                "Compression change for blob %s (%r) not supported",
                stream.info.digest, stream.info.media_type,
            )
        if can_modify_blob and change_supported:
            for handler in (
                self._bpc_preserve_encrypted,
                self._bpc_compress_uncompressed,
                self._bpc_recompress_compressed,
                self._bpc_decompress_compressed,
            ):
                step = handler(stream, detected)
                if step is not None:
                    return step
        return self._bpc_preserve_original(detected, change_supported)

    def _compression_level(self, algorithm: CompressionAlgorithm) -> int:
        level = self.options.compression_level
        return algorithm.default_level if level is None else level

    def _bpc_preserve_encrypted(self, stream: SourceStream, detected: DetectedCompression) -> Optional[CompressionStep]:
        if not is_oci_encrypted(stream.info.media_type):
            return None
        logger.debug("Using original blob without modification for encrypted blob")
        # Compression of ciphertext can't be changed, nor is it meaningful.
        return CompressionStep(
            operation=CompressionOperation.PRESERVE_ORIGINAL,
            uploaded_algorithm=None,
            src_compressor_name=UNKNOWN_COMPRESSION,
            uploaded_compressor_name=UNKNOWN_COMPRESSION,
        )

    def _bpc_compress_uncompressed(self, stream: SourceStream, detected: DetectedCompression) -> Optional[CompressionStep]:
        if self.dest.desired_layer_compression() is not LayerCompression.COMPRESS or detected.is_compressed:
            return None
        algorithm = self.options.compression_format or GZIP
        logger.debug("Compressing blob on the fly")
        stream.reader = CompressingReader(stream.reader, algorithm.new_compressor(self._compression_level(algorithm)))
        stream.info.digest = ""
        stream.info.size = -1
        return CompressionStep(
            operation=CompressionOperation.COMPRESS,
            uploaded_algorithm=algorithm,
            src_compressor_name=detected.src_compressor_name,
            uploaded_compressor_name=algorithm.name,
        )

    def _bpc_recompress_compressed(self, stream: SourceStream, detected: DetectedCompression) -> Optional[CompressionStep]:
        requested = self.options.compression_format
        if (self.dest.desired_layer_compression() is not LayerCompression.COMPRESS
                or not detected.is_compressed
                or detected.format is None or detected.decompressor is None
                or requested is None
                or detected.format.name == requested.name):
            return None
        logger.debug("Recompressing blob on the fly from %s to %s", detected.format.name, requested.name)
        decompressed = detected.decompressor(stream.reader)
        stream.reader = CompressingReader(decompressed, requested.new_compressor(self._compression_level(requested)))
        stream.info.digest = ""
        stream.info.size = -1
        return CompressionStep(
            operation=CompressionOperation.RECOMPRESS,
            uploaded_algorithm=requested,
            src_compressor_name=detected.src_compressor_name,
            uploaded_compressor_name=requested.name,
            closers=[decompressed],
        )

    def _bpc_decompress_compressed(self, stream: SourceStream, detected: DetectedCompression) -> Optional[CompressionStep]:
        if (self.dest.desired_layer_compression() is not LayerCompression.DECOMPRESS
                or not detected.is_compressed or detected.decompressor is None):
            return None
        logger.debug("Blob will be decompressed")
        decompressed = detected.decompressor(stream.reader)
        stream.reader = decompressed
        stream.info.digest = ""
        stream.info.size = -1
        return CompressionStep(
            operation=CompressionOperation.DECOMPRESS,
            uploaded_algorithm=None,
            src_compressor_name=detected.src_compressor_name,
            uploaded_compressor_name=UNCOMPRESSED,
            closers=[decompressed],
        )

    def _bpc_preserve_original(self, detected: DetectedCompression, change_supported: bool) -> CompressionStep:
        logger.debug("Using original blob without modification")
        # Remember how the original was compressed so a later manifest update
        # can derive the right media type; leave objects whose compression
        # can't change untouched.
        algorithm = detected.format if change_supported and detected.is_compressed else None
        return CompressionStep(
            operation=CompressionOperation.PRESERVE_ORIGINAL,
            uploaded_algorithm=algorithm,
            src_compressor_name=detected.src_compressor_name,
            uploaded_compressor_name=detected.src_compressor_name,
        )


# ============================================================================
# CLI - Command-line interface
# ============================================================================

class TextProgressBar:
    """
    Minimal single-line progress bar for the CLI.

    Example:
        >>> bar = TextProgressBar(total=1024, label="layer.tar")
        >>> bar.update(512)
        >>> bar.close()
    """

    def __init__(self, total: int, label: str = "", stream: Optional[TextIO] = None) -> None:
        self.total = total
        self.label = label
        self.current = 0
        self._stream = stream or sys.stderr

    def update(self, n: int) -> None:
        self.current += n
        if not Config.ENABLE_PROGRESS:
            return
        if self.total > 0:
            percent = min(100.0, self.current * 100.0 / self.total)
            line = f"\r{self.label} {format_size(self.current)} / {format_size(self.total)} ({percent:5.1f}%)"
        else:
            line = f"\r{self.label} {format_size(self.current)}"
        self._stream.write(line)
        self._stream.flush()

    def close(self) -> None:
        if Config.ENABLE_PROGRESS and self.current:
            self._stream.write("\n")
            self._stream.flush()


def cli_copy(args: Any) -> int:
    """Copy a local file into an OCI image-layout directory."""
    from blob_layout import DiffIDCalculator, DirectoryBlobSink, FileBlobSource, MemoryBlobInfoCache

    if args.verbose:
        logger.setLevel(logging.DEBUG)

    start_time = time.time()
    if args.compress:
        desired = LayerCompression.COMPRESS
    elif args.decompress:
        desired = LayerCompression.DECOMPRESS
    else:
        desired = LayerCompression.PRESERVE_ORIGINAL
    media_type = args.media_type
    if media_type is None:
        media_type = MEDIA_TYPE_OCI_CONFIG if args.config else MEDIA_TYPE_OCI_LAYER

    diff_ids: Optional[Any] = None
    try:
        compression_format = CompressionRegistry.get(args.compress) if args.compress else None
        sink = DirectoryBlobSink(args.dest, desired_compression=desired)
        copier = BlobCopier(sink, CopyOptions(
            compression_format=compression_format,
            compression_level=args.level,
            blob_info_cache=MemoryBlobInfoCache(),
        ))
        if args.diff_id and not args.config:
            diff_ids = DiffIDCalculator()

        if not args.quiet:
            print(Colors.info(f"Copying {Colors.bold(args.source)} -> {Colors.bold(args.dest)}"))

        with FileBlobSource(args.source, digest=args.digest or "", media_type=media_type) as source:
            bar = None
            if args.progress and not args.quiet:
                bar = TextProgressBar(source.info.size, label=os.path.basename(args.source))
            try:
                result = copier.copy_blob_from_stream(
                    source.reader,
                    source.info,
                    get_original_layer_copy_writer=diff_ids.writer if diff_ids is not None else None,
                    can_modify_blob=not args.config,
                    is_config=args.config,
                    bar=bar,
                    layer_index=args.layer_index,
                    empty_layer=args.empty_layer,
                )
            finally:
                if bar is not None:
                    bar.close()

        diff_id = diff_ids.finish() if diff_ids is not None else None
        diff_ids = None

        if args.quiet:
            print(result.digest)
            return 0

        elapsed = time.time() - start_time
        algorithm = result.compression_algorithm.name if result.compression_algorithm else "-"
        print(Colors.success(f"Blob stored in {args.dest}"))
        print(f"  Digest:       {result.digest}")
        print(f"  Size:         {result.size:,} bytes ({format_size(result.size)})")
        print(f"  Media type:   {result.media_type or '-'}")
        print(f"  Compression:  {result.compression_operation.value} ({algorithm})")
        print(f"  Crypto:       {result.crypto_operation.value}")
        if diff_id:
            print(f"  Diff ID:      {diff_id}")
        print(Colors.dim(f"  Time:         {elapsed:.3f}s"))
        return 0
    except ValidationError as e:
        print(Colors.error(f"Validation error: {e}"), file=sys.stderr)
        return e.code
    except BlobCopyError as e:
        print(Colors.error(f"Copy failed: {e}"), file=sys.stderr)
        return e.code
    except KeyboardInterrupt:
        print(Colors.warning("\nOperation cancelled by user"), file=sys.stderr)
        return 130
    except Exception as e:
        print(Colors.error(f"Unexpected error: {type(e).__name__}: {e}"), file=sys.stderr)
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1
    finally:
        if diff_ids is not None:
            diff_ids.close()


def create_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the blobcopy CLI."""
    parser = argparse.ArgumentParser(
        prog='blobcopy',
        description='Copy container image blobs with digest verification and compression changes.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "examples:\n"
            "  blobcopy copy layer.tar ./oci-dir --compress zstd --diff-id\n"
            "  blobcopy copy layer.tar.gz ./oci-dir --digest sha256:... --decompress\n"
            "  blobcopy copy config.json ./oci-dir --config\n"
        ),
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    subparsers = parser.add_subparsers(dest='command')

    copy_parser = subparsers.add_parser('copy', help='copy a local blob into an OCI layout directory')
    copy_parser.add_argument('source', help='file holding the blob bytes')
    copy_parser.add_argument('dest', help='OCI image-layout directory (created if missing)')
    copy_parser.add_argument('--digest', default='', help='expected digest of the source (algorithm:hex)')
    copy_parser.add_argument('--media-type', default=None, help='media type of the blob')
    compression = copy_parser.add_mutually_exclusive_group()
    compression.add_argument(
        '--compress',
        choices=[a.name for a in CompressionRegistry.compressible()],
        help='store the blob compressed with this algorithm',
    )
    compression.add_argument('--decompress', action='store_true', help='store the blob uncompressed')
    copy_parser.add_argument('--level', type=int, default=None, help='compression level')
    copy_parser.add_argument('--config', action='store_true', help='blob is an image config (never modified)')
    copy_parser.add_argument('--layer-index', type=int, default=0, help='index of the layer within the image')
    copy_parser.add_argument('--empty-layer', action='store_true', help='blob is the designated empty layer')
    copy_parser.add_argument('--diff-id', action='store_true', help='compute the diff ID of the layer')
    copy_parser.add_argument('--progress', action='store_true', help='show a progress bar')
    copy_parser.add_argument('-q', '--quiet', action='store_true', help='only print the stored digest')
    copy_parser.add_argument('-v', '--verbose', action='store_true', help='enable debug logging')
    copy_parser.set_defaults(func=cli_copy)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Returns:
        Exit code (0 for success, the error code of the failure otherwise)
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    func = getattr(args, 'func', None)
    if func is None:
        parser.print_help()
        return 1
    return cast(int, func(args))


if __name__ == '__main__':
    sys.exit(main())
