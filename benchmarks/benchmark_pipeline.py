#!/usr/bin/env python3
"""
Benchmark: blobcopy pipeline throughput
=======================================

Measures copy throughput for each compression transform, using an
in-memory sink that hashes what it receives.
"""

import io
import os
import time
import hashlib

from blobcopy import (
    BlobCopier, BlobInfo, Colors, CopyOptions, LayerCompression, UploadedBlobInfo,
    CompressionRegistry, MEDIA_TYPE_OCI_LAYER, compute_digest, format_size,
)

colors = Colors


class HashingSink:
    """Destination that only hashes the stream."""

    def __init__(self, desired: LayerCompression) -> None:
        self.desired = desired

    def desired_layer_compression(self) -> LayerCompression:
        return self.desired

    def put_blob_with_options(self, reader, info, options):
        hasher = hashlib.sha256()
        size = 0
        while chunk := reader.read(1024 * 1024):
            hasher.update(chunk)
            size += len(chunk)
        return UploadedBlobInfo(digest=f"sha256:{hasher.hexdigest()}", size=size)


def create_layer_data(size_mb: int) -> bytes:
    """Create layer-like data: half compressible text, half random bytes."""
    half = size_mb * 1024 * 1024 // 2
    text = (b"usr/lib/python3/site-packages/example.py\x00" * (half // 42 + 1))[:half]
    return text + os.urandom(half)


def benchmark_copy(data: bytes, source_format, desired: LayerCompression, target_format) -> dict:
    """Copy `data` (optionally pre-compressed) once and time it."""
    payload = data
    if source_format is not None:
        compressor = source_format.new_compressor()
        payload = compressor.compress(data) + compressor.flush()

    src_info = BlobInfo(digest=compute_digest(payload), size=len(payload), media_type=MEDIA_TYPE_OCI_LAYER)
    copier = BlobCopier(HashingSink(desired), CopyOptions(compression_format=target_format))

    start = time.perf_counter()
    result = copier.copy_blob_from_stream(io.BytesIO(payload), src_info, can_modify_blob=True)
    elapsed = time.perf_counter() - start

    return {
        'time': elapsed,
        'input_size': len(payload),
        'output_size': result.size,
        'operation': result.compression_operation.value,
        'throughput': len(data) / elapsed if elapsed > 0 else 0.0,
    }


def run_benchmark_suite():
    """Run complete benchmark suite"""
    print(colors.bold("\n" + "=" * 80))
    print(colors.bold("BENCHMARK: blobcopy pipeline".center(80)))
    print(colors.bold("=" * 80))

    gzip = CompressionRegistry.get('gzip')
    zstd = CompressionRegistry.get('zstd')
    lz4 = CompressionRegistry.get('lz4')

    test_cases = [
        ('preserve uncompressed', None, LayerCompression.PRESERVE_ORIGINAL, None),
        ('compress gzip', None, LayerCompression.COMPRESS, gzip),
        ('compress zstd', None, LayerCompression.COMPRESS, zstd),
        ('compress lz4', None, LayerCompression.COMPRESS, lz4),
        ('decompress gzip', gzip, LayerCompression.DECOMPRESS, None),
        ('decompress zstd', zstd, LayerCompression.DECOMPRESS, None),
        ('recompress gzip -> zstd', gzip, LayerCompression.COMPRESS, zstd),
    ]

    results = []
    for size_mb in (1, 16):
        data = create_layer_data(size_mb)
        for name, source_format, desired, target_format in test_cases:
            label = f"{size_mb}MB {name}"
            print(f"  {label:<40}", end=' ', flush=True)
            result = benchmark_copy(data, source_format, desired, target_format)
            print(colors.success(f"{result['time']:.3f}s"))
            results.append((label, result))

    print(f"\n{colors.bold('=' * 80)}")
    print(colors.bold("RESULTS SUMMARY".center(80)))
    print(colors.bold("=" * 80))
    for label, r in results:
        print(f"\n{colors.bold(label)}")
        print(f"    Operation:    {r['operation']}")
        print(f"    Input:        {format_size(r['input_size'])}")
        print(f"    Output:       {format_size(r['output_size'])}")
        print(f"    Throughput:   {format_size(int(r['throughput']))}/s")

    print(f"\n{colors.bold('=' * 80)}")
    print(colors.success("Benchmark complete!"))
    print(colors.bold("=" * 80))


if __name__ == '__main__':
    run_benchmark_suite()
