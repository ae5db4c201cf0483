#!/usr/bin/env python
"""
Tests for the individual stream stages of blobcopy
==================================================

1. Digest validation and DigestingReader verdicts
2. Pass-through stages (prefix replay, tee, progress bar proxy)
3. Read-error annotation
4. Streaming compression
"""

import io
import gzip
import unittest

from blobcopy import (
    BarProxyReader,
    CompressingReader,
    DigestFormatError,
    DigestingReader,
    ErrorAnnotationReader,
    GZIP,
    PrefixedReader,
    SourceReadError,
    TeeReader,
    compute_digest,
    validate_digest,
)


class ExplodingReader:
    """Reader that must never be read."""

    def read(self, size=-1):
        raise AssertionError("source was read")


class BrokenReader:
    def read(self, size=-1):
        raise OSError("connection reset")


class CountingBar:
    def __init__(self):
        self.total = 0
        self.calls = 0

    def update(self, n):
        self.total += n
        self.calls += 1


def read_in_chunks(reader, size=7):
    out = b''
    while True:
        chunk = reader.read(size)
        if not chunk:
            return out
        out += chunk


class TestValidateDigest(unittest.TestCase):
    """Digest string validation"""

    def test_valid_sha256(self):
        digest = compute_digest(b'abc')
        algorithm, encoded = validate_digest(digest)
        self.assertEqual(algorithm, 'sha256')
        self.assertEqual(len(encoded), 64)

    def test_valid_sha512(self):
        digest = compute_digest(b'abc', 'sha512')
        self.assertEqual(validate_digest(digest)[0], 'sha512')

    def test_rejects_malformed(self):
        for digest in ('sha256:deadbeef', 'nocolon', 'sha256:', ':' + 'a' * 64,
                       'md5:' + 'a' * 32, 'sha256:' + 'A' * 64, 'sha256:' + 'g' * 64):
            with self.subTest(digest=digest):
                with self.assertRaises(DigestFormatError):
                    validate_digest(digest)


class TestDigestingReader(unittest.TestCase):
    """Digest verification while streaming"""

    def setUp(self):
        self.data = b'layer contents ' * 100
        self.digest = compute_digest(self.data)

    def test_matching_digest_succeeds_at_eof(self):
        reader = DigestingReader(io.BytesIO(self.data), self.digest)
        self.assertEqual(read_in_chunks(reader), self.data)
        self.assertTrue(reader.validation_succeeded)
        self.assertFalse(reader.validation_failed)
        self.assertEqual(reader.actual_digest, self.digest)

    def test_read_all_finishes_verification(self):
        reader = DigestingReader(io.BytesIO(self.data), self.digest)
        self.assertEqual(reader.read(), self.data)
        self.assertTrue(reader.validation_succeeded)

    def test_mismatch_only_flags(self):
        """A mismatch never raises from read()"""
        reader = DigestingReader(io.BytesIO(self.data), compute_digest(b'other'))
        self.assertEqual(read_in_chunks(reader), self.data)
        self.assertTrue(reader.validation_failed)
        self.assertFalse(reader.validation_succeeded)

    def test_partial_read_sets_nothing(self):
        reader = DigestingReader(io.BytesIO(self.data), compute_digest(b'other'))
        reader.read(10)
        self.assertFalse(reader.validation_succeeded)
        self.assertFalse(reader.validation_failed)

    def test_zero_length_read_is_not_eof(self):
        reader = DigestingReader(io.BytesIO(self.data), self.digest)
        self.assertEqual(reader.read(0), b'')
        self.assertFalse(reader.validation_succeeded)

    def test_reading_past_eof_keeps_verdict(self):
        reader = DigestingReader(io.BytesIO(self.data), self.digest)
        read_in_chunks(reader)
        self.assertEqual(reader.read(10), b'')
        self.assertTrue(reader.validation_succeeded)
        self.assertFalse(reader.validation_failed)

    def test_empty_blob(self):
        reader = DigestingReader(io.BytesIO(b''), compute_digest(b''))
        self.assertEqual(reader.read(10), b'')
        self.assertTrue(reader.validation_succeeded)

    def test_no_declared_digest_makes_no_claim(self):
        reader = DigestingReader(io.BytesIO(self.data), '')
        read_in_chunks(reader)
        self.assertFalse(reader.validation_succeeded)
        self.assertFalse(reader.validation_failed)
        self.assertEqual(reader.actual_digest, self.digest)

    def test_sha512_digest(self):
        digest = compute_digest(self.data, 'sha512')
        reader = DigestingReader(io.BytesIO(self.data), digest)
        read_in_chunks(reader)
        self.assertTrue(reader.validation_succeeded)

    def test_malformed_digest_fails_before_reading(self):
        with self.assertRaises(DigestFormatError):
            DigestingReader(ExplodingReader(), 'sha256:deadbeef')


class TestPassThroughStages(unittest.TestCase):

    def test_prefixed_reader_replays_prefix(self):
        source = io.BytesIO(b'llo world')
        reader = PrefixedReader(b'he', source)
        self.assertEqual(reader.read(1), b'h')
        self.assertEqual(reader.read(5), b'e')
        self.assertEqual(reader.read(5), b'llo w')
        self.assertEqual(reader.read(), b'orld')
        self.assertEqual(reader.read(5), b'')

    def test_prefixed_reader_read_all(self):
        reader = PrefixedReader(b'\x1f\x8b', io.BytesIO(b'rest'))
        self.assertEqual(reader.read(-1), b'\x1f\x8brest')

    def test_tee_copies_only_what_is_read(self):
        side = io.BytesIO()
        reader = TeeReader(io.BytesIO(b'0123456789'), side)
        self.assertEqual(reader.read(4), b'0123')
        self.assertEqual(side.getvalue(), b'0123')
        read_in_chunks(reader)
        self.assertEqual(side.getvalue(), b'0123456789')

    def test_bar_proxy_counts_bytes(self):
        bar = CountingBar()
        reader = BarProxyReader(io.BytesIO(b'x' * 100), bar)
        read_in_chunks(reader, 30)
        self.assertEqual(bar.total, 100)
        self.assertEqual(bar.calls, 4)


class TestErrorAnnotationReader(unittest.TestCase):

    def test_read_errors_are_attributed_to_source(self):
        reader = ErrorAnnotationReader(BrokenReader())
        with self.assertRaises(SourceReadError) as ctx:
            reader.read(10)
        self.assertIn('happened during read', str(ctx.exception))
        self.assertIsInstance(ctx.exception.__cause__, OSError)

    def test_eof_passes_through(self):
        reader = ErrorAnnotationReader(io.BytesIO(b'ab'))
        self.assertEqual(reader.read(10), b'ab')
        self.assertEqual(reader.read(10), b'')


class TestCompressingReader(unittest.TestCase):

    def test_small_reads_produce_valid_gzip(self):
        data = b'compressible ' * 5000
        reader = CompressingReader(io.BytesIO(data), GZIP.new_compressor(), chunk_size=1000)
        compressed = read_in_chunks(reader, 13)
        self.assertEqual(gzip.decompress(compressed), data)
        self.assertLess(len(compressed), len(data))

    def test_empty_input(self):
        reader = CompressingReader(io.BytesIO(b''), GZIP.new_compressor())
        self.assertEqual(gzip.decompress(reader.read()), b'')
        self.assertEqual(reader.read(10), b'')


if __name__ == '__main__':
    unittest.main()
