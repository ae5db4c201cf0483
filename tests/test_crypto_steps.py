#!/usr/bin/env python
"""
Decryption / encryption step tests
==================================

Uses a toy XOR cipher in place of a real OCI crypto provider; only the
pipeline's handling of media types, annotations, digests and ordering is
under test.
"""

import io
import gzip
import unittest

from blob_layout import MemoryBlobInfoCache
from blobcopy import (
    BlobCopier,
    BlobInfo,
    CompressionOperation,
    CopyOptions,
    CryptoError,
    GZIP,
    LayerCompression,
    LayerCrypto,
    MEDIA_TYPE_OCI_CONFIG,
    MEDIA_TYPE_OCI_LAYER,
    MEDIA_TYPE_OCI_LAYER_GZIP,
    PolicyConflictError,
    ReconciliationError,
    UploadedBlobInfo,
    compute_digest,
)

ENC_KEY_ANNOTATION = 'org.opencontainers.image.enc.keys.test'
KEY = 0x5A


def xor(data):
    return bytes(b ^ KEY for b in data)


class XorReader:
    def __init__(self, source):
        self._source = source

    def read(self, size=-1):
        return xor(self._source.read(size))


class FakeEncrypter:
    def __init__(self, fail_finalize=False):
        self.fail_finalize = fail_finalize
        self.descriptors = []

    def encrypt_layer(self, reader, info):
        self.descriptors.append(info)

        def finalize():
            if self.fail_finalize:
                raise RuntimeError('key wrap failed')
            return {ENC_KEY_ANNOTATION: 'wrapped-key'}

        return XorReader(reader), finalize


class FakeDecrypter:
    def __init__(self, fail=False):
        self.fail = fail
        self.annotations = None

    def decrypt_layer(self, reader, annotations):
        if self.fail:
            raise ValueError('no matching private key')
        self.annotations = annotations
        return XorReader(reader)


class ExplodingReader:
    def read(self, size=-1):
        raise AssertionError('source was read')


class MemorySink:
    def __init__(self, desired=LayerCompression.PRESERVE_ORIGINAL):
        self.desired = desired
        self.infos = []
        self.data = b''

    def desired_layer_compression(self):
        return self.desired

    def put_blob_with_options(self, reader, info, options):
        self.infos.append(info)
        chunks = []
        while True:
            chunk = reader.read(4096)
            if not chunk:
                break
            chunks.append(chunk)
        self.data = b''.join(chunks)
        return UploadedBlobInfo(digest=compute_digest(self.data), size=len(self.data))


class TestEncryption(unittest.TestCase):

    def setUp(self):
        self.data = b'plain layer contents ' * 50
        self.src_info = BlobInfo(
            digest=compute_digest(self.data),
            size=len(self.data),
            media_type=MEDIA_TYPE_OCI_LAYER,
            annotations={'org.example.note': 'keep'},
        )
        self.cache = MemoryBlobInfoCache()

    def test_encrypts_layer(self):
        sink = MemorySink()
        encrypter = FakeEncrypter()
        copier = BlobCopier(sink, CopyOptions(encrypter=encrypter, blob_info_cache=self.cache))

        result = copier.copy_blob_from_stream(io.BytesIO(self.data), self.src_info, to_encrypt=True)

        self.assertEqual(sink.data, xor(self.data))
        self.assertEqual(result.digest, compute_digest(xor(self.data)))
        self.assertEqual(result.crypto_operation, LayerCrypto.ENCRYPT)
        self.assertEqual(result.media_type, MEDIA_TYPE_OCI_LAYER + '+encrypted')
        self.assertEqual(result.annotations, {'org.example.note': 'keep', ENC_KEY_ANNOTATION: 'wrapped-key'})
        self.assertEqual(sink.infos[0].digest, '')
        self.assertEqual(sink.infos[0].size, -1)
        self.assertEqual(encrypter.descriptors[0].annotations, {'org.example.note': 'keep'})
        # Digests of ciphertext are not cached.
        self.assertIsNone(self.cache.compressor_name(self.src_info.digest))

    def test_encrypts_after_compression(self):
        sink = MemorySink(LayerCompression.COMPRESS)
        copier = BlobCopier(sink, CopyOptions(encrypter=FakeEncrypter()))
        result = copier.copy_blob_from_stream(
            io.BytesIO(self.data), self.src_info, can_modify_blob=True, to_encrypt=True)
        self.assertEqual(result.compression_operation, CompressionOperation.COMPRESS)
        self.assertEqual(result.crypto_operation, LayerCrypto.ENCRYPT)
        self.assertEqual(gzip.decompress(xor(sink.data)), self.data)

    def test_config_is_never_encrypted(self):
        data = b'{"os":"linux"}'
        src_info = BlobInfo(digest=compute_digest(data), size=len(data), media_type=MEDIA_TYPE_OCI_CONFIG)
        sink = MemorySink()
        result = BlobCopier(sink, CopyOptions(encrypter=FakeEncrypter())).copy_blob_from_stream(
            io.BytesIO(data), src_info, is_config=True, to_encrypt=True)
        self.assertEqual(sink.data, data)
        self.assertEqual(result.crypto_operation, LayerCrypto.PRESERVE_ORIGINAL)

    def test_encryption_without_encrypter_is_skipped(self):
        sink = MemorySink()
        result = BlobCopier(sink).copy_blob_from_stream(io.BytesIO(self.data), self.src_info, to_encrypt=True)
        self.assertEqual(sink.data, self.data)
        self.assertEqual(result.crypto_operation, LayerCrypto.PRESERVE_ORIGINAL)

    def test_already_encrypted_source_is_not_reencrypted(self):
        ciphertext = b'\x00opaque ciphertext'
        src_info = BlobInfo(
            digest=compute_digest(ciphertext),
            size=len(ciphertext),
            media_type=MEDIA_TYPE_OCI_LAYER_GZIP + '+encrypted',
        )
        sink = MemorySink(LayerCompression.COMPRESS)
        result = BlobCopier(sink, CopyOptions(encrypter=FakeEncrypter())).copy_blob_from_stream(
            io.BytesIO(ciphertext), src_info, can_modify_blob=True, to_encrypt=True)
        self.assertEqual(sink.data, ciphertext)
        self.assertEqual(result.crypto_operation, LayerCrypto.PRESERVE_ORIGINAL)
        self.assertEqual(result.compression_operation, CompressionOperation.PRESERVE_ORIGINAL)
        self.assertIsNone(result.compression_algorithm)

    def test_finalize_failure(self):
        sink = MemorySink()
        copier = BlobCopier(sink, CopyOptions(encrypter=FakeEncrypter(fail_finalize=True)))
        with self.assertRaises(ReconciliationError) as ctx:
            copier.copy_blob_from_stream(io.BytesIO(self.data), self.src_info, to_encrypt=True)
        self.assertIn('Unable to finalize encryption', str(ctx.exception))
        # The sink already holds the ciphertext.
        self.assertEqual(sink.data, xor(self.data))


class TestDecryption(unittest.TestCase):

    def setUp(self):
        self.plain = b'decrypted layer ' * 64
        self.compressed = gzip.compress(self.plain)
        self.ciphertext = xor(self.compressed)
        self.src_info = BlobInfo(
            digest=compute_digest(self.ciphertext),
            size=len(self.ciphertext),
            media_type=MEDIA_TYPE_OCI_LAYER_GZIP + '+encrypted',
            annotations={ENC_KEY_ANNOTATION: 'wrapped-key', 'org.example.note': 'keep'},
        )

    def test_decrypts_layer(self):
        sink = MemorySink()
        decrypter = FakeDecrypter()
        side = io.BytesIO()
        copier = BlobCopier(sink, CopyOptions(decrypter=decrypter))

        result = copier.copy_blob_from_stream(
            io.BytesIO(self.ciphertext), self.src_info, lambda decompressor: side, can_modify_blob=True)

        self.assertEqual(sink.data, self.compressed)
        self.assertEqual(side.getvalue(), self.compressed)
        self.assertEqual(result.crypto_operation, LayerCrypto.DECRYPT)
        self.assertEqual(result.media_type, MEDIA_TYPE_OCI_LAYER_GZIP)
        self.assertEqual(result.annotations, {'org.example.note': 'keep'})
        self.assertEqual(result.compression_operation, CompressionOperation.PRESERVE_ORIGINAL)
        self.assertIs(result.compression_algorithm, GZIP)
        self.assertEqual(decrypter.annotations[ENC_KEY_ANNOTATION], 'wrapped-key')
        self.assertEqual(sink.infos[0].digest, '')
        self.assertEqual(sink.infos[0].media_type, MEDIA_TYPE_OCI_LAYER_GZIP)

    def test_decrypt_then_decompress(self):
        sink = MemorySink(LayerCompression.DECOMPRESS)
        result = BlobCopier(sink, CopyOptions(decrypter=FakeDecrypter())).copy_blob_from_stream(
            io.BytesIO(self.ciphertext), self.src_info, can_modify_blob=True)
        self.assertEqual(sink.data, self.plain)
        self.assertEqual(result.compression_operation, CompressionOperation.DECOMPRESS)
        self.assertEqual(result.crypto_operation, LayerCrypto.DECRYPT)

    def test_without_decrypter_ciphertext_passes_through(self):
        sink = MemorySink()
        result = BlobCopier(sink).copy_blob_from_stream(io.BytesIO(self.ciphertext), self.src_info)
        self.assertEqual(sink.data, self.ciphertext)
        self.assertEqual(result.digest, self.src_info.digest)
        self.assertEqual(result.crypto_operation, LayerCrypto.PRESERVE_ORIGINAL)

    def test_decrypter_setup_failure(self):
        sink = MemorySink()
        with self.assertRaises(CryptoError):
            BlobCopier(sink, CopyOptions(decrypter=FakeDecrypter(fail=True))).copy_blob_from_stream(
                io.BytesIO(self.ciphertext), self.src_info)
        self.assertEqual(sink.infos, [])

    def test_decrypt_and_encrypt_conflict(self):
        """Rejected before a single byte is read"""
        sink = MemorySink()
        copier = BlobCopier(sink, CopyOptions(decrypter=FakeDecrypter(), encrypter=FakeEncrypter()))
        with self.assertRaises(PolicyConflictError):
            copier.copy_blob_from_stream(ExplodingReader(), self.src_info, to_encrypt=True)
        self.assertEqual(sink.infos, [])


if __name__ == '__main__':
    unittest.main()
