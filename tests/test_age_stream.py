import io
import os
import unittest

from folderlock import (
    CHUNK_SIZE,
    ENCRYPTED_CHUNK_SIZE,
    PAYLOAD_NONCE_LEN,
    TAG_LEN,
    AgeReader,
    AgeWriter,
    AuthenticationError,
    FileSink,
    FileSource,
    FormatError,
    UnsupportedModeError,
    b64encode_raw,
    encode_stanza,
)
from tests.support import TEST_WORK_FACTOR, age_encrypt, header_length, secret


def _decrypt(artifact: bytes, passphrase: str = "correct-horse", **kwargs) -> bytes:
    reader = AgeReader(FileSource(io.BytesIO(artifact)), secret(passphrase), **kwargs)
    data = reader.read()
    reader.finish()
    return data


def _forged_header(*stanzas: bytes) -> bytes:
    return (
        b"age-encryption.org/v1\n"
        + b"".join(stanzas)
        + b"--- "
        + b64encode_raw(os.urandom(32))
        + b"\n"
        + os.urandom(PAYLOAD_NONCE_LEN)
        + os.urandom(64)
    )


class TestAgeRoundTrip(unittest.TestCase):
    def test_round_trip_across_chunk_boundaries(self) -> None:
        for size in (0, 1, CHUNK_SIZE - 1, CHUNK_SIZE, CHUNK_SIZE + 1, 3 * CHUNK_SIZE + 17):
            with self.subTest(size=size):
                payload = os.urandom(size)
                self.assertEqual(_decrypt(age_encrypt(payload)), payload)

    def test_small_writes_are_accumulated(self) -> None:
        payload = os.urandom(2 * CHUNK_SIZE + 100)
        out = io.BytesIO()
        writer = AgeWriter(FileSink(out), secret(), work_factor=TEST_WORK_FACTOR)
        for i in range(0, len(payload), 1000):
            writer.write(payload[i:i + 1000])
        writer.finish()
        self.assertEqual(_decrypt(out.getvalue()), payload)

    def test_header_layout(self) -> None:
        artifact = age_encrypt(b"data")
        lines = artifact.split(b"\n")
        self.assertEqual(lines[0], b"age-encryption.org/v1")
        self.assertTrue(lines[1].startswith(b"-> scrypt "))
        self.assertTrue(lines[1].endswith(b" " + str(TEST_WORK_FACTOR).encode()))
        self.assertEqual(len(lines[2]), 43)
        self.assertTrue(lines[3].startswith(b"--- "))

    def test_exact_chunk_payload_is_a_single_last_chunk(self) -> None:
        artifact = age_encrypt(b"\x00" * CHUNK_SIZE)
        body = artifact[header_length(artifact) + PAYLOAD_NONCE_LEN:]
        self.assertEqual(len(body), ENCRYPTED_CHUNK_SIZE)

    def test_empty_payload_is_one_tag(self) -> None:
        artifact = age_encrypt(b"")
        body = artifact[header_length(artifact) + PAYLOAD_NONCE_LEN:]
        self.assertEqual(len(body), TAG_LEN)

    def test_partial_reads(self) -> None:
        payload = os.urandom(CHUNK_SIZE + 10)
        reader = AgeReader(FileSource(io.BytesIO(age_encrypt(payload))), secret())
        pieces = []
        while True:
            piece = reader.read(777)
            if not piece:
                break
            self.assertLessEqual(len(piece), 777)
            pieces.append(piece)
        self.assertEqual(b"".join(pieces), payload)


class TestAgeRejections(unittest.TestCase):
    def test_wrong_passphrase_fails_on_header(self) -> None:
        artifact = age_encrypt(b"secret data")
        with self.assertRaises(AuthenticationError):
            AgeReader(FileSource(io.BytesIO(artifact)), secret("wrong"))

    def test_flipped_payload_byte(self) -> None:
        artifact = bytearray(age_encrypt(os.urandom(3 * CHUNK_SIZE)))
        artifact[-CHUNK_SIZE] ^= 0x01
        with self.assertRaises(AuthenticationError):
            _decrypt(bytes(artifact))

    def test_flipped_nonce_byte(self) -> None:
        artifact = bytearray(age_encrypt(b"payload"))
        artifact[header_length(bytes(artifact))] ^= 0x80
        with self.assertRaises(AuthenticationError):
            _decrypt(bytes(artifact))

    def test_truncation_at_chunk_boundary(self) -> None:
        artifact = age_encrypt(os.urandom(2 * CHUNK_SIZE + 5))
        start = header_length(artifact) + PAYLOAD_NONCE_LEN
        truncated = artifact[:start + 2 * ENCRYPTED_CHUNK_SIZE]
        with self.assertRaises(AuthenticationError):
            _decrypt(truncated)

    def test_appended_bytes(self) -> None:
        artifact = age_encrypt(b"payload") + b"\x00" * 32
        with self.assertRaises(AuthenticationError):
            _decrypt(artifact)

    def test_missing_payload(self) -> None:
        artifact = age_encrypt(b"payload")
        without_payload = artifact[:header_length(artifact) + PAYLOAD_NONCE_LEN]
        with self.assertRaises(FormatError):
            _decrypt(without_payload)

    def test_missing_nonce(self) -> None:
        artifact = age_encrypt(b"payload")
        with self.assertRaises(FormatError):
            _decrypt(artifact[:header_length(artifact) + 3])

    def test_bad_version_line(self) -> None:
        artifact = age_encrypt(b"payload").replace(b"age-encryption.org/v1", b"age-encryption.org/v2", 1)
        with self.assertRaises(FormatError):
            _decrypt(artifact)

    def test_armored_file(self) -> None:
        with self.assertRaises(FormatError):
            _decrypt(b"-----BEGIN AGE ENCRYPTED FILE-----\nYWdl\n-----END AGE ENCRYPTED FILE-----\n")

    def test_not_an_age_file(self) -> None:
        with self.assertRaises(FormatError):
            _decrypt(b"\x1f\x8b\x08\x00 definitely not age")

    def test_work_factor_above_limit(self) -> None:
        artifact = age_encrypt(b"payload")
        with self.assertRaises(FormatError):
            _decrypt(artifact, max_work_factor=TEST_WORK_FACTOR - 1)

    def test_tampered_mac(self) -> None:
        artifact = bytearray(age_encrypt(b"payload"))
        mac_at = bytes(artifact).index(b"\n--- ") + 5
        artifact[mac_at] = ord("A") if artifact[mac_at] != ord("A") else ord("B")
        with self.assertRaises(AuthenticationError):
            _decrypt(bytes(artifact))

    def test_padded_base64_rejected(self) -> None:
        artifact = age_encrypt(b"payload")
        end = header_length(artifact) - 1
        padded = artifact[:end] + b"=" + artifact[end:]
        with self.assertRaises(FormatError):
            _decrypt(padded)

    def test_recipient_file_is_unsupported(self) -> None:
        forged = _forged_header(encode_stanza(b"X25519", [b64encode_raw(os.urandom(32))], os.urandom(32)))
        with self.assertRaises(UnsupportedModeError):
            _decrypt(forged)

    def test_scrypt_must_be_alone(self) -> None:
        forged = _forged_header(
            encode_stanza(b"scrypt", [b64encode_raw(os.urandom(16)), b"10"], os.urandom(32)),
            encode_stanza(b"X25519", [b64encode_raw(os.urandom(32))], os.urandom(32)),
        )
        with self.assertRaises(FormatError) as ctx:
            _decrypt(forged)
        self.assertNotIsInstance(ctx.exception, UnsupportedModeError)


class TestAgeWriterFinish(unittest.TestCase):
    def test_final_chunk_is_written_on_finish(self) -> None:
        out = io.BytesIO()
        writer = AgeWriter(FileSink(out), secret(), work_factor=TEST_WORK_FACTOR)
        writer.write(b"x" * 10)
        before = len(out.getvalue())
        writer.finish()
        self.assertEqual(len(out.getvalue()), before + 10 + TAG_LEN)

    def test_finish_is_idempotent(self) -> None:
        out = io.BytesIO()
        writer = AgeWriter(FileSink(out), secret(), work_factor=TEST_WORK_FACTOR)
        writer.write(b"abc")
        writer.finish()
        size = len(out.getvalue())
        writer.finish()
        self.assertEqual(len(out.getvalue()), size)

    def test_write_after_finish(self) -> None:
        writer = AgeWriter(FileSink(io.BytesIO()), secret(), work_factor=TEST_WORK_FACTOR)
        writer.finish()
        with self.assertRaises(ValueError):
            writer.write(b"late")


if __name__ == "__main__":
    unittest.main()
