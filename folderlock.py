#!/usr/bin/env python3
# folderlock.py
#
# Packs a folder into a single passphrase-encrypted file and unpacks it again.
# Layering: tar (PAX, streamed) -> gzip -> age v1 (scrypt stanza, STREAM payload).
# Every layer is a stage wrapping the one beneath it; nothing is buffered whole.
#
# Dependencies: stdlib + cryptography

from __future__ import annotations

import argparse
import base64
import binascii
import os
import secrets
import shutil
import stat
import sys
import tarfile
import warnings
import zlib
from dataclasses import dataclass
from getpass import GetPassWarning, getpass
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Iterable, List, Optional, Protocol, Sequence, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

__version__ = "0.1.0"


# =========================
# Constants / Limits
# =========================

AGE_VERSION_LINE = b"age-encryption.org/v1"
AGE_ARMOR_LINE = b"-----BEGIN AGE ENCRYPTED FILE-----"
SCRYPT_STANZA = b"scrypt"
SCRYPT_LABEL = b"age-encryption.org/v1/scrypt"
SCRYPT_R = 8
SCRYPT_P = 1

SALT_LEN = 16
FILE_KEY_LEN = 16
PAYLOAD_NONCE_LEN = 16
KEY_LEN = 32
TAG_LEN = 16
MAC_LEN = 32
WRAP_NONCE = bytes(12)

# STREAM payload: 64 KiB plaintext chunks, 11-byte counter + last flag as nonce
CHUNK_SIZE = 64 * 1024
ENCRYPTED_CHUNK_SIZE = CHUNK_SIZE + TAG_LEN
COUNTER_LEN = 11
COUNTER_MAX = (1 << (8 * COUNTER_LEN)) - 1

# scrypt work factor is log2(N)
DEFAULT_WORK_FACTOR = 18
MIN_WORK_FACTOR = 1
MAX_WORK_FACTOR = 22

DEFAULT_COMPRESSION_LEVEL = 6
MIN_COMPRESSION_LEVEL = 0
MAX_COMPRESSION_LEVEL = 9
GZIP_WBITS = 16 + zlib.MAX_WBITS

READ_SIZE = 64 * 1024

# DoS / sanity limits for header parsing
MAX_HEADER_LINE = 4096
MAX_STANZAS = 64
STANZA_COLUMNS = 64

TMP_SUFFIX = ".agetmp"
STAGING_PREFIX = ".folderlock-"
STAGING_SUFFIX = ".part"

PASSPHRASE_PROMPT = "Enter passphrase (input hidden): "

# extraction filters landed in 3.10.12, 3.11.4 and 3.12
TAR_FILTERS_AVAILABLE = hasattr(tarfile, "data_filter")


# =========================
# Errors
# =========================

class FolderLockError(Exception):
    pass


class PreconditionError(FolderLockError):
    pass


class SecretError(PreconditionError):
    pass


class ResourceError(FolderLockError):
    def __init__(self, message: str, path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.path = path


class FormatError(FolderLockError):
    pass


class UnsupportedModeError(FormatError):
    pass


class AuthenticationError(FolderLockError):
    pass


class ArchiveError(FolderLockError):
    pass


# =========================
# Helpers
# =========================

def eprint(*args: object) -> None:
    print(*args, file=sys.stderr)


def wipe(secret: bytearray) -> None:
    if isinstance(secret, bytearray):
        secret[:] = bytes(len(secret))


def compare_digest(a: bytes, b: bytes) -> bool:
    return secrets.compare_digest(a, b)


def _ensure_work_factor_ok(work_factor: int, limit: int = MAX_WORK_FACTOR) -> None:
    if not (MIN_WORK_FACTOR <= work_factor <= limit):
        raise PreconditionError(
            f"--work-factor must be in [{MIN_WORK_FACTOR} .. {limit}], got {work_factor}"
        )


def _ensure_compression_level_ok(level: int) -> None:
    if not (MIN_COMPRESSION_LEVEL <= level <= MAX_COMPRESSION_LEVEL):
        raise PreconditionError(
            f"--compression-level must be in [{MIN_COMPRESSION_LEVEL} .. {MAX_COMPRESSION_LEVEL}], got {level}"
        )


def _fsync_fileobj_best_effort(f: BinaryIO) -> None:
    try:
        f.flush()
        os.fsync(f.fileno())
    except (OSError, ValueError):
        pass


def _fsync_dir_best_effort(dir_path: Path) -> None:
    if os.name != "posix":
        return
    try:
        fd = os.open(str(dir_path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def _unlink_best_effort(p: Path) -> None:
    try:
        p.unlink()
    except OSError:
        pass


def _rmtree_best_effort(p: Path) -> None:
    # Extracted directories may be read-only; restore owner access before removal.
    if not p.exists():
        return
    for dirpath, dirnames, _ in os.walk(p):
        for name in dirnames:
            child = os.path.join(dirpath, name)
            if not os.path.islink(child):
                try:
                    os.chmod(child, stat.S_IRWXU)
                except OSError:
                    pass
    shutil.rmtree(p, ignore_errors=True)


def _random_token(nbytes: int = 8) -> str:
    return secrets.token_hex(nbytes)


def _posix_open_flags_no_follow() -> int:
    return getattr(os, "O_NOFOLLOW", 0)


def _secure_open_exclusive(path: Path, *, mode: int = 0o600) -> int:
    flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL | getattr(os, "O_BINARY", 0)
    if os.name == "posix":
        flags |= _posix_open_flags_no_follow()
    return os.open(str(path), flags, mode)


def _secure_create_tmp_file(
    parent_dir: Path,
    base_name: str,
    *,
    prefix: str = "",
    suffix: str = "",
) -> Tuple[Path, BinaryIO]:
    if not parent_dir.is_dir():
        raise ResourceError(f"Output directory does not exist: {parent_dir}", parent_dir)
    parent_dir = parent_dir.resolve()

    for _ in range(128):
        tmp_path = parent_dir / f"{prefix}{base_name}{suffix}.{_random_token(8)}"
        try:
            fd = _secure_open_exclusive(tmp_path, mode=0o600 if os.name == "posix" else 0o666)
        except FileExistsError:
            continue
        except OSError as ex:
            raise ResourceError(f"Failed to create temporary file in {parent_dir} ({ex})", parent_dir) from ex

        try:
            f = os.fdopen(fd, "wb", closefd=True)
        except Exception:
            os.close(fd)
            _unlink_best_effort(tmp_path)
            raise
        return tmp_path, f

    raise ResourceError(f"Failed to create a unique temporary file in {parent_dir} (too many collisions).", parent_dir)


def _secure_create_tmp_dir(parent_dir: Path, *, prefix: str = "", suffix: str = "") -> Path:
    for _ in range(128):
        tmp_path = parent_dir / f"{prefix}{_random_token(8)}{suffix}"
        try:
            os.mkdir(tmp_path, 0o700)
        except FileExistsError:
            continue
        except OSError as ex:
            raise ResourceError(f"Failed to create staging directory in {parent_dir} ({ex})", parent_dir) from ex
        return tmp_path

    raise ResourceError(f"Failed to create a unique staging directory in {parent_dir} (too many collisions).", parent_dir)


def _atomic_replace_file(tmp_path: Path, final_path: Path) -> None:
    os.replace(tmp_path, final_path)
    _fsync_dir_best_effort(final_path.parent)


def _is_real_dir(p: Path) -> bool:
    return p.is_dir() and not p.is_symlink()


def _is_within(path: str, root: str) -> bool:
    return os.path.commonpath([path, root]) == root


# =========================
# Stage interface
# =========================

class WriteStage(Protocol):
    def write(self, data: bytes) -> int: ...

    def finish(self) -> None: ...


class ReadStage(Protocol):
    def read(self, size: int = -1) -> bytes: ...

    def finish(self) -> None: ...


def _check_not_finished(finished: bool) -> None:
    if finished:
        raise ValueError("write to a finished stage")


def read_exact(stage: ReadStage, n: int, what: str) -> bytes:
    buf = read_up_to(stage, n)
    if len(buf) != n:
        raise FormatError(f"Unexpected EOF while reading {what}.")
    return buf


def read_up_to(stage: ReadStage, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        chunk = stage.read(n - len(buf))
        if not chunk:
            break
        buf += chunk
    return bytes(buf)


def _read_all(stage: ReadStage) -> bytes:
    parts = []
    while True:
        chunk = stage.read(READ_SIZE)
        if not chunk:
            return b"".join(parts)
        parts.append(chunk)


def _drain(stage: ReadStage) -> None:
    while stage.read(READ_SIZE):
        pass


class FileSink:
    def __init__(self, f: BinaryIO) -> None:
        self._f = f
        self._finished = False

    def write(self, data: bytes) -> int:
        _check_not_finished(self._finished)
        self._f.write(data)
        return len(data)

    def finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._f.flush()
        _fsync_fileobj_best_effort(self._f)


class FileSource:
    def __init__(self, f: BinaryIO) -> None:
        self._f = f

    def read(self, size: int = -1) -> bytes:
        return self._f.read(size)

    def finish(self) -> None:
        pass


# =========================
# Base64 / KDF / MAC
# =========================

def b64encode_raw(data: bytes) -> bytes:
    return base64.b64encode(data).rstrip(b"=")


def b64decode_raw(data: bytes) -> bytes:
    if b"=" in data:
        raise FormatError("Padded base64 is not allowed in the age header.")
    try:
        decoded = base64.b64decode(data + b"=" * (-len(data) % 4), validate=True)
    except binascii.Error as ex:
        raise FormatError("Invalid base64 in the age header.") from ex
    if b64encode_raw(decoded) != data:
        raise FormatError("Non-canonical base64 in the age header.")
    return decoded


def scrypt_derive(passphrase: bytearray, salt: bytes, work_factor: int) -> bytes:
    kdf = Scrypt(
        salt=SCRYPT_LABEL + salt,
        length=KEY_LEN,
        n=1 << work_factor,
        r=SCRYPT_R,
        p=SCRYPT_P,
    )
    return kdf.derive(passphrase)


def hkdf_derive(ikm: bytes, salt: bytes, info: bytes) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LEN,
        salt=salt,
        info=info,
    )
    return hkdf.derive(ikm)


def compute_header_mac(file_key: bytes, header_without_mac: bytes) -> bytes:
    h = hmac.HMAC(hkdf_derive(file_key, b"", b"header"), hashes.SHA256())
    h.update(header_without_mac)
    return h.finalize()


def stream_nonce(counter: int, last: bool) -> bytes:
    if not (0 <= counter <= COUNTER_MAX):
        raise FolderLockError("STREAM chunk counter overflow.")
    return counter.to_bytes(COUNTER_LEN, "big") + (b"\x01" if last else b"\x00")


# =========================
# age header encode/decode
# =========================

@dataclass(frozen=True)
class Stanza:
    kind: bytes
    args: Tuple[bytes, ...]
    body: bytes


@dataclass(frozen=True)
class AgeHeader:
    stanzas: Tuple[Stanza, ...]
    header_without_mac: bytes  # everything up to and including "---"
    stored_mac: bytes


def encode_stanza(kind: bytes, args: Sequence[bytes], body: bytes) -> bytes:
    encoded = b64encode_raw(body)
    lines = [encoded[i:i + STANZA_COLUMNS] for i in range(0, len(encoded), STANZA_COLUMNS)]
    # the body ends with the first line shorter than a full column
    if not lines or len(lines[-1]) == STANZA_COLUMNS:
        lines.append(b"")
    out = b" ".join([b"->", kind, *args]) + b"\n"
    return out + b"".join(line + b"\n" for line in lines)


def build_scrypt_header(file_key: bytes, passphrase: bytearray, work_factor: int) -> bytes:
    salt = os.urandom(SALT_LEN)
    wrap_key = scrypt_derive(passphrase, salt, work_factor)
    wrapped = ChaCha20Poly1305(wrap_key).encrypt(WRAP_NONCE, file_key, None)

    header_wo = b"".join([
        AGE_VERSION_LINE + b"\n",
        encode_stanza(SCRYPT_STANZA, [b64encode_raw(salt), str(work_factor).encode("ascii")], wrapped),
        b"---",
    ])
    mac = compute_header_mac(file_key, header_wo)
    return header_wo + b" " + b64encode_raw(mac) + b"\n"


def _read_header_line(stage: ReadStage) -> bytes:
    buf = bytearray()
    while True:
        ch = stage.read(1)
        if not ch:
            raise FormatError("Unexpected EOF while reading the age header.")
        if ch == b"\n":
            return bytes(buf)
        buf += ch
        if len(buf) > MAX_HEADER_LINE:
            raise FormatError("Age header line too long.")


def read_header(stage: ReadStage) -> AgeHeader:
    version = _read_header_line(stage)
    if version != AGE_VERSION_LINE:
        if version.startswith(AGE_ARMOR_LINE[:15]):
            raise FormatError("ASCII-armored age files are not supported.")
        raise FormatError("Not an age-encrypted file (bad version line).")

    raw = bytearray(version + b"\n")
    stanzas: List[Stanza] = []

    while True:
        line = _read_header_line(stage)

        if line.startswith(b"---"):
            if not line.startswith(b"--- "):
                raise FormatError("Malformed MAC line in the age header.")
            raw += b"---"
            stored_mac = b64decode_raw(line[4:])
            if len(stored_mac) != MAC_LEN:
                raise FormatError("Invalid header MAC length.")
            break

        if not line.startswith(b"-> "):
            raise FormatError("Malformed stanza in the age header.")
        if len(stanzas) >= MAX_STANZAS:
            raise FormatError(f"Too many stanzas in the age header (max {MAX_STANZAS}).")
        raw += line + b"\n"

        parts = line[3:].split(b" ")
        if any(not p for p in parts):
            raise FormatError("Empty stanza argument in the age header.")

        body_lines = []
        while True:
            body_line = _read_header_line(stage)
            if len(body_line) > STANZA_COLUMNS:
                raise FormatError("Stanza body line too long.")
            raw += body_line + b"\n"
            body_lines.append(body_line)
            if len(body_line) < STANZA_COLUMNS:
                break

        stanzas.append(Stanza(kind=parts[0], args=tuple(parts[1:]), body=b64decode_raw(b"".join(body_lines))))

    return AgeHeader(stanzas=tuple(stanzas), header_without_mac=bytes(raw), stored_mac=stored_mac)


def _parse_work_factor(raw: bytes, max_work_factor: int) -> int:
    if not raw.isdigit() or (len(raw) > 1 and raw.startswith(b"0")):
        raise FormatError("Invalid scrypt work factor in the age header.")
    work_factor = int(raw)
    if work_factor < MIN_WORK_FACTOR:
        raise FormatError("Invalid scrypt work factor in the age header.")
    if work_factor > max_work_factor:
        raise FormatError(f"scrypt work factor {work_factor} exceeds the limit ({max_work_factor}).")
    return work_factor


def unwrap_file_key(header: AgeHeader, passphrase: bytearray, max_work_factor: int = MAX_WORK_FACTOR) -> bytes:
    if not header.stanzas:
        raise FormatError("Age header contains no stanzas.")

    # recipient files are rejected before any key derivation
    kinds = [s.kind for s in header.stanzas]
    if SCRYPT_STANZA not in kinds:
        names = ", ".join(sorted({k.decode("ascii", "replace") for k in kinds}))
        raise UnsupportedModeError(
            f"File was encrypted for recipients ({names}). This tool only supports passphrase-protected files."
        )
    if len(kinds) != 1:
        raise FormatError("An scrypt stanza must be the only stanza in the age header.")

    stanza = header.stanzas[0]
    if len(stanza.args) != 2:
        raise FormatError("Malformed scrypt stanza.")
    salt = b64decode_raw(stanza.args[0])
    if len(salt) != SALT_LEN:
        raise FormatError("Invalid scrypt salt length.")
    work_factor = _parse_work_factor(stanza.args[1], max_work_factor)
    if len(stanza.body) != FILE_KEY_LEN + TAG_LEN:
        raise FormatError("Invalid scrypt stanza body length.")

    wrap_key = scrypt_derive(passphrase, salt, work_factor)
    try:
        file_key = ChaCha20Poly1305(wrap_key).decrypt(WRAP_NONCE, stanza.body, None)
    except InvalidTag as ex:
        raise AuthenticationError("Incorrect passphrase or corrupted file header.") from ex

    expected_mac = compute_header_mac(file_key, header.header_without_mac)
    if not compare_digest(expected_mac, header.stored_mac):
        raise AuthenticationError("Header MAC mismatch: corrupted or tampered file.")
    return file_key


# =========================
# Cipher stages (age)
# =========================

class AgeWriter:
    """
    Encrypting write stage.

    The header and payload nonce are written to the inner stage on
    construction. Plaintext is sealed in CHUNK_SIZE pieces; one full chunk is
    always held back so that ``finish`` can mark the real final chunk as last.
    """

    def __init__(self, inner: WriteStage, passphrase: bytearray, work_factor: int = DEFAULT_WORK_FACTOR) -> None:
        _ensure_work_factor_ok(work_factor)
        self._inner = inner
        file_key = os.urandom(FILE_KEY_LEN)
        inner.write(build_scrypt_header(file_key, passphrase, work_factor))
        nonce = os.urandom(PAYLOAD_NONCE_LEN)
        inner.write(nonce)
        self._aead = ChaCha20Poly1305(hkdf_derive(file_key, nonce, b"payload"))
        self._buf = bytearray()
        self._counter = 0
        self._finished = False

    def _seal(self, plain: bytes, last: bool) -> None:
        self._inner.write(self._aead.encrypt(stream_nonce(self._counter, last), plain, None))
        self._counter += 1

    def write(self, data: bytes) -> int:
        _check_not_finished(self._finished)
        self._buf += data
        while len(self._buf) > CHUNK_SIZE:
            self._seal(bytes(self._buf[:CHUNK_SIZE]), last=False)
            del self._buf[:CHUNK_SIZE]
        return len(data)

    def finish(self) -> None:
        if self._finished:
            return
        self._seal(bytes(self._buf), last=True)
        self._buf.clear()
        self._finished = True
        self._inner.finish()


class AgeReader:
    """
    Decrypting read stage.

    The header is parsed and authenticated on construction; a wrong passphrase
    fails here, before a single payload byte is read. Chunks are released only
    after their tag verifies. The last-chunk flag is decided by looking one
    chunk ahead, so truncation at a chunk boundary is detected too.
    """

    def __init__(self, inner: ReadStage, passphrase: bytearray, max_work_factor: int = MAX_WORK_FACTOR) -> None:
        self._inner = inner
        header = read_header(inner)
        file_key = unwrap_file_key(header, passphrase, max_work_factor)
        nonce = read_exact(inner, PAYLOAD_NONCE_LEN, "the payload nonce")
        self._aead = ChaCha20Poly1305(hkdf_derive(file_key, nonce, b"payload"))
        self._counter = 0
        self._plain = bytearray()
        self._done = False
        self._finished = False
        self._lookahead = read_up_to(inner, ENCRYPTED_CHUNK_SIZE)

    def _open_next_chunk(self) -> None:
        current = self._lookahead
        if not current:
            raise FormatError("Encrypted payload is missing.")
        self._lookahead = read_up_to(self._inner, ENCRYPTED_CHUNK_SIZE)
        last = not self._lookahead

        if len(current) < TAG_LEN:
            raise FormatError(f"Truncated payload chunk {self._counter}.")
        try:
            plain = self._aead.decrypt(stream_nonce(self._counter, last), current, None)
        except InvalidTag as ex:
            raise AuthenticationError(
                f"Payload chunk {self._counter} failed authentication: corrupted or truncated file."
            ) from ex
        if last and not plain and self._counter > 0:
            raise FormatError("Final payload chunk is empty.")

        self._counter += 1
        self._plain += plain
        self._done = last

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            return _read_all(self)
        while not self._plain and not self._done:
            self._open_next_chunk()
        out = bytes(self._plain[:size])
        del self._plain[:size]
        return out

    def finish(self) -> None:
        if self._finished:
            return
        _drain(self)
        self._finished = True
        self._inner.finish()


# =========================
# Compression stages (gzip)
# =========================

class GzipWriter:
    def __init__(self, inner: WriteStage, level: int = DEFAULT_COMPRESSION_LEVEL) -> None:
        _ensure_compression_level_ok(level)
        self._inner = inner
        self._compressor = zlib.compressobj(level, zlib.DEFLATED, GZIP_WBITS)
        self._finished = False

    def write(self, data: bytes) -> int:
        _check_not_finished(self._finished)
        out = self._compressor.compress(data)
        if out:
            self._inner.write(out)
        return len(data)

    def finish(self) -> None:
        if self._finished:
            return
        self._inner.write(self._compressor.flush())
        self._finished = True
        self._inner.finish()


# single gzip member; anything after its trailer is an error
class GzipReader:
    def __init__(self, inner: ReadStage) -> None:
        self._inner = inner
        self._decompressor = zlib.decompressobj(GZIP_WBITS)
        self._pending = bytearray()
        self._eof = False
        self._finished = False

    def _fill(self) -> None:
        if self._decompressor.eof:
            if self._decompressor.unused_data or self._inner.read(1):
                raise ArchiveError("Unexpected data after the end of the compressed stream.")
            self._eof = True
            return

        data = self._decompressor.unconsumed_tail
        if not data:
            data = self._inner.read(READ_SIZE)
            if not data:
                raise ArchiveError("Compressed stream ended unexpectedly.")
        try:
            self._pending += self._decompressor.decompress(data, READ_SIZE)
        except zlib.error as ex:
            raise ArchiveError(f"Corrupt compressed stream ({ex}).") from ex

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            return _read_all(self)
        while not self._pending and not self._eof:
            self._fill()
        out = bytes(self._pending[:size])
        del self._pending[:size]
        return out

    def finish(self) -> None:
        if self._finished:
            return
        _drain(self)
        self._finished = True
        self._inner.finish()


# =========================
# Tree serializer stages (tar)
# =========================

def validate_member_name(name: str) -> PurePosixPath:
    """
    Path traversal defense for archive member names:
    - no NUL bytes
    - must be relative
    - no '..' components
    An empty result (".", "./") denotes the archive root.
    """
    if "\x00" in name:
        raise ArchiveError("Invalid NUL byte in archive member name.")
    p = PurePosixPath(name)
    if p.is_absolute():
        raise ArchiveError(f"Absolute path in archive is not allowed: {name!r}")
    if ".." in p.parts:
        raise ArchiveError(f"Path traversal component in archive member: {name!r}")
    return p


def extraction_filter(member: tarfile.TarInfo, dest_path: str) -> Optional[tarfile.TarInfo]:
    """
    Per-member extraction policy.

    Keeps permission bits and symlink targets as recorded, drops ownership and
    bits above 0o777, skips the root entry (the destination already exists)
    and refuses anything that would land outside ``dest_path``, including via
    a symlink extracted earlier in the same stream.
    """
    rel = validate_member_name(member.name)
    if not rel.parts:
        return None

    dest_real = os.path.realpath(dest_path)
    parent_real = os.path.realpath(os.path.join(dest_real, *rel.parts[:-1]))
    if not _is_within(parent_real, dest_real):
        raise ArchiveError(f"Archive member escapes the destination: {member.name!r}")

    # tarfile opens regular files through an existing symlink; replace it instead
    target = os.path.join(parent_real, rel.parts[-1])
    if not member.isdir() and os.path.islink(target):
        os.unlink(target)
    if not _is_within(os.path.realpath(target), dest_real):
        raise ArchiveError(f"Archive member escapes the destination: {member.name!r}")

    if member.islnk():
        link_rel = validate_member_name(member.linkname)
        target_real = os.path.realpath(os.path.join(dest_real, *link_rel.parts))
        if not link_rel.parts or not _is_within(target_real, dest_real):
            raise ArchiveError(f"Hard link target escapes the destination: {member.linkname!r}")

    return member.replace(
        mode=member.mode & 0o777,
        uid=None,
        gid=None,
        uname=None,
        gname=None,
        deep=False,
    )


class TarWriter:
    def __init__(self, inner: WriteStage) -> None:
        self._inner = inner
        self._tar = tarfile.open(fileobj=inner, mode="w|", format=tarfile.PAX_FORMAT)
        self._finished = False

    def add_tree(self, root: Path, exclude: Iterable[Path] = ()) -> None:
        # root is recorded as "."; symlinks are stored, not followed
        _check_not_finished(self._finished)
        root = root.resolve()

        skipped = set()
        for p in exclude:
            try:
                rel = (p.parent.resolve() / p.name).relative_to(root)
            except ValueError:
                continue
            skipped.add("./" + rel.as_posix())

        def _skip_excluded(info: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
            return None if info.name in skipped else info

        self._tar.add(str(root), arcname=".", recursive=True, filter=_skip_excluded)

    def finish(self) -> None:
        if self._finished:
            return
        # writes the end-of-archive blocks into the inner stage
        self._tar.close()
        self._finished = True
        self._inner.finish()


class TarReader:
    def __init__(self, inner: ReadStage) -> None:
        self._inner = inner
        self._tar = tarfile.open(fileobj=inner, mode="r|", errorlevel=2)
        self._finished = False

    def extract_all(self, dest: Path) -> None:
        self._tar.extractall(str(dest), filter=extraction_filter)

    def finish(self) -> None:
        if self._finished:
            return
        self._tar.close()
        self._finished = True
        # authenticates every remaining chunk and the gzip trailer
        self._inner.finish()


# =========================
# Staging merge (decrypt)
# =========================

def merge_tree(src_dir: Path, dst_dir: Path) -> None:
    # shared directories merge and take the incoming mode; anything else is replaced
    for name in sorted(os.listdir(src_dir)):
        src = src_dir / name
        dst = dst_dir / name
        src_is_dir = _is_real_dir(src)
        mode = stat.S_IMODE(os.lstat(src).st_mode)

        if src_is_dir and _is_real_dir(dst):
            os.chmod(src, stat.S_IRWXU)
            merge_tree(src, dst)
            os.rmdir(src)
            os.chmod(dst, mode)
            continue

        if _is_real_dir(dst):
            _rmtree_best_effort(dst)
        elif os.path.lexists(dst):
            os.unlink(dst)

        if src_is_dir:
            # moving a directory to another parent needs write access to it
            os.chmod(src, mode | stat.S_IWUSR)
            os.replace(src, dst)
            os.chmod(dst, mode)
        else:
            os.replace(src, dst)


# =========================
# Encrypt
# =========================

def encrypt_folder(
    source_dir: Path,
    out_path: Path,
    passphrase: bytearray,
    *,
    work_factor: int = DEFAULT_WORK_FACTOR,
    compression_level: int = DEFAULT_COMPRESSION_LEVEL,
) -> None:
    """
    Archive, compress and encrypt ``source_dir`` into ``out_path``.

    The artifact is assembled in a temporary file next to ``out_path`` and
    renamed into place only once every stage has been finished; on failure
    ``out_path`` is left as it was. ``passphrase`` is wiped on return.
    """
    try:
        if not passphrase:
            raise SecretError("Empty passphrase is not allowed.")
        _ensure_work_factor_ok(work_factor)
        _ensure_compression_level_ok(compression_level)
        if not source_dir.is_dir():
            raise PreconditionError(f"'{source_dir}' is not a directory")
        if out_path.is_dir():
            raise PreconditionError(f"Output path is an existing directory: {out_path}")

        tmp_path, tmp_f = _secure_create_tmp_file(
            out_path.parent,
            base_name=out_path.name,
            prefix=".",
            suffix=TMP_SUFFIX,
        )

        try:
            with tmp_f:
                archive = TarWriter(
                    GzipWriter(
                        AgeWriter(FileSink(tmp_f), passphrase, work_factor=work_factor),
                        level=compression_level,
                    )
                )
                archive.add_tree(source_dir, exclude=(tmp_path, out_path))
                # tar end marker -> gzip trailer -> final chunk -> file flush
                archive.finish()

            _atomic_replace_file(tmp_path, out_path)

        except Exception:
            _unlink_best_effort(tmp_path)
            raise

    except OSError as ex:
        raise ResourceError(
            f"I/O error while encrypting '{source_dir}' into '{out_path}' ({ex})", out_path
        ) from ex
    except tarfile.TarError as ex:
        raise ArchiveError(f"Failed to archive '{source_dir}' ({ex})") from ex
    finally:
        wipe(passphrase)


# =========================
# Decrypt
# =========================

def decrypt_folder(
    input_path: Path,
    out_dir: Path,
    passphrase: bytearray,
    *,
    max_work_factor: int = MAX_WORK_FACTOR,
) -> None:
    """
    Decrypt, decompress and unpack ``input_path`` into the existing ``out_dir``.

    Entries are extracted into a private staging directory inside ``out_dir``
    and merged into place only after the whole artifact has been read and
    authenticated to its final chunk, so a bad artifact changes nothing. The
    merge itself moves entries one by one; an I/O error part way through
    (e.g. a read-only directory in ``out_dir``) raises ``ResourceError`` and
    leaves the entries moved so far in place. ``passphrase`` is wiped on return.
    """
    try:
        if not passphrase:
            raise SecretError("Empty passphrase is not allowed.")
        if not out_dir.is_dir():
            raise PreconditionError(f"'{out_dir}' is not a directory (please create it first)")
        if not TAR_FILTERS_AVAILABLE:
            raise PreconditionError("This Python lacks tarfile extraction filters; upgrade to 3.10.12, 3.11.4 or 3.12+.")

        try:
            f = open(input_path, "rb")
        except OSError as ex:
            raise ResourceError(f"Failed to open input file {input_path} ({ex})", input_path) from ex

        with f:
            cipher = AgeReader(FileSource(f), passphrase, max_work_factor=max_work_factor)

            staging = _secure_create_tmp_dir(out_dir, prefix=STAGING_PREFIX, suffix=STAGING_SUFFIX)
            try:
                archive = TarReader(GzipReader(cipher))
                archive.extract_all(staging)
                archive.finish()
                merge_tree(staging, out_dir)
            finally:
                _rmtree_best_effort(staging)

    except OSError as ex:
        raise ResourceError(
            f"I/O error while decrypting '{input_path}' into '{out_dir}' ({ex})", out_dir
        ) from ex
    except tarfile.TarError as ex:
        raise ArchiveError(f"Failed to unpack archive from '{input_path}' ({ex})") from ex
    finally:
        wipe(passphrase)


# =========================
# Passphrase
# =========================

def read_passphrase(prompt: str = PASSPHRASE_PROMPT) -> bytearray:
    # never falls back to echoed input
    with warnings.catch_warnings():
        warnings.simplefilter("error", GetPassWarning)
        try:
            text = getpass(prompt)
        except GetPassWarning as ex:
            raise SecretError("Cannot read the passphrase without echoing it (no terminal).") from ex
        except EOFError as ex:
            raise SecretError("Failed to read passphrase.") from ex

    secret = bytearray(text.encode("utf-8"))
    del text
    if not secret:
        raise SecretError("Empty passphrase is not allowed.")
    return secret


# =========================
# CLI
# =========================

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="folderlock",
        description="Packages (tar.gz) and encrypts a folder using a passphrase (age).",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    sub = p.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    enc = sub.add_parser("encrypt", help="Encrypt a folder into an .age file.")
    enc.add_argument("folder", help="Folder to encrypt.")
    enc.add_argument("out", help="Output encrypted file (.age).")
    enc.add_argument(
        "--work-factor",
        type=int,
        default=DEFAULT_WORK_FACTOR,
        help=(
            f"scrypt work factor, log2(N) (default {DEFAULT_WORK_FACTOR}). Range [{MIN_WORK_FACTOR}..{MAX_WORK_FACTOR}].\n"
            "Each step doubles the time and memory needed to try a passphrase."
        ),
    )
    enc.add_argument(
        "--compression-level",
        type=int,
        default=DEFAULT_COMPRESSION_LEVEL,
        help=f"gzip level (default {DEFAULT_COMPRESSION_LEVEL}). Range [{MIN_COMPRESSION_LEVEL}..{MAX_COMPRESSION_LEVEL}].",
    )

    dec = sub.add_parser("decrypt", help="Decrypt an .age file back into a folder.")
    dec.add_argument("input", help="Input encrypted file (.age).")
    dec.add_argument("out_folder", help="Output folder (must exist).")

    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "encrypt":
        folder = Path(args.folder)
        out = Path(args.out)
        _ensure_work_factor_ok(args.work_factor)
        _ensure_compression_level_ok(args.compression_level)
        if not folder.is_dir():
            raise PreconditionError(f"'{folder}' is not a directory")

        passphrase = read_passphrase()
        encrypt_folder(
            folder,
            out,
            passphrase,
            work_factor=args.work_factor,
            compression_level=args.compression_level,
        )
        print(f"Encrypted '{folder}' → '{out}'")
        return 0

    input_path = Path(args.input)
    out_folder = Path(args.out_folder)
    if not out_folder.is_dir():
        raise PreconditionError(f"'{out_folder}' is not a directory (please create it first)")

    passphrase = read_passphrase()
    decrypt_folder(input_path, out_folder, passphrase)
    print(f"Decrypted '{input_path}' → '{out_folder}'")
    return 0


def run(argv: Optional[Sequence[str]] = None) -> int:
    try:
        return main(argv)
    except FolderLockError as ex:
        eprint(f"Error: {ex}")
        return 2
    except KeyboardInterrupt:
        eprint("Interrupted.")
        return 130


if __name__ == "__main__":
    raise SystemExit(run())
