import io
import os
import stat
from pathlib import Path
from typing import Dict, Tuple

from folderlock import AgeWriter, FileSink

# =============================================================================
# Test Constants
# =============================================================================

TEST_PASSPHRASE = "correct-horse"
# keeps scrypt fast; the format allows any work factor
TEST_WORK_FACTOR = 10


def secret(text: str = TEST_PASSPHRASE) -> bytearray:
    return bytearray(text.encode("utf-8"))


def age_encrypt(plaintext: bytes, passphrase: str = TEST_PASSPHRASE) -> bytes:
    out = io.BytesIO()
    writer = AgeWriter(FileSink(out), secret(passphrase), work_factor=TEST_WORK_FACTOR)
    writer.write(plaintext)
    writer.finish()
    return out.getvalue()


def header_length(artifact: bytes) -> int:
    """Length of the age header including the MAC line."""
    mac_line = artifact.index(b"\n--- ") + 1
    return artifact.index(b"\n", mac_line) + 1


def build_sample_tree(root: Path) -> None:
    (root / "a.txt").write_bytes(b"hello")
    os.chmod(root / "a.txt", 0o640)
    (root / "empty.bin").write_bytes(b"")

    nested = root / "sub" / "deeper"
    nested.mkdir(parents=True)
    # incompressible, so the compressed stream spans several cipher chunks
    (nested / "big.bin").write_bytes(os.urandom(200 * 1024))
    os.chmod(nested / "big.bin", 0o600)

    script = root / "sub" / "run.sh"
    script.write_text("#!/bin/sh\necho hi\n")
    os.chmod(script, 0o755)

    (root / "empty_dir").mkdir()
    os.chmod(root / "empty_dir", 0o750)

    os.symlink("a.txt", root / "link_to_a")
    os.symlink("missing/target", root / "dangling")
    os.link(root / "a.txt", root / "hard_a")


def snapshot_tree(root: Path) -> Dict[str, Tuple]:
    """Map of relative path -> (kind, mode or link target, contents)."""
    entries: Dict[str, Tuple] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            p = Path(dirpath) / name
            rel = p.relative_to(root).as_posix()
            st = os.lstat(p)
            if stat.S_ISLNK(st.st_mode):
                entries[rel] = ("symlink", os.readlink(p))
            elif stat.S_ISDIR(st.st_mode):
                entries[rel] = ("dir", stat.S_IMODE(st.st_mode))
            else:
                entries[rel] = ("file", stat.S_IMODE(st.st_mode), p.read_bytes())
    return entries
