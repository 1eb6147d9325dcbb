# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Root digests of image layers.

A root digest is computed over a canonical reconstruction of the layer's
filesystem rather than over the blob bytes, so layers that differ only in
compression, tar member order or header encoding hash identically.
"""
import gzip
import hashlib
import json
import logging
import posixpath
import re
import shutil
import subprocess
import tarfile
import tempfile
import threading
import zlib
from typing import Any, BinaryIO, Dict, Iterator, List, Optional, Protocol

from ..errors import DecompressionError, LayerConversionError

logger = logging.getLogger(__name__)

BLOCK_SIZE = 4096
_HEX_DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")
_XATTR_PREFIX = "SCHILY.xattr."


class LayerHasher(Protocol):
    """
    Anything that turns an uncompressed layer tar stream into a root digest.
    """

    def root_digest(self, stream: BinaryIO) -> str:
        ...


def canonical_path(name: str) -> str:
    """
    Normalizes a tar member name to an absolute path that cannot leave
    the layer root: './usr//bin/' -> '/usr/bin', '../etc' -> '/etc'.
    """
    return posixpath.normpath("/" + name.lstrip("/"))


def _iter_blocks(data: bytes) -> Iterator[bytes]:
    if not data:
        yield bytes(BLOCK_SIZE)
        return
    for offset in range(0, len(data), BLOCK_SIZE):
        block = data[offset:offset + BLOCK_SIZE]
        yield block.ljust(BLOCK_SIZE, b"\0")


def merkle_root(data: bytes) -> str:
    """
    dm-verity style root hash: sha256 over 4096-byte blocks, digests packed
    into hash blocks level by level until a single block remains, whose
    hash is the root. No salt.
    """
    level = [hashlib.sha256(block).digest() for block in _iter_blocks(data)]
    while True:
        hash_blocks = list(_iter_blocks(b"".join(level)))
        if len(hash_blocks) == 1:
            return hashlib.sha256(hash_blocks[0]).hexdigest()
        level = [hashlib.sha256(block).digest() for block in hash_blocks]


class CanonicalTarHasher:
    """
    Default hasher: canonical metadata listing of the layer, then a merkle
    root over it.

    Each filesystem entry becomes one JSON line holding its path, type,
    permission bits, owner, mtime, link target, device numbers, xattrs and
    (for regular files) size and content sha256. Later tar members replace
    earlier ones with the same path, missing parent directories are
    synthesized, and lines are sorted by path.
    """

    def root_digest(self, stream: BinaryIO) -> str:
        """
        Args:
            stream: Uncompressed tar stream of the layer. Always closed.

        Returns:
            64 lower-case hex characters.

        Raises:
            DecompressionError: If the stream cannot be decompressed.
            LayerConversionError: If the tar is malformed.
        """
        try:
            entries = self._read_entries(stream)
        except (gzip.BadGzipFile, zlib.error, EOFError) as e:
            raise DecompressionError(f"unable to decompress layer: {e}") from e
        except (tarfile.TarError, OSError) as e:
            raise LayerConversionError(f"unable to read layer tar: {e}") from e
        finally:
            stream.close()

        digest = merkle_root(self.serialize(entries))
        logger.debug("Hashed layer with %d entries: %s", len(entries), digest)
        return digest

    @staticmethod
    def serialize(entries: Dict[str, Dict[str, Any]]) -> bytes:
        lines = []
        for path in sorted(entries):
            line = json.dumps(entries[path], sort_keys=True, separators=(",", ":"), ensure_ascii=False)
            lines.append(line.encode("utf-8", "surrogateescape") + b"\n")
        return b"".join(lines)

    def _read_entries(self, stream: BinaryIO) -> Dict[str, Dict[str, Any]]:
        entries: Dict[str, Dict[str, Any]] = {}
        with tarfile.open(fileobj=stream, mode="r|") as tar:
            for member in tar:
                record = self._record(tar, member)
                entries[record["path"]] = record

        for path in list(entries):
            parent = posixpath.dirname(path)
            while parent not in entries:
                entries[parent] = _implicit_dir(parent)
                parent = posixpath.dirname(parent)
        entries.setdefault("/", _implicit_dir("/"))
        return entries

    def _record(self, tar: tarfile.TarFile, member: tarfile.TarInfo) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "path": canonical_path(member.name),
            "type": _entry_type(member),
            "mode": member.mode & 0o7777,
            "uid": member.uid,
            "gid": member.gid,
            "mtime": int(member.mtime),
        }

        if member.isreg():
            record["size"] = member.size
            record["sha256"] = _content_digest(tar, member)
        elif member.islnk():
            record["link"] = canonical_path(member.linkname)
        elif member.issym():
            record["link"] = member.linkname
        elif member.ischr() or member.isblk():
            record["devmajor"] = member.devmajor
            record["devminor"] = member.devminor

        xattrs = {
            key[len(_XATTR_PREFIX):]: value
            for key, value in sorted(member.pax_headers.items())
            if key.startswith(_XATTR_PREFIX)
        }
        if xattrs:
            record["xattrs"] = xattrs
        return record


def _entry_type(member: tarfile.TarInfo) -> str:
    if member.isreg():
        return "file"
    if member.isdir():
        return "dir"
    if member.issym():
        return "symlink"
    if member.islnk():
        return "hardlink"
    if member.ischr():
        return "char"
    if member.isblk():
        return "block"
    if member.isfifo():
        return "fifo"
    raise LayerConversionError(f"unsupported tar entry type {member.type!r}", {"path": member.name})


def _content_digest(tar: tarfile.TarFile, member: tarfile.TarInfo) -> str:
    hasher = hashlib.sha256()
    extracted = tar.extractfile(member)
    if extracted is not None:
        with extracted:
            for chunk in iter(lambda: extracted.read(1 << 16), b""):
                hasher.update(chunk)
    return hasher.hexdigest()


def _implicit_dir(path: str) -> Dict[str, Any]:
    return {"path": path, "type": "dir", "mode": 0o755, "uid": 0, "gid": 0, "mtime": 0}


class CommandLayerHasher:
    """
    Delegates hashing to an external tool that reads the uncompressed
    layer tar on stdin and prints the hex root digest on stdout, e.g. a
    tar-to-ext4 converter computing the dm-verity root of the result.
    """

    def __init__(self, command: List[str], timeout: Optional[float] = None):
        """
        Args:
            command: Argument vector of the tool; run without a shell.
            timeout: Seconds to wait for the tool after its input is sent.
        """
        if not command:
            raise ValueError("hasher command must not be empty")
        self.command = list(command)
        self.timeout = timeout

    def root_digest(self, stream: BinaryIO) -> str:
        stderr = tempfile.TemporaryFile()
        try:
            process = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=stderr,
                shell=False,
            )
        except OSError as e:
            stream.close()
            stderr.close()
            raise LayerConversionError(f"unable to start hasher {self.command[0]}: {e}") from e

        feed_errors: List[BaseException] = []
        output: List[bytes] = []
        writer = threading.Thread(target=_feed, args=(stream, process.stdin, feed_errors), daemon=True)
        reader = threading.Thread(target=_drain, args=(process.stdout, output), daemon=True)
        writer.start()
        reader.start()

        try:
            process.wait(timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            process.kill()
            process.wait()
            stderr.close()
            raise LayerConversionError(f"hasher {self.command[0]} timed out") from e
        finally:
            writer.join()
            reader.join()
        stdout = b"".join(output)

        if feed_errors:
            stderr.close()
            error = feed_errors[0]
            if isinstance(error, (gzip.BadGzipFile, zlib.error, EOFError)):
                raise DecompressionError(f"unable to decompress layer: {error}") from error
            raise LayerConversionError(f"unable to stream layer to hasher: {error}") from error

        if process.returncode != 0:
            raise LayerConversionError(
                f"hasher {self.command[0]} exited with status {process.returncode}",
                {"stderr": _tail(stderr)},
            )

        stderr.close()
        lines = [line.strip() for line in stdout.decode("utf-8", "replace").splitlines() if line.strip()]
        digest = lines[-1].lower() if lines else ""
        if not _HEX_DIGEST_RE.match(digest):
            raise LayerConversionError(f"hasher {self.command[0]} printed no root digest")
        return digest


def _feed(stream: BinaryIO, sink: BinaryIO, errors: List[BaseException]) -> None:
    try:
        shutil.copyfileobj(stream, sink, 1 << 16)
    except BrokenPipeError:
        # The tool stopped reading; its exit status reports why.
        pass
    except (OSError, EOFError, zlib.error) as e:
        errors.append(e)
    finally:
        stream.close()
        try:
            sink.close()
        except BrokenPipeError:
            pass


def _drain(source: BinaryIO, chunks: List[bytes]) -> None:
    with source:
        chunks.append(source.read())


def _tail(stderr: Any, limit: int = 500) -> str:
    if stderr is None:
        return ""
    try:
        stderr.seek(0)
        text = stderr.read().decode("utf-8", "replace").strip()
    finally:
        stderr.close()
    return text[-limit:]
