"""
Unit tests for layer root digests.
"""
import gzip
import hashlib
import io
import tarfile

import pytest

from conftest import make_tar
from secpol.CONVERTERS.layer_hasher import (
    BLOCK_SIZE,
    CanonicalTarHasher,
    CommandLayerHasher,
    canonical_path,
    merkle_root,
)
from secpol.errors import DecompressionError, LayerConversionError

FILES = {
    "etc/hostname": b"sandbox\n",
    "usr/bin/tool": b"\x7fELF" + b"\0" * 5000,
    "app/main.py": b"print('hello')\n",
}


def digest_of(data: bytes) -> str:
    return CanonicalTarHasher().root_digest(io.BytesIO(data))


def build_tar(members) -> bytes:
    """members: (TarInfo, content or None) pairs written in order."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for info, content in members:
            if content is not None:
                info.size = len(content)
                tar.addfile(info, io.BytesIO(content))
            else:
                tar.addfile(info)
    return buf.getvalue()


def directory(name: str, mode: int = 0o755, mtime: int = 0) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = mode
    info.mtime = mtime
    return info


def regular(name: str, mtime: int = 1600000000) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.mode = 0o644
    info.mtime = mtime
    return info


class TestCanonicalPath:

    @pytest.mark.parametrize("name, expected", [
        ("./usr//bin/", "/usr/bin"),
        ("usr/bin", "/usr/bin"),
        ("/usr/bin", "/usr/bin"),
        ("./", "/"),
        ("", "/"),
    ])
    def test_normalization(self, name, expected):
        assert canonical_path(name) == expected


class TestMerkleRoot:

    def test_empty_data_hashes_one_zero_block(self):
        leaf = hashlib.sha256(bytes(BLOCK_SIZE)).digest()
        expected = hashlib.sha256(leaf.ljust(BLOCK_SIZE, b"\0")).hexdigest()
        assert merkle_root(b"") == expected

    def test_two_blocks(self):
        data = b"a" * BLOCK_SIZE + b"b"
        first = hashlib.sha256(b"a" * BLOCK_SIZE).digest()
        second = hashlib.sha256(b"b".ljust(BLOCK_SIZE, b"\0")).digest()
        expected = hashlib.sha256((first + second).ljust(BLOCK_SIZE, b"\0")).hexdigest()
        assert merkle_root(data) == expected

    def test_many_blocks_reduce_to_one_root(self):
        # 200 leaves need two hash blocks, so a second level is built
        root = merkle_root(bytes(range(256)) * 16 * 200)
        assert len(root) == 64


class TestCanonicalTarHasher:

    def test_digest_format(self):
        digest = digest_of(make_tar(FILES))
        assert len(digest) == 64
        assert digest == digest.lower()
        int(digest, 16)

    def test_member_order_does_not_matter(self):
        assert digest_of(make_tar(FILES)) == digest_of(make_tar(FILES, reverse=True))

    def test_header_format_does_not_matter(self):
        assert digest_of(make_tar(FILES)) == digest_of(make_tar(FILES, fmt=tarfile.GNU_FORMAT))

    def test_compression_does_not_matter(self):
        plain = make_tar(FILES)
        compressed = gzip.GzipFile(fileobj=io.BytesIO(gzip.compress(plain)))
        assert CanonicalTarHasher().root_digest(compressed) == digest_of(plain)

    def test_content_changes_digest(self):
        changed = dict(FILES, **{"etc/hostname": b"other\n"})
        assert digest_of(make_tar(FILES)) != digest_of(make_tar(changed))

    def test_mtime_changes_digest(self):
        assert digest_of(make_tar(FILES)) != digest_of(make_tar(FILES, mtime=1700000000))

    def test_implicit_parent_directories(self):
        implicit = build_tar([(regular("a/b/c.txt"), b"data")])
        explicit = build_tar([
            (directory("a"), None),
            (directory("a/b"), None),
            (regular("a/b/c.txt"), b"data"),
        ])
        assert digest_of(implicit) == digest_of(explicit)

    def test_later_member_wins(self):
        overwritten = build_tar([
            (regular("etc/motd"), b"first"),
            (regular("etc/motd"), b"second"),
        ])
        single = build_tar([(regular("etc/motd"), b"second")])
        assert digest_of(overwritten) == digest_of(single)

    def test_symlink_target_recorded(self):
        def link(target):
            info = tarfile.TarInfo("bin/sh")
            info.type = tarfile.SYMTYPE
            info.linkname = target
            return build_tar([(info, None)])

        assert digest_of(link("/bin/bash")) != digest_of(link("/bin/dash"))

    def test_serialize_sorted_lines(self):
        entries = {
            "/b": {"path": "/b", "type": "dir"},
            "/a": {"path": "/a", "type": "dir"},
        }
        assert CanonicalTarHasher.serialize(entries) == (
            b'{"path":"/a","type":"dir"}\n{"path":"/b","type":"dir"}\n'
        )

    def test_stream_closed(self):
        stream = io.BytesIO(make_tar(FILES))
        CanonicalTarHasher().root_digest(stream)
        assert stream.closed

    @pytest.mark.parametrize("data", [b"", b"not a tar archive" * 64])
    def test_malformed_tar(self, data):
        with pytest.raises(LayerConversionError):
            digest_of(data)

    def test_corrupt_gzip(self):
        stream = gzip.GzipFile(fileobj=io.BytesIO(b"\x1f\x8b" + b"garbage" * 100))
        with pytest.raises(DecompressionError):
            CanonicalTarHasher().root_digest(stream)


class TestCommandLayerHasher:

    def test_digest_from_last_line(self):
        hasher = CommandLayerHasher(["sh", "-c", "cat > /dev/null; echo converting; sha256sum /dev/null | cut -c1-64"])
        digest = hasher.root_digest(io.BytesIO(b"layer"))
        assert digest == hashlib.sha256(b"").hexdigest()

    def test_tool_receives_layer_on_stdin(self):
        data = make_tar(FILES)
        hasher = CommandLayerHasher(["sh", "-c", "sha256sum | cut -c1-64"])
        assert hasher.root_digest(io.BytesIO(data)) == hashlib.sha256(data).hexdigest()

    def test_nonzero_exit(self):
        hasher = CommandLayerHasher(["sh", "-c", "cat > /dev/null; echo broken layer >&2; exit 3"])
        with pytest.raises(LayerConversionError) as exc_info:
            hasher.root_digest(io.BytesIO(b"layer"))
        assert "status 3" in str(exc_info.value)
        assert exc_info.value.context["stderr"] == "broken layer"

    def test_no_digest_printed(self):
        hasher = CommandLayerHasher(["sh", "-c", "cat > /dev/null; echo done"])
        with pytest.raises(LayerConversionError, match="no root digest"):
            hasher.root_digest(io.BytesIO(b"layer"))

    def test_missing_tool(self):
        stream = io.BytesIO(b"layer")
        with pytest.raises(LayerConversionError, match="unable to start"):
            CommandLayerHasher(["/nonexistent/secpol-hasher"]).root_digest(stream)
        assert stream.closed

    def test_timeout(self):
        hasher = CommandLayerHasher(["sh", "-c", "cat > /dev/null; exec sleep 5"], timeout=0.2)
        with pytest.raises(LayerConversionError, match="timed out"):
            hasher.root_digest(io.BytesIO(b"layer"))

    def test_decompression_error_while_streaming(self):
        stream = gzip.GzipFile(fileobj=io.BytesIO(b"\x1f\x8b" + b"garbage" * 100))
        hasher = CommandLayerHasher(["sh", "-c", "cat > /dev/null; sha256sum /dev/null | cut -c1-64"])
        with pytest.raises(DecompressionError):
            hasher.root_digest(stream)

    def test_empty_command(self):
        with pytest.raises(ValueError):
            CommandLayerHasher([])
