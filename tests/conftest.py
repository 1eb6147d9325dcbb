"""
Pytest configuration and fixtures for SecPol tests.

Registry and hasher fakes stand in for the network so tests never leave
the machine.
"""
import io
import tarfile
from typing import Dict, List, Optional

import pytest

from secpol.errors import ImageNotFoundError
from secpol.MODELS.credentials import NoCredential
from secpol.MODELS.tool_config import ToolConfig
from secpol.REGISTRY.registry_client import ImageConfig


def make_tar(files: Dict[str, bytes], mtime: int = 1600000000, reverse: bool = False,
             fmt: int = tarfile.PAX_FORMAT) -> bytes:
    """Builds an uncompressed tar holding the given files."""
    buf = io.BytesIO()
    items = sorted(files.items(), reverse=reverse)
    with tarfile.open(fileobj=buf, mode="w", format=fmt) as tar:
        for name, data in items:
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mtime = mtime
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class FakeLayer:
    def __init__(self, content: bytes, digest: str = ""):
        self.content = content
        self.digest = digest or f"sha256:{len(content):064d}"

    def uncompressed(self):
        return io.BytesIO(self.content)


class FakeImage:
    def __init__(self, layers: List[FakeLayer], config: Optional[ImageConfig] = None):
        self._layers = layers
        self._config = config or ImageConfig()
        self.config_reads = 0

    def layers(self):
        return list(self._layers)

    def config_file(self):
        self.config_reads += 1
        return self._config


class FakeRegistry:
    """Resolves image names from a dict and records every call."""

    def __init__(self, images: Dict[str, FakeImage]):
        self.images = images
        self.calls = []

    def resolve(self, image_name, credential=None):
        self.calls.append((image_name, credential or NoCredential()))
        if image_name not in self.images:
            raise ImageNotFoundError("Not found in registry", {"image": image_name})
        return self.images[image_name]


class FakeHasher:
    """The 'digest' of a layer is its content decoded, so tests can read it."""

    def root_digest(self, stream):
        with stream:
            return stream.read().decode()


@pytest.fixture
def config_data() -> dict:
    """Raw configuration document used across tests."""
    return {
        "version": "1.0.0",
        "hcsshim_config": {"minVersion": "0.9.0", "maxVersion": "0.9.3"},
        "extra_containers": [
            {"image_name": "pause:3.6", "command": ["/pause"]},
        ],
        "openGCS": {"environmentVariables": [{"name": "TERM", "value": "xterm"}]},
        "fabric": {"environmentVariables": [{"name": "Fabric_Id", "value": ".+", "strategy": "re2"}]},
        "managedIdentity": {"environmentVariables": [{"name": "IDENTITY_HEADER", "value": ".+", "strategy": "re2"}]},
        "enableRestart": {"environmentVariables": [{"name": "HOSTNAME", "value": ".+", "strategy": "re2"}]},
        "mount": {
            "source_table": [
                {"mountType": "azureFile", "source": "sandbox:///tmp/atlas/azureFileVolume/.+"},
                {"mountType": "secret", "source": "sandbox:///tmp/atlas/secretsVolume/.+"},
                {"mountType": "azureFile", "source": "sandbox:///shadowed"},
            ],
            "default_policy": {"type": "bind", "options": ["rbind", "rshared"]},
            "default_mounts_user": [
                {"name": "logs", "type": "secret", "path": "/var/log/app", "readonly": True},
            ],
            "default_mounts_global_inject_policy": [
                {"destination": "/etc/resolv.conf", "source": "sandbox:///resolv", "type": "bind",
                 "options": ["rbind", "rshared", "ro"]},
                {"destination": "/etc/hosts", "source": "sandbox:///hosts", "type": "bind",
                 "options": ["rbind", "rshared", "rw"]},
            ],
        },
    }


@pytest.fixture
def tool_config(config_data) -> ToolConfig:
    return ToolConfig.model_validate(config_data)


@pytest.fixture
def empty_config() -> ToolConfig:
    """A configuration without any defaults."""
    return ToolConfig()
