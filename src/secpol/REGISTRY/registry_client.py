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
Container registry client for resolving images and streaming their layers.
Implements the pull side of the Docker Registry HTTP API V2 / OCI
distribution spec.
"""

import base64
import gzip
import hashlib
import json
import logging
import re
import socket
import tempfile
from http.client import HTTPException
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .. import __version__
from ..errors import (
    AuthFailureError,
    DecompressionError,
    ImageNotFoundError,
    NetworkError,
    RegistryError,
)
from ..MODELS.credentials import BasicCredential, BearerCredential, Credential, NoCredential
from .blob_cache import BlobCache
from .image_reference import ImageReference, is_valid_digest

logger = logging.getLogger(__name__)

DOCKER_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"

INDEX_MEDIA_TYPES = (DOCKER_MANIFEST_LIST, OCI_INDEX)
MANIFEST_ACCEPT = ", ".join([DOCKER_MANIFEST_V2, DOCKER_MANIFEST_LIST, OCI_MANIFEST, OCI_INDEX])

USER_AGENT = f"secpol/{__version__}"
CHUNK_SIZE = 1 << 20
GZIP_MAGIC = b"\x1f\x8b"

_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


@dataclass
class ImageConfig:
    """The parts of an image configuration that feed a container policy."""

    entrypoint: List[str] = field(default_factory=list)
    cmd: List[str] = field(default_factory=list)
    working_dir: str = ""

    @classmethod
    def from_blob(cls, data: Dict[str, Any]) -> "ImageConfig":
        config = _expect_object(data.get("config") or {}, "image config section")
        entrypoint = config.get("Entrypoint") or []
        cmd = config.get("Cmd") or []
        working_dir = config.get("WorkingDir") or ""
        if not isinstance(entrypoint, list) or not isinstance(cmd, list) or not isinstance(working_dir, str):
            raise RegistryError("Malformed image config: Entrypoint/Cmd must be lists, WorkingDir a string")
        return cls(entrypoint=list(entrypoint), cmd=list(cmd), working_dir=working_dir)


class _AuthSession:
    """Authorization state for one repository pulled with one credential."""

    def __init__(self, ref: ImageReference, credential: Credential):
        self.ref = ref
        self.credential = credential
        self.authorization: Optional[str] = None
        if isinstance(credential, BearerCredential):
            self.authorization = f"Bearer {credential.token}"


class _OwnedGzipFile(gzip.GzipFile):
    """GzipFile that also closes the file object it wraps."""

    def __init__(self, fileobj: BinaryIO):
        super().__init__(fileobj=fileobj, mode="rb")
        self._raw = fileobj

    def close(self) -> None:
        try:
            super().close()
        finally:
            self._raw.close()


class RemoteLayer:
    """
    One layer of a resolved image, as listed in its manifest.
    """

    def __init__(self, client: "RegistryClient", session: _AuthSession, descriptor: Dict[str, Any]):
        self._client = client
        self._session = session
        context = {"image": session.ref.full_name}
        descriptor = _expect_object(descriptor, "layer descriptor", context)
        self.digest: str = descriptor.get("digest", "")
        self.media_type: str = descriptor.get("mediaType") or ""
        self.size: int = descriptor.get("size", 0)
        if not self.digest:
            raise RegistryError("No digest in layer descriptor", context)
        if not is_valid_digest(self.digest):
            raise RegistryError("Invalid digest in layer descriptor", {**context, "digest": self.digest})
        if not isinstance(self.media_type, str):
            raise RegistryError("Invalid media type in layer descriptor", {**context, "digest": self.digest})

    def uncompressed(self) -> BinaryIO:
        """
        The layer as an uncompressed tar stream.

        Raises:
            DecompressionError: If the layer uses an unsupported compression.
        """
        if "zstd" in self.media_type:
            raise DecompressionError(
                "zstd compressed layers are not supported", {"layer": self.digest}
            )

        blob = self._client.open_blob(self._session, self.digest)
        magic = blob.read(2)
        blob.seek(0)

        if self.media_type.endswith("gzip") and magic != GZIP_MAGIC:
            blob.close()
            raise DecompressionError("Layer is advertised as gzip but is not", {"layer": self.digest})
        if magic == GZIP_MAGIC:
            return _OwnedGzipFile(blob)
        return blob

    def __repr__(self) -> str:
        return f"RemoteLayer({self.digest})"


class RemoteImage:
    """
    A resolved image: its platform manifest plus lazy access to config
    and layers.
    """

    def __init__(
        self,
        client: "RegistryClient",
        session: _AuthSession,
        manifest: Dict[str, Any],
        manifest_digest: str,
    ):
        self._client = client
        self._session = session
        self.manifest = manifest
        self.manifest_digest = manifest_digest
        self._config: Optional[ImageConfig] = None

    @property
    def reference(self) -> ImageReference:
        return self._session.ref

    def layers(self) -> List[RemoteLayer]:
        """Layers in manifest order (base layer first)."""
        return [
            RemoteLayer(self._client, self._session, descriptor)
            for descriptor in self.manifest.get("layers") or []
        ]

    def config_file(self) -> ImageConfig:
        """The image configuration (entrypoint, cmd, working directory)."""
        if self._config is None:
            context = {"image": self.reference.full_name}
            descriptor = _expect_object(self.manifest.get("config") or {}, "config descriptor", context)
            digest = descriptor.get("digest", "")
            if not digest:
                raise RegistryError("No config digest in manifest", context)
            self._config = ImageConfig.from_blob(self._client.fetch_json_blob(self._session, digest))
        return self._config


class RegistryClient:
    """
    Client for pulling manifests and blobs from OCI-compatible registries.

    Transient transport failures (connection errors, timeouts, 429 and
    5xx responses) are retried; authentication and not-found errors are
    raised immediately.
    """

    def __init__(
        self,
        platform: str = "linux/amd64",
        cache_dir: Optional[str] = None,
        timeout: Optional[float] = 60.0,
        retries: int = 3,
    ):
        """
        Initialize the registry client.

        Args:
            platform: os/arch[/variant] selected from multi-platform images.
            cache_dir: Directory to cache verified blobs in. No caching if None.
            timeout: Socket timeout in seconds for each request, None to block.
            retries: Attempts per request for transient failures.
        """
        parts = platform.split("/")
        if len(parts) not in (2, 3) or not all(parts):
            raise ValueError(f"Invalid platform {platform!r}, expected os/arch[/variant]")
        self.platform = platform
        self.cache = BlobCache(cache_dir) if cache_dir else None
        self.timeout = timeout
        self.retries = max(1, retries)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve(self, image_name: str, credential: Optional[Credential] = None) -> RemoteImage:
        """
        Resolve an image reference to the manifest for the configured platform.

        Args:
            image_name: Image reference (e.g. 'mcr.microsoft.com/azure-cli:latest')
            credential: Registry credential; anonymous if None.

        Returns:
            A handle on the resolved image.

        Raises:
            InvalidReferenceError, ImageNotFoundError, AuthFailureError, NetworkError
        """
        ref = ImageReference.parse(image_name)
        session = _AuthSession(ref, credential or NoCredential())
        manifest, digest = self.get_manifest(session, ref.identifier)
        logger.info(
            "Resolved %s to %s (%d layers)",
            ref.full_name, digest, len(manifest.get("layers") or []),
        )
        return RemoteImage(self, session, manifest, digest)

    def get_manifest(self, session: _AuthSession, identifier: str) -> Tuple[Dict[str, Any], str]:
        """
        Get the image manifest, descending into manifest lists.

        Args:
            session: Authorization state for the repository.
            identifier: Tag or digest.

        Returns:
            The platform manifest and its digest.
        """
        ref = session.ref
        url = f"{ref.registry_url}/v2/{ref.repository}/manifests/{identifier}"
        content, headers = self._fetch(url, session, accept=MANIFEST_ACCEPT)

        digest = f"sha256:{hashlib.sha256(content).hexdigest()}"
        if identifier.startswith("sha256:") and identifier != digest:
            raise RegistryError(
                "Manifest digest mismatch",
                {"image": ref.full_name, "expected": identifier, "actual": digest},
            )

        try:
            manifest = json.loads(content.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise RegistryError(f"Malformed manifest: {e}", {"image": ref.full_name}) from e
        manifest = _expect_object(manifest, "manifest", {"image": ref.full_name})

        media_type = manifest.get("mediaType") or headers.get("Content-Type", "").split(";")[0]
        if media_type in INDEX_MEDIA_TYPES or "manifests" in manifest:
            return self.get_manifest(session, self._select_platform_manifest(session, manifest))

        if manifest.get("schemaVersion") != 2:
            raise RegistryError(
                "Unsupported manifest schema version",
                {"image": ref.full_name, "schemaVersion": manifest.get("schemaVersion")},
            )
        if not isinstance(manifest.get("layers") or [], list):
            raise RegistryError("Malformed manifest: layers is not a list", {"image": ref.full_name})
        return manifest, headers.get("Docker-Content-Digest") or digest

    def fetch_json_blob(self, session: _AuthSession, digest: str) -> Dict[str, Any]:
        """Fetch and decode a small JSON blob such as the image config."""
        with self.open_blob(session, digest) as blob:
            content = blob.read()
        try:
            data = json.loads(content.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise RegistryError(f"Malformed JSON blob: {e}", {"digest": digest}) from e
        return _expect_object(data, "JSON blob", {"digest": digest})

    def open_blob(self, session: _AuthSession, digest: str) -> BinaryIO:
        """
        Download a blob, verifying its digest, and return it as a seekable
        binary file positioned at the start.

        Raises:
            RegistryError: If the digest is not of the form 'algorithm:hex'.
        """
        if not is_valid_digest(digest):
            raise RegistryError("Invalid blob digest", {"digest": digest})
        if self.cache:
            cached = self.cache.get_blob_path(digest)
            if cached:
                logger.debug("Using cached blob %s", digest)
                return open(cached, "rb")

        algorithm, _, expected = digest.partition(":")
        try:
            hashlib.new(algorithm)
        except ValueError as e:
            raise RegistryError(f"Unsupported digest algorithm {algorithm!r}", {"digest": digest}) from e

        ref = session.ref
        url = f"{ref.registry_url}/v2/{ref.repository}/blobs/{digest}"
        logger.debug("Pulling blob %s", digest[:19])
        spool = self._download(url, session, algorithm, expected, digest)

        if self.cache:
            self.cache.add_blob(digest, Path(spool.name))
        return spool

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.retries),
            wait=wait_exponential(multiplier=0.5, max=8),
            retry=retry_if_exception_type(NetworkError),
            reraise=True,
        )

    def _fetch(
        self, url: str, session: _AuthSession, accept: Optional[str] = None
    ) -> Tuple[bytes, Dict[str, str]]:
        """Make an authenticated request and read the whole body."""
        for attempt in self._retrying():
            with attempt:
                response = self._open(url, session, accept)
                with response:
                    try:
                        return response.read(), dict(response.headers)
                    except (OSError, socket.timeout, HTTPException) as e:
                        raise NetworkError(f"Error reading from registry: {e}", {"url": url}) from e

    def _download(self, url: str, session: _AuthSession, algorithm: str, expected: str, digest: str):
        """Stream a blob into a temporary file while hashing it."""
        for attempt in self._retrying():
            with attempt:
                spool = tempfile.NamedTemporaryFile(prefix="secpol-blob-")
                hasher = hashlib.new(algorithm)
                try:
                    with self._open(url, session) as response:
                        for chunk in iter(lambda: response.read(CHUNK_SIZE), b""):
                            hasher.update(chunk)
                            spool.write(chunk)
                except (OSError, socket.timeout, HTTPException) as e:
                    spool.close()
                    raise NetworkError(f"Error reading blob: {e}", {"digest": digest}) from e
                except RegistryError:
                    spool.close()
                    raise

                if hasher.hexdigest() != expected:
                    spool.close()
                    raise RegistryError(
                        "Blob digest mismatch",
                        {"expected": digest, "actual": f"{algorithm}:{hasher.hexdigest()}"},
                    )
                spool.flush()
                spool.seek(0)
                return spool

    def _open(self, url: str, session: _AuthSession, accept: Optional[str] = None, challenged: bool = False):
        """Open a request, answering one authentication challenge if needed."""
        request = Request(url, headers={"User-Agent": USER_AGENT})
        if accept:
            request.add_header("Accept", accept)
        if session.authorization:
            # Not forwarded on redirects to blob storage
            request.add_unredirected_header("Authorization", session.authorization)

        try:
            return urlopen(request, timeout=self.timeout)
        except HTTPError as e:
            challenge = e.headers.get("WWW-Authenticate", "") if e.headers else ""
            e.close()
            if e.code == 401 and not challenged:
                self._authenticate(session, challenge)
                return self._open(url, session, accept, challenged=True)
            raise self._http_error(e, url, session) from e
        except (URLError, socket.timeout, ConnectionError) as e:
            reason = getattr(e, "reason", e)
            raise NetworkError(f"Unable to reach registry: {reason}", {"url": url}) from e

    def _http_error(self, e: HTTPError, url: str, session: _AuthSession) -> RegistryError:
        context = {"image": session.ref.full_name, "status": e.code}
        if e.code in (401, 403):
            return AuthFailureError("Registry denied access", context)
        if e.code == 404:
            return ImageNotFoundError("Not found in registry", {**context, "url": url})
        if e.code == 429 or e.code >= 500:
            return NetworkError(f"Registry unavailable: {e.reason}", context)
        return RegistryError(f"Registry request failed: {e.reason}", context)

    def _authenticate(self, session: _AuthSession, challenge: str) -> None:
        """
        Answer a WWW-Authenticate challenge by setting the session's
        Authorization header.
        """
        scheme, _, params_text = challenge.strip().partition(" ")
        scheme = scheme.lower()
        credential = session.credential
        context = {"image": session.ref.full_name}

        if scheme == "basic":
            if not isinstance(credential, BasicCredential):
                raise AuthFailureError("Registry requires username and password", context)
            session.authorization = f"Basic {_basic_token(credential)}"
            return

        if scheme != "bearer":
            raise AuthFailureError(f"Unsupported authentication challenge {challenge!r}", context)
        if isinstance(credential, BearerCredential):
            # The registry token was already sent and refused.
            raise AuthFailureError("Registry rejected the bearer token", context)

        params = dict(_CHALLENGE_PARAM_RE.findall(params_text))
        realm = params.pop("realm", "")
        if not realm:
            raise AuthFailureError("Bearer challenge without realm", context)
        params.setdefault("scope", f"repository:{session.ref.repository}:pull")
        url = f"{realm}?{urlencode(params)}"

        request = Request(url, headers={"User-Agent": USER_AGENT})
        if isinstance(credential, BasicCredential):
            request.add_header("Authorization", f"Basic {_basic_token(credential)}")

        try:
            with urlopen(request, timeout=self.timeout) as response:
                data = json.loads(response.read().decode("utf-8"))
        except HTTPError as e:
            e.close()
            if e.code in (401, 403):
                raise AuthFailureError("Token service rejected the credentials", context) from e
            raise NetworkError(f"Token service failed: {e.reason}", context) from e
        except (URLError, socket.timeout, ConnectionError) as e:
            raise NetworkError(f"Unable to reach token service: {getattr(e, 'reason', e)}", context) from e
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise AuthFailureError(f"Malformed token response: {e}", context) from e

        token = data.get("token") or data.get("access_token")
        if not token:
            raise AuthFailureError("Token service returned no token", context)
        session.authorization = f"Bearer {token}"

    def _select_platform_manifest(self, session: _AuthSession, manifest_list: Dict[str, Any]) -> str:
        """Return the digest of the manifest matching the configured platform."""
        parts = self.platform.split("/")
        os_name, arch = parts[0], parts[1]
        variant = parts[2] if len(parts) == 3 else None

        context = {"image": session.ref.full_name}
        entries = manifest_list.get("manifests") or []
        if not isinstance(entries, list):
            raise RegistryError("Malformed manifest list: manifests is not a list", context)

        for entry in entries:
            entry = _expect_object(entry, "manifest list entry", context)
            platform_info = _expect_object(entry.get("platform") or {}, "manifest list platform", context)
            if platform_info.get("os") != os_name or platform_info.get("architecture") != arch:
                continue
            if variant and platform_info.get("variant") != variant:
                continue
            digest = entry.get("digest")
            if not is_valid_digest(digest):
                raise RegistryError(
                    "Invalid digest in manifest list", {**context, "platform": self.platform, "digest": digest}
                )
            return digest

        raise ImageNotFoundError(
            "No manifest for platform", {"image": session.ref.full_name, "platform": self.platform}
        )


def _expect_object(value: Any, what: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Registry documents are JSON objects; anything else is malformed."""
    if not isinstance(value, dict):
        raise RegistryError(f"Malformed {what}: expected a JSON object", context)
    return value


def _basic_token(credential: BasicCredential) -> str:
    return base64.b64encode(f"{credential.username}:{credential.password}".encode()).decode()
