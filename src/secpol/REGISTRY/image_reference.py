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
Image references as written in a policy specification, e.g. 'rust:1.52.1'
or 'mcr.microsoft.com/azure-cli@sha256:...', and the registry endpoints
they resolve to.
"""

import re
from dataclasses import dataclass
from typing import Optional, Tuple

from ..errors import InvalidReferenceError

_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
_REPOSITORY_RE = re.compile(rf"^{_COMPONENT}(?:/{_COMPONENT})*$")
_TAG_RE = re.compile(r"^\w[\w.-]{0,127}$")
_DIGEST_RE = re.compile(r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-fA-F0-9]{32,}$")

DOCKER_HUB = "docker.io"
DOCKER_HUB_API = "https://registry-1.docker.io"
_DOCKER_HUB_HOSTS = {DOCKER_HUB, "index.docker.io", "registry-1.docker.io"}
_PLAIN_HTTP_HOSTS = ("localhost", "127.0.0.1")


def is_valid_digest(digest: str) -> bool:
    """True for 'algorithm:hex' content digests such as 'sha256:...'."""
    return isinstance(digest, str) and bool(_DIGEST_RE.match(digest))


def _split_host(name: str) -> Tuple[str, str]:
    """
    Splits 'host[:port]/path' into host and path. The first component is a
    host only if it looks like one (has a dot or port, or is localhost);
    otherwise the whole name is a Docker Hub path.
    """
    head, sep, rest = name.partition("/")
    if sep and ("." in head or ":" in head or head == "localhost"):
        return head, rest
    return DOCKER_HUB, name


@dataclass(frozen=True)
class ImageReference:
    """
    A parsed, normalized image reference.

    Examples:
        - rust:1.52.1 -> docker.io/library/rust:1.52.1
        - myuser/myimage -> docker.io/myuser/myimage:latest
        - localhost:5000/app:v1 -> localhost:5000/app:v1 (plain http)
        - mcr.microsoft.com/azure-cli@sha256:... -> pinned by digest
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Args:
            reference: Image reference string from the specification.

        Returns:
            The normalized reference. A reference without tag or digest
            gets the 'latest' tag.

        Raises:
            InvalidReferenceError: If the reference is empty or malformed.
        """
        text = (reference or "").strip()
        if not text:
            raise InvalidReferenceError("Empty image reference")
        context = {"reference": reference}

        name, _, digest = text.partition("@")
        if digest and not is_valid_digest(digest):
            raise InvalidReferenceError("Invalid digest in image reference", context)

        # A colon after the last slash separates the tag; earlier ones are ports.
        slash = name.rfind("/")
        colon = name.rfind(":")
        tag = None
        if colon > slash:
            name, tag = name[:colon], name[colon + 1:]
            if not _TAG_RE.match(tag):
                raise InvalidReferenceError("Invalid tag in image reference", context)

        registry, repository = _split_host(name)
        if registry in _DOCKER_HUB_HOSTS:
            registry = DOCKER_HUB
            if "/" not in repository:
                repository = f"library/{repository}"
        if not _REPOSITORY_RE.match(repository):
            raise InvalidReferenceError("Invalid repository in image reference", context)

        if tag is None and not digest:
            tag = cls.DEFAULT_TAG
        return cls(registry=registry, repository=repository, tag=tag, digest=digest or None)

    @property
    def identifier(self) -> str:
        """The manifest identifier: the digest if pinned, else the tag."""
        return self.digest or self.tag or self.DEFAULT_TAG

    @property
    def full_name(self) -> str:
        separator = "@" if self.digest else ":"
        return f"{self.registry}/{self.repository}{separator}{self.identifier}"

    @property
    def short_name(self) -> str:
        """The name as a user would write it: no docker.io or library/ prefix."""
        if self.registry != DOCKER_HUB:
            return self.full_name
        repository = self.repository
        if repository.startswith("library/"):
            repository = repository[len("library/"):]
        separator = "@" if self.digest else ":"
        return f"{repository}{separator}{self.identifier}"

    @property
    def registry_url(self) -> str:
        """Base URL of the registry's V2 API."""
        if self.registry == DOCKER_HUB:
            return DOCKER_HUB_API
        if self.registry.startswith(_PLAIN_HTTP_HOSTS):
            return f"http://{self.registry}"
        return f"https://{self.registry}"

    def __str__(self) -> str:
        return self.short_name
