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
Exception hierarchy for SecPol.

Every failure raised by the compiler derives from SecPolError so the CLI can
report it with a single except clause. Nothing in the pipeline catches and
continues: the first error aborts the run and no policy is printed.

    SecPolError
    ├── ConfigurationError
    ├── SpecParseError
    ├── RegistryError
    │   ├── InvalidReferenceError
    │   ├── ImageNotFoundError
    │   ├── AuthFailureError
    │   └── NetworkError
    ├── LayerConversionError
    │   └── DecompressionError
    └── SerializationError
"""

from typing import Any, Dict, Optional


class SecPolError(Exception):
    """
    Base exception for all SecPol errors.

    Args:
        message: Human-readable description of the failure.
        context: Optional details (image name, layer digest, path) for debugging.
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} ({details})"


class ConfigurationError(SecPolError):
    """The configuration document is missing, unreadable or malformed."""


class SpecParseError(SecPolError):
    """The input policy specification is malformed."""


class RegistryError(SecPolError):
    """Base class for failures talking to a container registry."""


class InvalidReferenceError(RegistryError):
    """The image reference could not be parsed."""


class ImageNotFoundError(RegistryError):
    """The registry has no manifest for the reference (or the platform)."""


class AuthFailureError(RegistryError):
    """The registry rejected the supplied (or missing) credentials."""


class NetworkError(RegistryError):
    """Transport-level failure: connection refused, timeout, 5xx."""


class LayerConversionError(SecPolError):
    """A layer could not be canonicalized or hashed."""


class DecompressionError(LayerConversionError):
    """A layer blob could not be decompressed."""


class SerializationError(SecPolError):
    """The final policy document could not be encoded."""


def describe_validation_error(error: Exception, limit: int = 3) -> str:
    """
    Condenses a pydantic ValidationError into one line, e.g.
    "containers.0.image_name: Value error, image_name must not be empty".
    """
    errors = getattr(error, "errors", None)
    if not callable(errors):
        return str(error)
    parts = []
    details = errors()
    for detail in details[:limit]:
        location = ".".join(str(p) for p in detail.get("loc", ())) or "<root>"
        parts.append(f"{location}: {detail.get('msg', 'invalid')}")
    if len(details) > limit:
        parts.append(f"and {len(details) - limit} more")
    return "; ".join(parts)
