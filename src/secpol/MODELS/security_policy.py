"""
The final security policy document and its transport encoding.
"""
import base64
from typing import Any, Dict, Tuple

from pydantic import BaseModel, ConfigDict

from ..errors import SerializationError
from ..UTILS.canonical_json import dumps, indexed_map
from .container_policy import ContainerPolicy


class SecurityPolicy(BaseModel):
    """
    Either the open-door policy (allow_all, no containers) or the compiled
    container list, user containers first and default containers after.
    """
    model_config = ConfigDict(frozen=True)

    allow_all: bool = False
    containers: Tuple[ContainerPolicy, ...] = ()

    @classmethod
    def open_door(cls) -> "SecurityPolicy":
        """Policy that lets the guest run anything."""
        return cls(allow_all=True)

    def to_document(self) -> Dict[str, Any]:
        if self.allow_all:
            return {"allow_all": True, "containers": {"length": 0, "elements": None}}
        return {
            "allow_all": False,
            "containers": indexed_map(c.to_document() for c in self.containers),
        }

    def to_json(self) -> str:
        """
        Canonical JSON text of the document.

        :raises SerializationError: If the document cannot be encoded.
        """
        try:
            return dumps(self.to_document())
        except (TypeError, ValueError) as e:
            raise SerializationError(f"unable to encode policy: {e}") from e

    def to_base64(self) -> str:
        """
        Standard base64 of the UTF-8 JSON text, as passed to the guest.

        :raises SerializationError: If the document cannot be encoded.
        """
        try:
            raw = self.to_json().encode("utf-8")
        except UnicodeEncodeError as e:
            raise SerializationError(f"policy is not valid UTF-8: {e}") from e
        return base64.b64encode(raw).decode("ascii")
