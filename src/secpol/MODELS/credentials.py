"""
Registry credentials as an explicit tagged variant.
"""
from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class NoCredential:
    """Anonymous pull."""

    kind: str = "none"


@dataclass(frozen=True)
class BasicCredential:
    """Username and password, sent as HTTP Basic or exchanged for a token."""

    username: str
    password: str
    kind: str = "basic"

    def __repr__(self) -> str:
        return f"BasicCredential(username={self.username!r}, password='***')"


@dataclass(frozen=True)
class BearerCredential:
    """A registry token sent verbatim as a Bearer authorization."""

    token: str
    kind: str = "bearer"

    def __repr__(self) -> str:
        return "BearerCredential(token='***')"


Credential = Union[NoCredential, BasicCredential, BearerCredential]
