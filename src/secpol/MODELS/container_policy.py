"""
Models for translated containers and compiled container policies.
"""
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from ..UTILS.canonical_json import indexed_map, keyed_map
from .policy_spec import AuthConfig, EnvVarStrategy


class EnvRule(BaseModel):
    """
    A compiled environment variable rule, e.g. ("string", "PATH=/usr/bin").
    """
    strategy: EnvVarStrategy
    rule: str

    def to_document(self) -> Dict[str, Any]:
        return {"strategy": self.strategy.value, "rule": self.rule}


class MountRule(BaseModel):
    """
    A compiled mount with a concrete host path.

    An empty host_path means the mount type had no source table entry.
    """
    container_path: str
    host_path: str = ""
    readonly: bool = False
    type: str = "bind"
    options: Dict[str, str] = {}

    def to_document(self) -> Dict[str, Any]:
        return {
            "source": self.host_path,
            "destination": self.container_path,
            "type": self.type,
            "options": keyed_map(self.options),
        }


class ContainerConfig(BaseModel):
    """
    A container after rule translation and before image resolution.
    """
    image_name: str
    command: List[str] = []
    auth: AuthConfig = Field(default_factory=AuthConfig)
    env_rules: List[EnvRule] = []
    working_dir: str = ""
    wait_mount_points: List[str] = []
    mounts: List[MountRule] = []
    allow_elevated: bool = False


class MountCollection(BaseModel):
    """
    Mounts keyed by their insertion index ("0", "1", ...) with an explicit
    element count, so further mounts can be appended after compilation.
    """
    elements: Dict[str, MountRule] = {}
    length: int = 0

    @classmethod
    def from_rules(cls, rules: List[MountRule]) -> "MountCollection":
        collection = cls()
        for rule in rules:
            collection.append(rule)
        return collection

    def append(self, rule: MountRule) -> str:
        """Adds a mount under the next index and returns its key."""
        key = str(self.length)
        self.elements[key] = rule
        self.length += 1
        return key

    def rules(self) -> List[MountRule]:
        """Mounts in index order."""
        return [self.elements[str(i)] for i in range(self.length)]

    def to_document(self) -> Dict[str, Any]:
        return keyed_map({key: rule.to_document() for key, rule in self.elements.items()})


class ContainerPolicy(BaseModel):
    """
    Everything the guest enforces for one container.

    `layers` holds one root digest per image layer, in manifest order.
    """
    command: List[str]
    layers: List[str]
    env_rules: List[EnvRule] = []
    working_dir: str = "/"
    wait_mount_points: List[str] = []
    mounts: MountCollection = Field(default_factory=MountCollection)
    allow_elevated: bool = False

    def to_document(self) -> Dict[str, Any]:
        return {
            "command": indexed_map(self.command),
            "env_rules": indexed_map(rule.to_document() for rule in self.env_rules),
            "layers": indexed_map(self.layers),
            "working_dir": self.working_dir,
            "wait_mount_points": indexed_map(self.wait_mount_points),
            "mounts": self.mounts.to_document(),
            "allow_elevated": self.allow_elevated,
        }
