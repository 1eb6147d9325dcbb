"""
Models for the tool configuration document (internal_config.json).

The configuration is loaded once per run and threaded through every
component as an immutable value.
"""
import re
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .policy_spec import InputContainer, InputEnvRule


def _options_mapping(value: Any) -> Any:
    """
    Accepts either a mapping or a list of option strings. Lists are keyed
    by position so both shapes end up as an ordered str -> str mapping.
    """
    if value is None:
        return {}
    if isinstance(value, (list, tuple)):
        return {str(i): v for i, v in enumerate(value)}
    return value


def _version_tuple(version: str) -> Tuple[int, ...]:
    # Pre-release and build suffixes ('-rc1', '+build') do not take part in the range check.
    core = re.split(r"[-+]", version.lstrip("v"), maxsplit=1)[0]
    return tuple(int(part) for part in core.split("."))


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class HcsShimConfig(_Frozen):
    """
    Range of guest runtime versions the generated document is valid for.
    """
    min_version: str = Field("", alias="minVersion")
    max_version: str = Field("", alias="maxVersion")

    @model_validator(mode="after")
    def _check_range(self) -> "HcsShimConfig":
        parsed = {}
        for label, version in (("minVersion", self.min_version), ("maxVersion", self.max_version)):
            if not version:
                continue
            try:
                parsed[label] = _version_tuple(version)
            except ValueError:
                raise ValueError(f"{label} is not a dotted version: {version!r}")
        if len(parsed) == 2 and parsed["minVersion"] > parsed["maxVersion"]:
            raise ValueError(f"minVersion {self.min_version} is newer than maxVersion {self.max_version}")
        return self


class EnvVarGroup(_Frozen):
    """
    A named group of default environment variable rules.
    """
    environment_variables: Tuple[InputEnvRule, ...] = Field((), alias="environmentVariables")

    @field_validator("environment_variables", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> Any:
        return () if value is None else value


class MountSource(_Frozen):
    """
    One row of the source table: abstract mount type -> host path.
    """
    mount_type: str = Field(alias="mountType")
    source: str


class DefaultMountPolicy(_Frozen):
    """
    Type and base options applied to every translated input mount.
    """
    type: str = "bind"
    options: Dict[str, str] = Field(default_factory=lambda: {"0": "rbind", "1": "rshared"})

    @field_validator("options", mode="before")
    @classmethod
    def _coerce_options(cls, value: Any) -> Any:
        return _options_mapping(value)


class DefaultUserMount(_Frozen):
    """
    A mount added to every user container as if the author had written it.
    """
    name: str = ""
    type: str
    path: str
    readonly: bool = False


class GlobalInjectMount(_Frozen):
    """
    A fully resolved mount appended to every compiled container.
    """
    destination: str
    source: str
    type: str = "bind"
    options: Dict[str, str] = {}

    @field_validator("options", mode="before")
    @classmethod
    def _coerce_options(cls, value: Any) -> Any:
        return _options_mapping(value)


class ContainerdConfig(_Frozen):
    default_working_dir: str = Field("", alias="defaultWorkingDir")


class MountConfig(_Frozen):
    """
    Mount section of the configuration document.
    """
    source_table: Tuple[MountSource, ...] = ()
    default_policy: DefaultMountPolicy = Field(default_factory=DefaultMountPolicy)
    default_mounts_user: Tuple[DefaultUserMount, ...] = ()
    default_mounts_global_inject_policy: Tuple[GlobalInjectMount, ...] = ()
    containerd: ContainerdConfig = Field(default_factory=ContainerdConfig)

    @field_validator(
        "source_table", "default_mounts_user", "default_mounts_global_inject_policy", mode="before"
    )
    @classmethod
    def _null_as_empty(cls, value: Any) -> Any:
        return () if value is None else value

    @field_validator("default_policy", "containerd", mode="before")
    @classmethod
    def _null_as_default(cls, value: Any) -> Any:
        return {} if value is None else value

    def lookup_source(self, mount_type: str) -> Optional[str]:
        """
        Returns the host path of the first source table entry for the
        given mount type, or None when the type is not listed.
        """
        for entry in self.source_table:
            if entry.mount_type == mount_type:
                return entry.source
        return None


class ToolConfig(_Frozen):
    """
    The complete configuration document.

    Default environment groups are applied in the order returned by
    `default_env_rules`: openGCS, fabric, managedIdentity, enableRestart.
    """
    version: str = ""
    extra_containers: Tuple[InputContainer, ...] = ()
    hcsshim_config: HcsShimConfig = Field(default_factory=HcsShimConfig)
    open_gcs: EnvVarGroup = Field(default_factory=EnvVarGroup, alias="openGCS")
    fabric: EnvVarGroup = Field(default_factory=EnvVarGroup)
    managed_identity: EnvVarGroup = Field(default_factory=EnvVarGroup, alias="managedIdentity")
    enable_restart: EnvVarGroup = Field(default_factory=EnvVarGroup, alias="enableRestart")
    mount: MountConfig = Field(default_factory=MountConfig)

    @field_validator("extra_containers", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> Any:
        return () if value is None else value

    @field_validator(
        "hcsshim_config", "open_gcs", "fabric", "managed_identity", "enable_restart", "mount",
        mode="before",
    )
    @classmethod
    def _null_as_default(cls, value: Any) -> Any:
        return {} if value is None else value

    def default_env_rules(self) -> Tuple[InputEnvRule, ...]:
        """All default environment rules, concatenated in group order."""
        return (
            self.open_gcs.environment_variables
            + self.fabric.environment_variables
            + self.managed_identity.environment_variables
            + self.enable_restart.environment_variables
        )
