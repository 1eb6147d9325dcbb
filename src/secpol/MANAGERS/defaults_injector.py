"""
Managers for merging configuration-declared defaults into containers.
"""
import logging
from typing import List

from ..MODELS.container_policy import ContainerPolicy, MountRule
from ..MODELS.policy_spec import InputContainer, InputMount
from ..MODELS.tool_config import ToolConfig

logger = logging.getLogger(__name__)


class DefaultsInjector:
    """
    Appends the configuration's default environment rules and mounts.

    Every merge mutates and returns its argument. Merges are additive, so
    running one twice adds the defaults twice.
    """
    def __init__(self, config: ToolConfig):
        """
        Initializes the injector.

        :param config: The loaded configuration document.
        """
        self.config = config

    def merge_env_defaults(self, containers: List[InputContainer]) -> List[InputContainer]:
        """
        Appends the default environment groups (openGCS, fabric,
        managedIdentity, enableRestart, in that order) to every container.
        Existing rules are kept and nothing is de-duplicated.

        :param containers: Containers to extend in place.
        :return: The same list.
        """
        defaults = self.config.default_env_rules()
        for container in containers:
            container.env_rules.extend(rule.model_copy() for rule in defaults)
        logger.debug("Merged %d default env rules into %d containers", len(defaults), len(containers))
        return containers

    def merge_user_mounts(self, containers: List[InputContainer]) -> List[InputContainer]:
        """
        Appends each default user mount as an input mount, so it is
        resolved through the source table like an authored mount.

        :param containers: Containers to extend in place.
        :return: The same list.
        """
        defaults = self.config.mount.default_mounts_user
        for container in containers:
            for mount in defaults:
                container.mounts.append(
                    InputMount(mount_type=mount.type, mount_path=mount.path, readonly=mount.readonly)
                )
        return containers

    def merge_global_mounts(self, policy: ContainerPolicy) -> ContainerPolicy:
        """
        Appends each global-inject mount to a compiled policy, continuing
        the index sequence of its mount collection. These mounts carry
        their own source and skip the source table.

        :param policy: Compiled container policy to extend in place.
        :return: The same policy.
        """
        for mount in self.config.mount.default_mounts_global_inject_policy:
            policy.mounts.append(
                MountRule(
                    container_path=mount.destination,
                    host_path=mount.source,
                    readonly="ro" in mount.options.values(),
                    type=mount.type,
                    options=dict(mount.options),
                )
            )
        return policy
