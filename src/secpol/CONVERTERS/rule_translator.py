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
Translation of author-facing rules into policy-facing rules.

Environment rules written as (name, value, strategy) become
(strategy, "name=value"); mounts written by abstract type get the host
path of their type from the configuration's source table.
"""
import logging
from typing import List

from ..MODELS.container_policy import ContainerConfig, EnvRule, MountRule
from ..MODELS.policy_spec import InputContainer, InputEnvRule, InputMount
from ..MODELS.tool_config import MountConfig

logger = logging.getLogger(__name__)


class RuleTranslator:
    """
    Converts InputContainers into ContainerConfigs. Pure: no network,
    no hashing, and the same input always yields the same rules.
    """

    def __init__(self, mount_config: MountConfig):
        """
        Initializes the translator.

        Args:
            mount_config: Mount section of the configuration (source table
                and default mount policy).
        """
        self.mount_config = mount_config

    def translate_containers(self, containers: List[InputContainer]) -> List[ContainerConfig]:
        """
        Translates every container, keeping their order.

        Args:
            containers: Containers as read from the specification.

        Returns:
            One ContainerConfig per input container.
        """
        return [self.translate_container(c) for c in containers]

    def translate_container(self, container: InputContainer) -> ContainerConfig:
        return ContainerConfig(
            image_name=container.image_name,
            command=list(container.command),
            auth=container.auth,
            env_rules=[self.translate_env_rule(r) for r in container.env_rules],
            working_dir=container.working_dir,
            wait_mount_points=list(container.wait_mount_points),
            mounts=[self.translate_mount(m) for m in container.mounts],
            allow_elevated=container.allow_elevated,
        )

    @staticmethod
    def translate_env_rule(rule: InputEnvRule) -> EnvRule:
        # No escaping: a name containing "=" yields an ambiguous rule.
        return EnvRule(strategy=rule.strategy, rule=f"{rule.name}={rule.value}")

    def translate_mount(self, mount: InputMount) -> MountRule:
        """
        Resolves the mount's host path through the source table (first
        match wins). Unknown types keep an empty host path.
        """
        host_path = self.mount_config.lookup_source(mount.mount_type)
        if host_path is None:
            logger.warning(
                "Mount type %r has no source table entry; %s gets an empty host path",
                mount.mount_type, mount.mount_path,
            )
            host_path = ""

        policy = self.mount_config.default_policy
        options = dict(policy.options)
        index = len(options)
        while str(index) in options:
            index += 1
        options[str(index)] = "ro" if mount.readonly else "rw"

        return MountRule(
            container_path=mount.mount_path,
            host_path=host_path,
            readonly=mount.readonly,
            type=policy.type,
            options=options,
        )


def translate_containers(containers: List[InputContainer], mount_config: MountConfig) -> List[ContainerConfig]:
    """
    Shorthand for RuleTranslator(mount_config).translate_containers(containers).
    """
    return RuleTranslator(mount_config).translate_containers(containers)
