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
Builders for compiling a policy specification into a security policy.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from ..CONVERTERS.layer_hasher import CanonicalTarHasher, LayerHasher
from ..CONVERTERS.rule_translator import RuleTranslator
from ..MANAGERS.defaults_injector import DefaultsInjector
from ..MODELS.container_policy import ContainerConfig, ContainerPolicy, MountCollection
from ..MODELS.policy_spec import PolicySpec
from ..MODELS.security_policy import SecurityPolicy
from ..MODELS.tool_config import ToolConfig
from ..REGISTRY.registry_client import RegistryClient, RemoteImage, RemoteLayer

logger = logging.getLogger(__name__)

DEFAULT_WORKING_DIR = "/"


class PolicyBuilder:
    """
    Compiles container groups into security policies.

    Each container goes through credential selection, image resolution,
    layer hashing, command and working directory resolution and global
    mount injection. The first failure aborts the whole build; there is
    no partial policy.
    """
    def __init__(self,
                 config: ToolConfig,
                 registry: RegistryClient,
                 hasher: Optional[LayerHasher] = None,
                 jobs: int = 1):
        """
        Initializes the builder.

        :param config: The loaded configuration document.
        :param registry: Client used to resolve images and stream layers.
        :param hasher: Layer hasher; CanonicalTarHasher if omitted.
        :param jobs: Layers of one image hashed concurrently. 1 is sequential.
        """
        self.config = config
        self.registry = registry
        self.hasher = hasher or CanonicalTarHasher()
        self.jobs = max(1, jobs)
        self.translator = RuleTranslator(config.mount)
        self.injector = DefaultsInjector(config)

    def build(self, spec: PolicySpec) -> SecurityPolicy:
        """
        Builds the security policy for a specification.

        :param spec: The parsed policy specification. Not modified.
        :return: The open-door policy if allow_all is set, otherwise the
                 user containers followed by the configured default containers.
        """
        if spec.allow_all:
            logger.info("allow_all is set, emitting the open-door policy")
            return SecurityPolicy.open_door()

        user_containers = [c.model_copy(deep=True) for c in spec.containers]
        self.injector.merge_env_defaults(user_containers)
        self.injector.merge_user_mounts(user_containers)
        translated = self.translator.translate_containers(user_containers)

        default_containers = [c.model_copy(deep=True) for c in self.config.extra_containers]
        translated += self.translator.translate_containers(default_containers)

        logger.info(
            "Compiling %d user and %d default containers",
            len(user_containers), len(default_containers),
        )
        policies = [self.compile_container(c) for c in translated]
        return SecurityPolicy(allow_all=False, containers=tuple(policies))

    def compile_container(self, container: ContainerConfig) -> ContainerPolicy:
        """
        Compiles one translated container.

        :param container: Container after rule translation.
        :return: The compiled container policy.
        """
        credential = container.auth.credential()
        logger.info("Resolving %s (auth: %s)", container.image_name, credential.kind)
        image = self.registry.resolve(container.image_name, credential)

        layers = self.hash_layers(image)

        command = list(container.command)
        if not command:
            image_config = image.config_file()
            command = image_config.entrypoint + image_config.cmd

        policy = ContainerPolicy(
            command=command,
            layers=layers,
            env_rules=list(container.env_rules),
            working_dir=self.resolve_working_dir(container, image),
            wait_mount_points=list(container.wait_mount_points),
            mounts=MountCollection.from_rules(container.mounts),
            allow_elevated=container.allow_elevated,
        )
        return self.injector.merge_global_mounts(policy)

    def resolve_working_dir(self, container: ContainerConfig, image: RemoteImage) -> str:
        """
        The container's own working directory, else the image's, else the configured
        containerd default, else "/".
        """
        if container.working_dir:
            return container.working_dir
        image_dir = image.config_file().working_dir
        if image_dir:
            return image_dir
        return self.config.mount.containerd.default_working_dir or DEFAULT_WORKING_DIR

    def hash_layers(self, image: RemoteImage) -> List[str]:
        """
        Root digests of every layer, in manifest order.

        :param image: The resolved image.
        :return: One digest per layer; digest i belongs to layer i.
        """
        layers = image.layers()
        if self.jobs == 1 or len(layers) < 2:
            return [self._hash_layer(i, len(layers), layer) for i, layer in enumerate(layers)]

        with ThreadPoolExecutor(max_workers=min(self.jobs, len(layers))) as pool:
            futures = [
                pool.submit(self._hash_layer, i, len(layers), layer)
                for i, layer in enumerate(layers)
            ]
            try:
                return [f.result() for f in futures]
            except BaseException:
                for f in futures:
                    f.cancel()
                raise

    def _hash_layer(self, index: int, count: int, layer: RemoteLayer) -> str:
        logger.info("Hashing layer %d/%d %s", index + 1, count, getattr(layer, "digest", ""))
        return self.hasher.root_digest(layer.uncompressed())
