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
Parser for the tool configuration document (internal_config.json).
"""
import json
import logging
from typing import Any

import yaml
from pydantic import ValidationError

from ..errors import ConfigurationError, describe_validation_error
from ..MODELS.tool_config import ToolConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "./internal_config.json"


class ConfigParser:
    """
    Loads the configuration document: default containers, default
    environment groups and the mount configuration.
    """

    def parse(self, config_path: str = DEFAULT_CONFIG_PATH) -> ToolConfig:
        """
        Parses the configuration from a path. `.yaml` and `.yml` files are
        read as YAML, anything else as JSON.

        :param config_path: Path to the configuration document.
        :return: The validated, immutable configuration.
        :raises ConfigurationError: If the file is missing or invalid.
        """
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                content = f.read()
        except OSError as e:
            raise ConfigurationError(
                f"unable to read configuration: {e.strerror or e}", {"path": config_path}
            ) from e

        is_yaml = config_path.endswith((".yaml", ".yml"))
        config = self.parse_from_string(content, is_yaml=is_yaml)
        logger.info(
            "Loaded configuration %s (version %s, %d default containers)",
            config_path, config.version or "unset", len(config.extra_containers),
        )
        return config

    def parse_from_string(self, content: str, is_yaml: bool = False) -> ToolConfig:
        """
        Parses the configuration from a string.

        :param content: JSON (or YAML) text of the configuration.
        :param is_yaml: Read the text as YAML instead of JSON.
        :return: The validated, immutable configuration.
        :raises ConfigurationError: If the text is malformed.
        """
        data = self._load(content, is_yaml)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError("configuration must be a JSON object")
        try:
            return ToolConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"invalid configuration: {describe_validation_error(e)}") from e

    def _load(self, content: str, is_yaml: bool) -> Any:
        try:
            if is_yaml:
                return yaml.safe_load(content)
            return json.loads(content)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigurationError(f"malformed configuration: {e}") from e
