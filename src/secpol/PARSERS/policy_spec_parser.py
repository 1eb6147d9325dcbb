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
Parsers for policy specifications written as JSON or TOML.

Both encodings describe the same document. TOML uses array-of-tables with
singular names:

    allow_all = false

    [[container]]
    image_name = "rust:1.52.1"
    command = ["rustc", "--help"]

    [[container.env_rule]]
    name = "PREFIX_.+"
    value = ".+"
    strategy = "re2"

    [[container.mount]]
    mount_type = "azureFile"
    mount_path = "/mount/azurefile"
    readonly = true
"""
import json
import tomllib
from typing import Any, Dict

from pydantic import ValidationError

from ..errors import SpecParseError, describe_validation_error
from ..MODELS.policy_spec import PolicySpec

# TOML table name -> document key
_TOML_TOP_LEVEL = {"container": "containers"}
_TOML_CONTAINER = {"env_rule": "env_rules", "mount": "mounts"}


class PolicySpecParser:
    """
    Parser for policy.json / policy.toml files.
    """

    def parse(self, spec_path: str) -> PolicySpec:
        """
        Parses a policy specification from a path. The encoding is chosen
        by suffix: `.toml` is TOML, anything else JSON.

        :param spec_path: Path to the specification.
        :return: Parsed specification.
        :raises SpecParseError: If the file cannot be read or is invalid.
        """
        try:
            with open(spec_path, "r", encoding="utf-8") as f:
                content = f.read()
        except OSError as e:
            raise SpecParseError(
                f"unable to read policy specification: {e.strerror or e}", {"path": spec_path}
            ) from e

        if spec_path.endswith(".toml"):
            return self.parse_toml(content)
        return self.parse_json(content)

    def parse_json(self, content: str) -> PolicySpec:
        """
        Parses a JSON policy specification from a string.
        """
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise SpecParseError(f"malformed JSON policy specification: {e}") from e
        return self._validate(data)

    def parse_toml(self, content: str) -> PolicySpec:
        """
        Parses a TOML policy specification from a string.
        """
        try:
            data = tomllib.loads(content)
        except tomllib.TOMLDecodeError as e:
            raise SpecParseError(f"malformed TOML policy specification: {e}") from e

        data = self._rename(data, _TOML_TOP_LEVEL)
        containers = data.get("containers")
        if isinstance(containers, list):
            data["containers"] = [
                self._rename(c, _TOML_CONTAINER) if isinstance(c, dict) else c
                for c in containers
            ]
        return self._validate(data)

    def _rename(self, table: Dict[str, Any], names: Dict[str, str]) -> Dict[str, Any]:
        """
        Maps singular TOML table names onto document keys. An explicit
        plural key wins over its singular form.
        """
        renamed = dict(table)
        for toml_name, key in names.items():
            if toml_name in renamed:
                value = renamed.pop(toml_name)
                renamed.setdefault(key, value)
        return renamed

    def _validate(self, data: Any) -> PolicySpec:
        if not isinstance(data, dict):
            raise SpecParseError("policy specification must be an object")
        try:
            return PolicySpec.model_validate(data)
        except ValidationError as e:
            raise SpecParseError(
                f"invalid policy specification: {describe_validation_error(e)}"
            ) from e
