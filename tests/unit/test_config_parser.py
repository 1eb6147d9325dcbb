"""
Unit tests for the configuration parser.
"""
import json
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from secpol.errors import ConfigurationError
from secpol.PARSERS.config_parser import ConfigParser

SAMPLE_CONFIG = Path(__file__).resolve().parents[2] / "internal_config.json"


@pytest.fixture
def parser():
    return ConfigParser()


class TestConfigParser:

    def test_parse_json(self, parser, config_data):
        config = parser.parse_from_string(json.dumps(config_data))
        assert config.version == "1.0.0"
        assert config.hcsshim_config.min_version == "0.9.0"
        assert config.extra_containers[0].image_name == "pause:3.6"
        assert [r.name for r in config.default_env_rules()] == [
            "TERM", "Fabric_Id", "IDENTITY_HEADER", "HOSTNAME",
        ]

    def test_yaml_and_json_agree(self, parser, config_data, tmp_path):
        yaml_path = tmp_path / "config.yaml"
        yaml_path.write_text(yaml.safe_dump(config_data))
        json_path = tmp_path / "config.json"
        json_path.write_text(json.dumps(config_data))

        assert parser.parse(str(yaml_path)) == parser.parse(str(json_path))

    def test_sample_config(self, parser):
        config = parser.parse(str(SAMPLE_CONFIG))
        assert len(config.extra_containers) == 1
        assert config.mount.lookup_source("emptyDir") == "sandbox:///tmp/atlas/emptydir/.+"

    def test_option_lists_become_keyed(self, parser, config_data):
        config = parser.parse_from_string(json.dumps(config_data))
        assert config.mount.default_policy.options == {"0": "rbind", "1": "rshared"}
        assert config.mount.default_mounts_global_inject_policy[0].options["2"] == "ro"

    def test_empty_document(self, parser):
        config = parser.parse_from_string("{}")
        assert config.extra_containers == ()
        assert config.default_env_rules() == ()
        assert config.mount.default_policy.type == "bind"
        assert config.mount.default_policy.options == {"0": "rbind", "1": "rshared"}

    def test_null_sections(self, parser):
        config = parser.parse_from_string(
            '{"fabric": null, "mount": {"source_table": null}, "openGCS": {"environmentVariables": null}}'
        )
        assert config.default_env_rules() == ()
        assert config.mount.source_table == ()

    @pytest.mark.parametrize("minimum, maximum", [
        ("0.9.0-rc1", "1.0.0"),
        ("v0.10.0", "0.10.0+build.7"),
        ("1.0.0-alpha", "1.0.0"),
    ])
    def test_prerelease_versions(self, parser, minimum, maximum):
        config = parser.parse_from_string(json.dumps(
            {"hcsshim_config": {"minVersion": minimum, "maxVersion": maximum}}
        ))
        assert config.hcsshim_config.min_version == minimum
        assert config.hcsshim_config.max_version == maximum

    def test_missing_file(self, parser, tmp_path):
        with pytest.raises(ConfigurationError, match="unable to read"):
            parser.parse(str(tmp_path / "missing.json"))

    @pytest.mark.parametrize("content", [
        "{broken",
        "[1, 2]",
        '{"mount": {"source_table": [{"source": "x"}]}}',
        '{"hcsshim_config": {"minVersion": "1.0", "maxVersion": "0.9"}}',
        '{"hcsshim_config": {"minVersion": "latest"}}',
        '{"extra_containers": [{"image_name": ""}]}',
    ])
    def test_invalid(self, parser, content):
        with pytest.raises(ConfigurationError):
            parser.parse_from_string(content)

    def test_malformed_yaml(self, parser):
        with pytest.raises(ConfigurationError):
            parser.parse_from_string("mount: [unclosed", is_yaml=True)

    def test_config_is_immutable(self, parser, config_data):
        config = parser.parse_from_string(json.dumps(config_data))
        with pytest.raises(ValidationError):
            config.version = "2.0.0"
        with pytest.raises(ValidationError):
            config.mount.containerd.default_working_dir = "/tmp"
