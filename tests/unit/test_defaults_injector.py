"""
Unit tests for merging configured defaults into containers.
"""
from secpol.MANAGERS.defaults_injector import DefaultsInjector
from secpol.MODELS.container_policy import ContainerPolicy, MountCollection, MountRule
from secpol.MODELS.policy_spec import InputContainer


def compiled(mount_count: int) -> ContainerPolicy:
    rules = [MountRule(container_path=f"/user/{i}", host_path="h") for i in range(mount_count)]
    return ContainerPolicy(command=["sh"], layers=[], mounts=MountCollection.from_rules(rules))


class TestEnvDefaults:

    def test_groups_appended_in_order(self, tool_config):
        container = InputContainer(image_name="app", env_rules=[{"name": "OWN", "value": "1"}])
        DefaultsInjector(tool_config).merge_env_defaults([container])

        assert [r.name for r in container.env_rules] == [
            "OWN", "TERM", "Fabric_Id", "IDENTITY_HEADER", "HOSTNAME",
        ]

    def test_no_deduplication(self, tool_config):
        container = InputContainer(image_name="app", env_rules=[{"name": "TERM", "value": "xterm"}])
        DefaultsInjector(tool_config).merge_env_defaults([container])
        assert [r.name for r in container.env_rules].count("TERM") == 2

    def test_every_container_gets_its_own_rules(self, tool_config):
        containers = [InputContainer(image_name="a"), InputContainer(image_name="b")]
        DefaultsInjector(tool_config).merge_env_defaults(containers)

        assert len(containers[0].env_rules) == 4
        assert containers[0].env_rules[0] is not containers[1].env_rules[0]

    def test_empty_config(self, empty_config):
        container = InputContainer(image_name="app")
        DefaultsInjector(empty_config).merge_env_defaults([container])
        assert container.env_rules == []


class TestUserMounts:

    def test_appended_as_input_mounts(self, tool_config):
        container = InputContainer(image_name="app", mounts=[{"mount_type": "azureFile", "mount_path": "/a"}])
        DefaultsInjector(tool_config).merge_user_mounts([container])

        assert [m.mount_path for m in container.mounts] == ["/a", "/var/log/app"]
        added = container.mounts[1]
        assert added.mount_type == "secret"
        assert added.readonly is True


class TestGlobalMounts:

    def test_appended_after_existing_mounts(self, tool_config):
        policy = DefaultsInjector(tool_config).merge_global_mounts(compiled(3))

        assert policy.mounts.length == 5
        assert sorted(policy.mounts.elements) == ["0", "1", "2", "3", "4"]
        assert policy.mounts.elements["3"].container_path == "/etc/resolv.conf"
        assert policy.mounts.elements["4"].container_path == "/etc/hosts"

    def test_keys_start_at_zero_without_user_mounts(self, tool_config):
        policy = DefaultsInjector(tool_config).merge_global_mounts(compiled(0))
        assert sorted(policy.mounts.elements) == ["0", "1"]

    def test_source_and_options_kept(self, tool_config):
        policy = DefaultsInjector(tool_config).merge_global_mounts(compiled(0))
        resolv, hosts = policy.mounts.rules()

        assert resolv.host_path == "sandbox:///resolv"
        assert resolv.options == {"0": "rbind", "1": "rshared", "2": "ro"}
        assert resolv.readonly is True
        assert hosts.readonly is False

    def test_no_global_mounts(self, empty_config):
        policy = DefaultsInjector(empty_config).merge_global_mounts(compiled(2))
        assert policy.mounts.length == 2
