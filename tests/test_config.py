"""Unit tests for YAML configuration loading."""

from pathlib import Path

import pytest

from config import ConfigError, load_config, parse_config

REPO_ROOT = Path(__file__).resolve().parent.parent


class TestLoadConfig:
    """Test loading the shipped configuration files."""

    def test_sandbox_file_loads(self):
        config = load_config(str(REPO_ROOT / "config.yaml"))
        assert config.stack_name == "dev-aws-sandbox-stack"
        assert config.region == "us-east-1"
        assert [t.table_name for t in config.tables] == ["dev-titles-table"]
        assert [b.bucket_name for b in config.buckets] == [
            "synchronisation-lambda-bucket",
            "titles-backup-bucket",
        ]

    def test_isolated_file_loads(self):
        config = load_config(str(REPO_ROOT / "config.isolated.yaml"))
        function = config.functions[0]
        assert function.network is not None
        assert function.network.subnet_type == "isolated"
        assert [e.service for e in config.networks[0].endpoints] == ["dynamodb", "s3", "sqs"]
        assert all(t.removal_policy == "destroy" for t in config.tables)

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(tmp_path / "absent.yaml"))

    def test_malformed_yaml_raises(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("team: crud\ngrants: [unclosed\n")
        with pytest.raises(ConfigError, match="Malformed YAML"):
            load_config(str(path))

    def test_commented_out_section_loads_empty(self, tmp_path):
        path = tmp_path / "empty-grants.yaml"
        path.write_text("team: t\nservice: s\nenvironment: e\nregion: eu-west-1\ngrants:\n  # - resource: table\n")
        assert load_config(str(path)).grants == []

    def test_non_mapping_document_raises(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(str(path))


class TestParseConfig:
    """Test record construction and validation."""

    @pytest.mark.parametrize("key", ["team", "service", "environment", "region"])
    def test_missing_required_key(self, sandbox_data, key):
        del sandbox_data[key]
        with pytest.raises(ConfigError, match=f"Missing required configuration key: {key}"):
            parse_config(sandbox_data)

    def test_table_partition_key(self, sandbox_data):
        table = parse_config(sandbox_data).tables[0]
        assert table.partition_key.name == "isbn"
        assert table.partition_key.type == "S"
        assert table.removal_policy == "retain"
        assert table.billing_mode == "PROVISIONED"

    def test_service_image_and_defaults(self, sandbox_data):
        service = parse_config(sandbox_data).services[0]
        assert service.image.repository_name == "app-repo"
        assert service.image.tag == "latest"
        assert service.memory_limit_mib == 256
        assert service.container_port == 80
        assert service.public_load_balancer is True

    def test_queue_default_visibility_timeout(self, sandbox_data):
        assert parse_config(sandbox_data).queues[0].visibility_timeout_seconds == 30

    def test_default_stack_name(self, sandbox_data):
        del sandbox_data["stack_name"]
        assert parse_config(sandbox_data).stack_name == "dev-titles-stack"

    def test_invalid_subnet_type(self, sandbox_data):
        sandbox_data["networks"][0]["subnets"][0]["type"] = "private"
        with pytest.raises(ConfigError, match="subnet type"):
            parse_config(sandbox_data)

    def test_invalid_endpoint_service(self, isolated_data):
        isolated_data["networks"][0]["endpoints"].append({"service": "ecr"})
        with pytest.raises(ConfigError, match="endpoint service"):
            parse_config(isolated_data)

    def test_invalid_removal_policy(self, sandbox_data):
        sandbox_data["buckets"][0]["removal_policy"] = "snapshot"
        with pytest.raises(ConfigError, match="removal policy"):
            parse_config(sandbox_data)

    @pytest.mark.parametrize("value", [0, -5, "30", True])
    def test_timeout_must_be_positive_integer(self, sandbox_data, value):
        sandbox_data["functions"][0]["timeout_seconds"] = value
        with pytest.raises(ConfigError, match="timeout_seconds"):
            parse_config(sandbox_data)

    def test_network_without_subnets(self, sandbox_data):
        sandbox_data["networks"][0]["subnets"] = []
        with pytest.raises(ConfigError, match="no subnets"):
            parse_config(sandbox_data)

    def test_function_missing_code(self, sandbox_data):
        del sandbox_data["functions"][0]["code"]
        with pytest.raises(ConfigError, match="'code'"):
            parse_config(sandbox_data)

    def test_environment_values_are_strings(self, sandbox_data):
        sandbox_data["functions"][0]["environment"] = {"RETRIES": 3}
        function = parse_config(sandbox_data).functions[0]
        assert function.environment == {"RETRIES": "3"}

    def test_empty_sections(self):
        config = parse_config({"team": "t", "service": "s", "environment": "e", "region": "eu-west-1"})
        assert config.networks == []
        assert config.grants == []
        assert config.tags == {}

    @pytest.mark.parametrize("section", [
        "networks", "clusters", "load_balanced_services", "tables",
        "buckets", "queues", "functions", "event_sources", "grants",
    ])
    def test_empty_section_is_empty_list(self, sandbox_data, section):
        sandbox_data[section] = None
        config = parse_config(sandbox_data)
        attribute = "services" if section == "load_balanced_services" else section
        assert getattr(config, attribute) == []

    def test_empty_tags(self, sandbox_data):
        sandbox_data["tags"] = None
        assert parse_config(sandbox_data).tags == {}

    def test_section_must_be_a_list(self, sandbox_data):
        sandbox_data["grants"] = {"resource": "titles-table"}
        with pytest.raises(ConfigError, match="Expected a list for grants"):
            parse_config(sandbox_data)

    def test_entry_must_be_a_mapping(self, sandbox_data):
        sandbox_data["queues"].append("titles-dead-letter-queue")
        with pytest.raises(ConfigError, match="Expected a mapping for an entry of queues"):
            parse_config(sandbox_data)

    def test_empty_nested_sections(self, isolated_data):
        network = isolated_data["networks"][0]
        network["endpoints"] = None
        network["args"] = None
        isolated_data["functions"][0]["environment"] = None
        isolated_data["clusters"][0]["capacity"] = None
        config = parse_config(isolated_data)
        assert config.networks[0].endpoints == []
        assert config.networks[0].args == {}
        assert config.functions[0].environment == {}
        assert config.clusters[0].capacity.instance_type == "t2.micro"

    def test_nested_section_must_be_a_mapping(self, sandbox_data):
        sandbox_data["functions"][0]["environment"] = ["BACKUP_BUCKET=titles-backup-bucket"]
        with pytest.raises(ConfigError, match="environment of function 'sync-fn'"):
            parse_config(sandbox_data)

    def test_subnets_must_be_a_list(self, sandbox_data):
        sandbox_data["networks"][0]["subnets"] = "public"
        with pytest.raises(ConfigError, match="subnets of network"):
            parse_config(sandbox_data)
