"""Unit tests for the Pulumi resource builder, run against Pulumi mocks."""

import inspect
import json
from pathlib import Path

import pulumi
import pytest

import permissions
from config import load_config, parse_config
from topology import build_graph

REPO_ROOT = Path(__file__).resolve().parent.parent


class InfraMocks(pulumi.runtime.Mocks):
    """Echo inputs back as outputs and fill in the attributes the builder reads."""

    def new_resource(self, args: pulumi.runtime.MockResourceArgs):
        outputs = dict(args.inputs)
        outputs.setdefault("arn", f"arn:aws:mock:us-east-1:123456789012:{args.name}")
        if args.typ == "aws:lb/loadBalancer:LoadBalancer":
            outputs["dnsName"] = f"{args.name}.us-east-1.elb.amazonaws.com"
        if args.typ == "aws:sqs/queue:Queue":
            outputs["url"] = f"https://sqs.us-east-1.amazonaws.com/123456789012/{args.inputs.get('name')}"
        return [f"{args.name}_id", outputs]

    def call(self, args: pulumi.runtime.MockCallArgs):
        return {}


pulumi.runtime.set_mocks(InfraMocks(), preview=False)

# Imported after the mocks are installed.
from awsbuilder import (  # noqa: E402
    AWSResourceBuilder,
    image_uri,
    resolve_value,
    to_snake_case,
    truncate_name,
)


def _builder(file_name: str) -> AWSResourceBuilder:
    config = load_config(str(REPO_ROOT / file_name))
    return AWSResourceBuilder(config, build_graph(config))


class TestHelpers:
    """Test the pure helpers used by the builder."""

    def test_image_uri_from_repository_arn(self):
        uri = image_uri("arn:aws:ecr:us-east-1:714871639201:repository/app-repo", "app-repo", "latest")
        assert uri == "714871639201.dkr.ecr.us-east-1.amazonaws.com/app-repo:latest"

    def test_image_uri_rejects_malformed_arn(self):
        with pytest.raises(ValueError, match="Invalid container registry"):
            image_uri("arn:aws:s3:::app-repo", "app-repo", "latest")

    def test_image_uri_rejects_mismatched_name(self):
        with pytest.raises(ValueError, match="does not belong"):
            image_uri("arn:aws:ecr:us-east-1:714871639201:repository/app-repo", "other-repo", "latest")

    def test_truncate_name(self):
        assert truncate_name("short-alb", 32) == "short-alb"
        long_name = truncate_name("dev-crud-api-service-with-a-long-name-alb", 32)
        assert len(long_name) <= 32
        assert long_name == truncate_name("dev-crud-api-service-with-a-long-name-alb", 32)

    def test_to_snake_case(self):
        assert to_snake_case("dnsName") == "dns_name"
        assert to_snake_case("arn") == "arn"

    def test_resolve_value_refs(self):
        class Fake:
            id = "queue-id"
            dns_name = "lb.example.com"

        resources = {"q": Fake()}
        assert resolve_value("ref:q", resources) == "queue-id"
        assert resolve_value({"host": ["ref:q.dnsName"]}, resources) == {"host": ["lb.example.com"]}
        assert resolve_value("plain", resources) == "plain"

    def test_resolve_value_unknown_resource(self):
        with pytest.raises(ValueError, match="'missing' not found"):
            resolve_value("ref:missing.arn", {})

    def test_resolve_value_unknown_attribute(self):
        with pytest.raises(ValueError, match="Attribute 'nope'"):
            resolve_value("ref:q.nope", {"q": object()})


class TestNaming:
    """Test resource naming and common parameters."""

    def test_generate_resource_name(self, sandbox_data):
        config = parse_config(sandbox_data)
        builder = AWSResourceBuilder(config, build_graph(config))
        assert builder.generate_resource_name("sync-queue") == "crud-titles-dev-use1-sync-queue"

    def test_unknown_region_abbreviation(self, sandbox_data):
        config = parse_config(sandbox_data)
        builder = AWSResourceBuilder(config, build_graph(config))
        assert builder.get_abbreviation("xx-central-9") == "xx"

    def test_common_parameters_respect_signature(self, sandbox_data):
        config = parse_config(sandbox_data)
        builder = AWSResourceBuilder(config, build_graph(config))

        def with_tags(resource_name, opts=None, tags=None):
            pass

        def without_tags(resource_name, opts=None):
            pass

        tagged = builder._apply_common_parameters({}, inspect.signature(with_tags))
        assert tagged == {"tags": {"team": "crud", "environment": "dev"}}
        untagged = builder._apply_common_parameters({"tags": {"a": "b"}}, inspect.signature(without_tags))
        assert untagged == {}


@pulumi.runtime.test
def test_sandbox_build_creates_every_node():
    builder = _builder("config.yaml")
    builder.build()

    assert set(builder.resources) == set(builder.graph.nodes)
    assert set(builder.roles) == {"crud-api", "sync-fn"}
    # One role policy per grant plus the consume policy of each event source.
    assert len(builder.policies) == len(builder.graph.grants) + len(builder.graph.event_sources)
    assert builder.networks["vpc-dev-aws-sandbox"].endpoints == {}
    assert len(builder.networks["vpc-dev-aws-sandbox"].subnets["public"]) == 3

    def check(values):
        url, table_name, queue_name = values
        assert url.startswith("http://")
        assert url.endswith(".elb.amazonaws.com")
        assert table_name == "dev-titles-table"
        assert queue_name == "titles-synchronisation-queue"

    return pulumi.Output.all(
        builder.outputs["crud-api_url"],
        builder.outputs["titles-table_name"],
        builder.outputs["sync-queue_name"],
    ).apply(check)


@pulumi.runtime.test
def test_isolated_build_creates_endpoints():
    builder = _builder("config.isolated.yaml")
    builder.build()

    network = builder.networks["vpc-dev-aws-isolated"]
    assert set(network.endpoints) == {"dynamodb", "s3", "sqs"}
    assert len(network.subnets["isolated"]) == 3
    # One public route table plus one per isolated subnet.
    assert len(network.route_tables) == 4

    def check(values):
        timeout, bucket = values
        assert timeout == 30
        assert bucket == "synchronisation-lambda-bucket"

    function = builder.resources["sync-fn"]
    return pulumi.Output.all(function.timeout, function.s3_bucket).apply(check)


@pulumi.runtime.test
def test_send_grant_policy_is_send_only():
    builder = _builder("config.yaml")
    builder.build()

    policy = builder.policies["crud-api-send-messages-sync-queue"]

    def check(document):
        statement = json.loads(document)["Statement"][0]
        assert statement["Action"] == permissions.QUEUE_SEND
        assert statement["Resource"] == ["arn:aws:mock:us-east-1:123456789012:crud-titles-dev-use1-sync-queue"]

    return policy.policy.apply(check)


@pulumi.runtime.test
def test_event_source_grants_consume_to_function():
    builder = _builder("config.yaml")
    builder.build()

    policy = builder.policies["sync-fn-consume-sync-queue"]

    def check(document):
        statement = json.loads(document)["Statement"][0]
        assert "sqs:ReceiveMessage" in statement["Action"]
        assert "sqs:DeleteMessage" in statement["Action"]

    return policy.policy.apply(check)


@pulumi.runtime.test
def test_table_grant_covers_indexes():
    builder = _builder("config.yaml")
    builder.build()

    policy = builder.policies["crud-api-read-write-data-titles-table"]

    def check(document):
        resources = json.loads(document)["Statement"][0]["Resource"]
        assert resources[1] == resources[0] + "/index/*"

    return policy.policy.apply(check)
