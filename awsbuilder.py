import base64
import hashlib
import inspect
import json
import re
import pulumi
import pulumi_aws as aws
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import permissions
from config import StackConfig
from topology import EventSourceBinding, Grant, ResourceGraph, ResourceNode, plan_subnets

AWS_REGION_ABBREVIATIONS = {
    "us-east-1": "use1",
    "us-east-2": "use2",
    "us-west-1": "usw1",
    "us-west-2": "usw2",
    "af-south-1": "afs1",
    "ap-east-1": "ape1",
    "ap-south-1": "aps1",
    "ap-northeast-1": "apne1",
    "ap-northeast-2": "apne2",
    "ap-northeast-3": "apne3",
    "ap-southeast-1": "apse1",
    "ap-southeast-2": "apse2",
    "ca-central-1": "cac1",
    "eu-central-1": "euc1",
    "eu-west-1": "euw1",
    "eu-west-2": "euw2",
    "eu-west-3": "euw3",
    "eu-north-1": "eun1",
    "eu-south-1": "eus1",
    "me-south-1": "mes1",
    "sa-east-1": "sae1",
    "us-gov-east-1": "usge1",
    "us-gov-west-1": "usgw1",
    "cn-north-1": "cnn1",
    "cn-northwest-1": "cnnw1",
}

ECR_ARN_PATTERN = re.compile(r"^arn:aws[a-z-]*:ecr:([a-z0-9-]+):(\d{12}):repository/(.+)$")

MANAGED_POLICIES = {
    "ecs_instance": "arn:aws:iam::aws:policy/service-role/AmazonEC2ContainerServiceforEC2Role",
    "ecs_task_execution": "arn:aws:iam::aws:policy/service-role/AmazonECSTaskExecutionRolePolicy",
    "lambda_basic": "arn:aws:iam::aws:policy/service-role/AWSLambdaBasicExecutionRole",
    "lambda_vpc": "arn:aws:iam::aws:policy/service-role/AWSLambdaVPCAccessExecutionRole",
}

CONTAINER_NAME = "web"
EPHEMERAL_PORTS = (32768, 65535)
ALL_TRAFFIC_EGRESS = {"protocol": "-1", "from_port": 0, "to_port": 0, "cidr_blocks": ["0.0.0.0/0"]}


def to_snake_case(name: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


def resolve_value(value: Any, resources: Dict[str, Any]) -> Any:
    if isinstance(value, dict):
        return {k: resolve_value(v, resources) for k, v in value.items()}
    elif isinstance(value, list):
        return [resolve_value(item, resources) for item in value]
    elif isinstance(value, str):
        if value.startswith("secret:"):
            # Fetch secret from Pulumi config
            secret_key = value[len("secret:"):]
            config = pulumi.Config()
            return config.require_secret(secret_key)
        elif value.startswith("ref:"):
            ref_text = value[4:]
            if "." in ref_text:
                ref_res, ref_attr = ref_text.split(".", 1)
            else:
                ref_res, ref_attr = ref_text, "id"
            if ref_res not in resources:
                raise ValueError(f"Referenced resource '{ref_res}' not found.")
            attr_val = getattr(resources[ref_res], to_snake_case(ref_attr), None)
            if attr_val is None:
                raise ValueError(f"Attribute '{ref_attr}' not found on resource '{ref_res}'")
            return attr_val
        else:
            return value
    else:
        return value


def image_uri(repository_arn: str, repository_name: str, tag: str) -> str:
    """Build the registry image URI for an existing repository from its ARN."""
    match = ECR_ARN_PATTERN.match(repository_arn)
    if not match:
        raise ValueError(f"Invalid container registry repository ARN: '{repository_arn}'")
    region, account, name = match.groups()
    if name != repository_name:
        raise ValueError(f"Repository ARN '{repository_arn}' does not belong to repository '{repository_name}'")
    return f"{account}.dkr.ecr.{region}.amazonaws.com/{name}:{tag}"


def truncate_name(name: str, limit: int) -> str:
    if len(name) <= limit:
        return name
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:6]
    return f"{name[:limit - 7].rstrip('-')}-{digest}"


def assume_role_policy(service: str) -> str:
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [{
            "Effect": "Allow",
            "Principal": {"Service": service},
            "Action": "sts:AssumeRole",
        }],
    })


def _init_signature(resource_class) -> inspect.Signature:
    # Generated resource classes take **kwargs in __init__; the real parameters live on _internal_init.
    return inspect.signature(getattr(resource_class, "_internal_init", resource_class.__init__))


@dataclass
class NetworkResources:
    vpc: Any
    cidr: str
    subnets: Dict[str, List[Any]] = field(default_factory=dict)
    route_tables: List[Any] = field(default_factory=list)
    endpoints: Dict[str, Any] = field(default_factory=dict)

    def subnet_ids(self, subnet_type: str) -> List[Any]:
        return [subnet.id for subnet in self.subnets.get(subnet_type, [])]


@dataclass
class ClusterResources:
    cluster: Any
    network: NetworkResources
    instance_security_group: Any
    autoscaling_group: Any


class AWSResourceBuilder:
    def __init__(self, config: StackConfig, graph: ResourceGraph):
        self.config = config
        self.graph = graph
        self.resources: Dict[str, Any] = {}
        self.roles: Dict[str, Any] = {}
        self.networks: Dict[str, NetworkResources] = {}
        self.clusters: Dict[str, ClusterResources] = {}
        self.outputs: Dict[str, Any] = {}
        self.policies: Dict[str, Any] = {}

    def get_abbreviation(self, region: str) -> str:
        return AWS_REGION_ABBREVIATIONS.get(region.lower(), region.split("-")[0].lower())

    def generate_resource_name(self, base_name: str) -> str:
        team = (self.config.team or "team").strip().lower()
        service = (self.config.service or "svc").strip().lower()
        env = (self.config.environment or "dev").strip().lower()
        reg_abbr = self.get_abbreviation(self.config.region or "us-east-1")
        return f"{team}-{service}-{env}-{reg_abbr}-{base_name}".lower()

    def resolve_args(self, args: dict) -> dict:
        return {key: resolve_value(value, self.resources) for key, value in args.items()}

    def _apply_common_parameters(self, resolved_args: dict, init_sig: inspect.Signature) -> dict:
        if "tags" in init_sig.parameters:
            if self.config.tags:
                resolved_args.setdefault("tags", dict(self.config.tags))
        else:
            resolved_args.pop("tags", None)
        if "region" in init_sig.parameters:
            resolved_args.setdefault("region", self.config.region)
        else:
            resolved_args.pop("region", None)
        return resolved_args

    def _create(self, resource_class, base_name: str, extra_args: Optional[dict] = None,
                opts: Optional[pulumi.ResourceOptions] = None, **args):
        if extra_args:
            args.update(self.resolve_args(extra_args))
        args = self._apply_common_parameters(args, _init_signature(resource_class))
        pulumi_name = self.generate_resource_name(base_name)
        resource = resource_class(pulumi_name, opts=opts, **args)
        pulumi.log.debug(f"Created resource: {pulumi_name} ({resource_class.__module__}.{resource_class.__name__})")
        return resource

    def _name_tags(self, name: str) -> Dict[str, str]:
        return {**self.config.tags, "Name": name}

    def _removal_options(self, removal_policy: str, **kwargs) -> pulumi.ResourceOptions:
        return pulumi.ResourceOptions(retain_on_delete=removal_policy == "retain", **kwargs)

    def build(self):
        for node in self.graph.nodes.values():
            builder = getattr(self, f"_build_{node.kind}", None)
            if builder is None:
                raise ValueError(f"No builder for resource kind '{node.kind}' ('{node.id}')")
            builder(node)
            pulumi.log.info(f"Created {node.kind}: {node.name} ('{node.id}')")
        for binding in self.graph.event_sources:
            self._build_event_source(binding)
        for edge in self.graph.grants:
            self._build_grant(edge)

    def _build_network(self, node: ResourceNode):
        spec = node.spec
        vpc = self._create(
            aws.ec2.Vpc, node.id, spec.args,
            cidr_block=spec.cidr,
            enable_dns_support=True,
            enable_dns_hostnames=True,
            tags=self._name_tags(spec.name),
        )
        network = NetworkResources(vpc=vpc, cidr=spec.cidr)

        public_route_table = None
        if any(group.type == "public" for group in spec.subnets):
            igw = self._create(aws.ec2.InternetGateway, f"{node.id}-igw", vpc_id=vpc.id)
            public_route_table = self._create(
                aws.ec2.RouteTable, f"{node.id}-public-rt",
                vpc_id=vpc.id,
                routes=[aws.ec2.RouteTableRouteArgs(cidr_block="0.0.0.0/0", gateway_id=igw.id)],
            )
            network.route_tables.append(public_route_table)

        for planned in plan_subnets(spec):
            label = f"{node.id}-{planned.group}-{planned.availability_zone}"
            subnet = self._create(
                aws.ec2.Subnet, label,
                vpc_id=vpc.id,
                cidr_block=planned.cidr,
                availability_zone=planned.availability_zone,
                map_public_ip_on_launch=planned.type == "public",
                tags=self._name_tags(f"{spec.name}/{planned.group}-{planned.availability_zone}"),
            )
            if planned.type == "public":
                route_table = public_route_table
            else:
                # Isolated subnets get their own route table with no default route.
                route_table = self._create(aws.ec2.RouteTable, f"{label}-rt", vpc_id=vpc.id)
                network.route_tables.append(route_table)
            self._create(
                aws.ec2.RouteTableAssociation, f"{label}-rta",
                subnet_id=subnet.id,
                route_table_id=route_table.id,
            )
            network.subnets.setdefault(planned.type, []).append(subnet)

        for endpoint in spec.endpoints:
            network.endpoints[endpoint.service] = self._build_endpoint(node, network, endpoint.service)

        self.networks[node.id] = network
        self.resources[node.id] = vpc
        self.outputs[f"{node.id}_id"] = vpc.id

    def _build_endpoint(self, node: ResourceNode, network: NetworkResources, service: str):
        service_name = f"com.amazonaws.{self.config.region}.{service}"
        if service in ("dynamodb", "s3"):
            return self._create(
                aws.ec2.VpcEndpoint, f"{node.id}-{service}-endpoint",
                vpc_id=network.vpc.id,
                service_name=service_name,
                vpc_endpoint_type="Gateway",
                route_table_ids=[rt.id for rt in network.route_tables],
            )
        endpoint_sg = self._create(
            aws.ec2.SecurityGroup, f"{node.id}-{service}-endpoint-sg",
            vpc_id=network.vpc.id,
            description=f"HTTPS from {network.cidr} to the {service} endpoint",
            ingress=[aws.ec2.SecurityGroupIngressArgs(
                protocol="tcp", from_port=443, to_port=443, cidr_blocks=[network.cidr])],
            egress=[aws.ec2.SecurityGroupEgressArgs(**ALL_TRAFFIC_EGRESS)],
        )
        subnet_type = "isolated" if network.subnets.get("isolated") else "public"
        # Interface endpoints take one subnet per availability zone.
        zones = len(node.spec.availability_zones)
        return self._create(
            aws.ec2.VpcEndpoint, f"{node.id}-{service}-endpoint",
            vpc_id=network.vpc.id,
            service_name=service_name,
            vpc_endpoint_type="Interface",
            private_dns_enabled=True,
            subnet_ids=network.subnet_ids(subnet_type)[:zones],
            security_group_ids=[endpoint_sg.id],
        )

    def _build_cluster(self, node: ResourceNode):
        spec = node.spec
        network = self.networks[spec.network]
        cluster = self._create(aws.ecs.Cluster, node.id, spec.args, name=spec.cluster_name)

        instance_role = self._create(
            aws.iam.Role, f"{node.id}-instance-role",
            assume_role_policy=assume_role_policy("ec2.amazonaws.com"),
        )
        self._create(
            aws.iam.RolePolicyAttachment, f"{node.id}-instance-role-ecs",
            role=instance_role.name,
            policy_arn=MANAGED_POLICIES["ecs_instance"],
        )
        profile = self._create(aws.iam.InstanceProfile, f"{node.id}-instance-profile", role=instance_role.name)
        instance_sg = self._create(
            aws.ec2.SecurityGroup, f"{node.id}-instance-sg",
            vpc_id=network.vpc.id,
            description=f"Container instances of {spec.cluster_name}",
            egress=[aws.ec2.SecurityGroupEgressArgs(**ALL_TRAFFIC_EGRESS)],
        )
        user_data = f"#!/bin/bash\necho ECS_CLUSTER={spec.cluster_name} >> /etc/ecs/ecs.config\n"
        launch_template = self._create(
            aws.ec2.LaunchTemplate, f"{node.id}-lt",
            image_id=spec.capacity.ami,
            instance_type=spec.capacity.instance_type,
            iam_instance_profile=aws.ec2.LaunchTemplateIamInstanceProfileArgs(arn=profile.arn),
            vpc_security_group_ids=[instance_sg.id],
            user_data=base64.b64encode(user_data.encode("utf-8")).decode("ascii"),
        )

        subnet_ids = network.subnet_ids("public")
        if not subnet_ids:
            pulumi.log.warn(f"Network '{spec.network}' has no public subnets; placing capacity of '{node.id}' in isolated subnets.")
            subnet_ids = network.subnet_ids("isolated")
        desired = spec.capacity.desired_capacity
        asg = self._create(
            aws.autoscaling.Group, f"{node.id}-asg",
            min_size=desired,
            max_size=desired,
            desired_capacity=desired,
            vpc_zone_identifiers=subnet_ids,
            launch_template=aws.autoscaling.GroupLaunchTemplateArgs(id=launch_template.id, version="$Latest"),
            tags=[
                aws.autoscaling.GroupTagArgs(key=key, value=value, propagate_at_launch=True)
                for key, value in self._name_tags(f"{spec.cluster_name}-capacity").items()
            ],
        )

        self.clusters[node.id] = ClusterResources(cluster, network, instance_sg, asg)
        self.resources[node.id] = cluster
        self.outputs[f"{node.id}_name"] = cluster.name

    def _build_service(self, node: ResourceNode):
        spec = node.spec
        cluster = self.clusters[spec.cluster]
        network = cluster.network
        image = image_uri(spec.image.repository_arn, spec.image.repository_name, spec.image.tag)

        log_group = self._create(aws.cloudwatch.LogGroup, f"{node.id}-logs")
        execution_role = self._create(
            aws.iam.Role, f"{node.id}-execution-role",
            assume_role_policy=assume_role_policy("ecs-tasks.amazonaws.com"),
        )
        self._create(
            aws.iam.RolePolicyAttachment, f"{node.id}-execution-role-ecs",
            role=execution_role.name,
            policy_arn=MANAGED_POLICIES["ecs_task_execution"],
        )
        task_role = self._create(
            aws.iam.Role, f"{node.id}-task-role",
            assume_role_policy=assume_role_policy("ecs-tasks.amazonaws.com"),
        )
        self.roles[node.id] = task_role

        container_definitions = log_group.name.apply(lambda group_name: json.dumps([{
            "name": CONTAINER_NAME,
            "image": image,
            "memory": spec.memory_limit_mib,
            "essential": True,
            "portMappings": [{"containerPort": spec.container_port, "hostPort": 0, "protocol": "tcp"}],
            "logConfiguration": {
                "logDriver": "awslogs",
                "options": {
                    "awslogs-group": group_name,
                    "awslogs-region": self.config.region,
                    "awslogs-stream-prefix": node.id,
                },
            },
        }]))
        task_definition = self._create(
            aws.ecs.TaskDefinition, f"{node.id}-task",
            family=spec.service_name,
            requires_compatibilities=["EC2"],
            network_mode="bridge",
            task_role_arn=task_role.arn,
            execution_role_arn=execution_role.arn,
            container_definitions=container_definitions,
        )

        source_cidr = "0.0.0.0/0" if spec.public_load_balancer else network.cidr
        alb_sg = self._create(
            aws.ec2.SecurityGroup, f"{node.id}-alb-sg",
            vpc_id=network.vpc.id,
            description=f"HTTP from {source_cidr} to {spec.service_name}",
            ingress=[aws.ec2.SecurityGroupIngressArgs(
                protocol="tcp", from_port=80, to_port=80, cidr_blocks=[source_cidr])],
            egress=[aws.ec2.SecurityGroupEgressArgs(**ALL_TRAFFIC_EGRESS)],
        )
        self._create(
            aws.ec2.SecurityGroupRule, f"{node.id}-alb-to-instances",
            type="ingress",
            protocol="tcp",
            from_port=EPHEMERAL_PORTS[0],
            to_port=EPHEMERAL_PORTS[1],
            security_group_id=cluster.instance_security_group.id,
            source_security_group_id=alb_sg.id,
        )

        lb_subnets = network.subnet_ids("public")
        if not spec.public_load_balancer and network.subnets.get("isolated"):
            lb_subnets = network.subnet_ids("isolated")
        load_balancer = self._create(
            aws.lb.LoadBalancer, f"{node.id}-alb",
            name=truncate_name(f"{spec.service_name}-alb", 32),
            internal=not spec.public_load_balancer,
            load_balancer_type="application",
            security_groups=[alb_sg.id],
            subnets=lb_subnets,
        )
        target_group = self._create(
            aws.lb.TargetGroup, f"{node.id}-tg",
            name=truncate_name(f"{spec.service_name}-tg", 32),
            port=80,
            protocol="HTTP",
            target_type="instance",
            vpc_id=network.vpc.id,
            health_check=aws.lb.TargetGroupHealthCheckArgs(path="/"),
        )
        listener = self._create(
            aws.lb.Listener, f"{node.id}-http",
            load_balancer_arn=load_balancer.arn,
            port=80,
            protocol="HTTP",
            default_actions=[aws.lb.ListenerDefaultActionArgs(type="forward", target_group_arn=target_group.arn)],
        )
        service = self._create(
            aws.ecs.Service, node.id, spec.args,
            opts=pulumi.ResourceOptions(depends_on=[listener, cluster.autoscaling_group]),
            name=spec.service_name,
            cluster=cluster.cluster.arn,
            task_definition=task_definition.arn,
            desired_count=spec.desired_count,
            launch_type="EC2",
            load_balancers=[aws.ecs.ServiceLoadBalancerArgs(
                target_group_arn=target_group.arn,
                container_name=CONTAINER_NAME,
                container_port=spec.container_port,
            )],
        )

        self.resources[node.id] = service
        self.outputs[f"{node.id}_url"] = load_balancer.dns_name.apply(lambda dns: f"http://{dns}")

    def _build_table(self, node: ResourceNode):
        spec = node.spec
        args = {}
        if spec.billing_mode == "PROVISIONED":
            args = {"read_capacity": spec.read_capacity, "write_capacity": spec.write_capacity}
        table = self._create(
            aws.dynamodb.Table, node.id, spec.args,
            opts=self._removal_options(spec.removal_policy),
            name=spec.table_name,
            hash_key=spec.partition_key.name,
            attributes=[aws.dynamodb.TableAttributeArgs(name=spec.partition_key.name, type=spec.partition_key.type)],
            billing_mode=spec.billing_mode,
            **args,
        )
        self.resources[node.id] = table
        self.outputs[f"{node.id}_name"] = table.name

    def _build_bucket(self, node: ResourceNode):
        spec = node.spec
        bucket = self._create(
            aws.s3.Bucket, node.id, spec.args,
            opts=self._removal_options(spec.removal_policy),
            bucket=spec.bucket_name,
            force_destroy=spec.auto_delete_objects,
        )
        self.resources[node.id] = bucket
        self.outputs[f"{node.id}_name"] = bucket.bucket

    def _build_queue(self, node: ResourceNode):
        spec = node.spec
        queue = self._create(
            aws.sqs.Queue, node.id, spec.args,
            name=spec.queue_name,
            visibility_timeout_seconds=spec.visibility_timeout_seconds,
        )
        self.resources[node.id] = queue
        self.outputs[f"{node.id}_name"] = queue.name
        self.outputs[f"{node.id}_url"] = queue.url

    def _build_function(self, node: ResourceNode):
        spec = node.spec
        role = self._create(
            aws.iam.Role, f"{node.id}-role",
            assume_role_policy=assume_role_policy("lambda.amazonaws.com"),
        )
        managed = ["lambda_basic"] + (["lambda_vpc"] if spec.network else [])
        attachments = [
            self._create(
                aws.iam.RolePolicyAttachment, f"{node.id}-role-{policy.replace('_', '-')}",
                role=role.name,
                policy_arn=MANAGED_POLICIES[policy],
            )
            for policy in managed
        ]
        self.roles[node.id] = role

        args: Dict[str, Any] = {}
        if spec.network is not None:
            network = self.networks[spec.network.network]
            function_sg = self._create(
                aws.ec2.SecurityGroup, f"{node.id}-sg",
                vpc_id=network.vpc.id,
                description=f"Function {spec.function_name}",
                egress=[aws.ec2.SecurityGroupEgressArgs(**ALL_TRAFFIC_EGRESS)],
            )
            args["vpc_config"] = aws.lambda_.FunctionVpcConfigArgs(
                subnet_ids=network.subnet_ids(spec.network.subnet_type),
                security_group_ids=[function_sg.id],
            )
        if spec.environment:
            args["environment"] = aws.lambda_.FunctionEnvironmentArgs(
                variables=resolve_value(spec.environment, self.resources))

        code_bucket = node.references.get("code_bucket")
        s3_bucket = self.resources[code_bucket].bucket if code_bucket else spec.code.bucket
        function = self._create(
            aws.lambda_.Function, node.id, spec.args,
            opts=pulumi.ResourceOptions(depends_on=attachments),
            name=spec.function_name,
            runtime=spec.runtime,
            handler=spec.handler,
            role=role.arn,
            s3_bucket=s3_bucket,
            s3_key=spec.code.key,
            timeout=spec.timeout_seconds,
            memory_size=spec.memory_size,
            **args,
        )
        self.resources[node.id] = function
        self.outputs[f"{node.id}_name"] = function.name

    def _role_policy(self, base_name: str, principal: str, resource: str, permission: str):
        kind = self.graph.nodes[resource].kind
        actions = permissions.actions_for(kind, permission)
        policy = self.resources[resource].arn.apply(
            lambda arn: json.dumps(permissions.policy_document([(actions, permissions.resource_arns(kind, arn))])))
        role_policy = self._create(aws.iam.RolePolicy, base_name, role=self.roles[principal].id, policy=policy)
        self.policies[base_name] = role_policy
        return role_policy

    def _build_event_source(self, binding: EventSourceBinding):
        consume = self._role_policy(
            f"{binding.function}-consume-{binding.queue}", binding.function, binding.queue, "consume_messages")
        self._create(
            aws.lambda_.EventSourceMapping, f"{binding.function}-{binding.queue}-source",
            opts=pulumi.ResourceOptions(depends_on=[consume]),
            event_source_arn=self.resources[binding.queue].arn,
            function_name=self.resources[binding.function].arn,
            batch_size=binding.batch_size,
        )
        pulumi.log.info(f"Bound queue '{binding.queue}' to function '{binding.function}'")

    def _build_grant(self, edge: Grant):
        self._role_policy(
            f"{edge.principal}-{edge.permission.replace('_', '-')}-{edge.resource}",
            edge.principal, edge.resource, edge.permission)
        pulumi.log.info(f"Granted {edge.permission} on '{edge.resource}' to '{edge.principal}'")
