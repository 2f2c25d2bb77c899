from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Callable, Dict, List

import aws_cdk as cdk
import pytest
from aws_cdk import aws_ec2 as ec2, aws_ecs as ecs, aws_s3 as s3
from aws_cdk.assertions import Template

from stacks.alb import Alb
from stacks.data_stores import Postgres, Redis

SECRET_RESOURCE_TYPES = {
    "AWS::SecretsManager::Secret",
    "AWS::SecretsManager::SecretTargetAttachment",
}


@pytest.fixture
def stack() -> cdk.Stack:
    app = cdk.App()
    return cdk.Stack(app, "TestStack")


@pytest.fixture
def deps(stack: cdk.Stack) -> SimpleNamespace:
    """The collaborators both Dify services are assembled against."""
    vpc = ec2.Vpc(stack, "Vpc", max_azs=2, nat_gateways=1)
    return SimpleNamespace(
        stack=stack,
        cluster=ecs.Cluster(stack, "Cluster", vpc=vpc, enable_fargate_capacity_providers=True),
        alb=Alb(stack, "Alb", vpc=vpc),
        postgres=Postgres(stack, "Postgres", vpc=vpc),
        redis=Redis(stack, "Redis", vpc=vpc),
        storage_bucket=s3.Bucket(stack, "StorageBucket"),
    )


def logical_id(construct) -> str:
    return cdk.Stack.of(construct).get_logical_id(construct.node.default_child)


@pytest.fixture
def is_secret_reference() -> Callable[[Template, Any], bool]:
    """
    True when a container secret's ValueFrom points at a Secrets Manager
    secret or an SSM parameter: a Ref to a secret resource, or an ARN join.
    """
    def check(template: Template, value: Any) -> bool:
        resources = template.to_json()["Resources"]

        def walk(v: Any) -> bool:
            if isinstance(v, dict) and "Ref" in v:
                return resources.get(v["Ref"], {}).get("Type") in SECRET_RESOURCE_TYPES
            if isinstance(v, dict) and "Fn::Join" in v:
                _, parts = v["Fn::Join"]
                literal = "".join(p for p in parts if isinstance(p, str))
                if ":secretsmanager:" in literal or ":ssm:" in literal:
                    return True
                return any(walk(p) for p in parts)
            return False

        return walk(value)

    return check


@pytest.fixture
def task_role_statements() -> Callable[[Template], List[Dict[str, Any]]]:
    """Policy statements attached to the (single) task definition's task role."""
    def collect(template: Template) -> List[Dict[str, Any]]:
        (task_def,) = template.find_resources("AWS::ECS::TaskDefinition").values()
        role_id = task_def["Properties"]["TaskRoleArn"]["Fn::GetAtt"][0]

        statements = []
        for policy in template.find_resources("AWS::IAM::Policy").values():
            if {"Ref": role_id} not in policy["Properties"].get("Roles", []):
                continue
            for statement in policy["Properties"]["PolicyDocument"]["Statement"]:
                actions = statement["Action"]
                statements.append({
                    **statement,
                    "Action": [actions] if isinstance(actions, str) else actions,
                })
        return statements

    return collect


@pytest.fixture
def ingress_ports() -> Callable[[Template, Any], List[Any]]:
    """Ports a data store's security group opens to the (single) ECS service."""
    def collect(template: Template, store) -> List[Any]:
        (service,) = template.find_resources("AWS::ECS::Service").values()
        (source,) = service["Properties"]["NetworkConfiguration"]["AwsvpcConfiguration"][
            "SecurityGroups"
        ]
        group_ids = [
            {"Fn::GetAtt": [logical_id(sg), "GroupId"]}
            for sg in store.connections.security_groups
        ]

        return [
            rule["Properties"]["FromPort"]
            for rule in template.find_resources("AWS::EC2::SecurityGroupIngress").values()
            if rule["Properties"].get("SourceSecurityGroupId") == source
            and rule["Properties"]["GroupId"] in group_ids
        ]

    return collect
