from __future__ import annotations

import logging
from typing import List, Sequence

from constructs import Construct
from aws_cdk import (
    Duration,
    aws_ec2 as ec2,
    aws_ecs as ecs,
    aws_elasticloadbalancingv2 as elbv2,
)

logger = logging.getLogger(__name__)

# ALB rejects a path-pattern condition with more than 5 values
MAX_PATHS_PER_RULE = 5


class Alb(Construct):
    """Public HTTP load balancer shared by the Dify services."""

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        vpc: ec2.IVpc,
        allowed_ipv4_cidrs: Sequence[str] = ("0.0.0.0/0",),
    ) -> None:
        super().__init__(scope, construct_id)

        self.vpc = vpc
        self.load_balancer = elbv2.ApplicationLoadBalancer(
            self, "Resource",
            vpc=vpc,
            internet_facing=True,
            vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PUBLIC),
        )

        self.listener = self.load_balancer.add_listener(
            "Listener",
            port=80,
            open=False,
            default_action=elbv2.ListenerAction.fixed_response(
                404, content_type="text/plain", message_body="Not found"
            ),
        )
        for cidr in allowed_ipv4_cidrs:
            self.listener.connections.allow_default_port_from(ec2.Peer.ipv4(cidr))

        self.url = f"http://{self.load_balancer.load_balancer_dns_name}"
        self._priority = 0

    def add_ecs_service(
        self,
        construct_id: str,
        service: ecs.FargateService,
        port: int,
        health_check_path: str,
        paths: List[str],
    ) -> elbv2.ApplicationTargetGroup:
        """
        Route ``paths`` to ``service`` on ``port``.

        One listener rule is created per chunk of five paths, all pointing at
        the same target group. Rule priorities are allocated in call order.
        """
        group = elbv2.ApplicationTargetGroup(
            self, f"{construct_id}TargetGroup",
            vpc=self.vpc,
            targets=[service],
            protocol=elbv2.ApplicationProtocol.HTTP,
            port=port,
            deregistration_delay=Duration.seconds(10),
            health_check=elbv2.HealthCheck(
                path=health_check_path,
                interval=Duration.seconds(20),
                healthy_http_codes="200-299,307",
            ),
        )

        for i in range(0, len(paths), MAX_PATHS_PER_RULE):
            chunk = paths[i:i + MAX_PATHS_PER_RULE]
            self._priority += 1
            self.listener.add_target_groups(
                f"{construct_id}{i // MAX_PATHS_PER_RULE}",
                target_groups=[group],
                conditions=[elbv2.ListenerCondition.path_patterns(chunk)],
                priority=self._priority,
            )
            logger.info("ALB rule %d -> %s: %s", self._priority, construct_id, ", ".join(chunk))

        return group
