"""
Ad-hoc console service for running Dify CLI commands (flask db upgrade,
reset-password, ...) against the same database, cache and bucket as the API.

The service idles at zero tasks. Operators scale it to one, exec into the
container, and scale it back down; the commands are emitted as stack outputs.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from constructs import Construct
from aws_cdk import (
    CfnOutput,
    RemovalPolicy,
    Stack,
    aws_ecr as ecr,
    aws_ecs as ecs,
    aws_iam as iam,
    aws_logs as logs,
    aws_s3 as s3,
)

from stacks.config import (
    AdditionalEnvironmentVariable,
    BEDROCK_ACTIONS,
    DIFY_API_IMAGE,
    SANDBOX_PORT,
    TASK_CPU,
    TASK_MEMORY_MIB,
)
from stacks.environment import (
    container_variables,
    postgres_secrets,
    redis_environment,
    redis_secrets,
    storage_environment,
    vector_store_environment,
)

logger = logging.getLogger(__name__)

CONTAINER_NAME = "Main"


class ConsoleService(Construct):

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        cluster: ecs.ICluster,
        alb,
        postgres,
        redis,
        storage_bucket: s3.IBucket,
        image_tag: str,
        custom_repository: Optional[ecr.IRepository] = None,
        additional_environment_variables: Optional[List[AdditionalEnvironmentVariable]] = None,
    ) -> None:
        super().__init__(scope, construct_id)

        task_definition = ecs.FargateTaskDefinition(
            self, "Task",
            cpu=TASK_CPU,
            memory_limit_mib=TASK_MEMORY_MIB,
            runtime_platform=ecs.RuntimePlatform(
                cpu_architecture=ecs.CpuArchitecture.X86_64,
            ),
        )

        if custom_repository is not None:
            image = ecs.ContainerImage.from_ecr_repository(
                custom_repository, f"dify-api_{image_tag}"
            )
        else:
            image = ecs.ContainerImage.from_registry(f"{DIFY_API_IMAGE}:{image_tag}")

        environment, secrets = container_variables(
            self, "api",
            {
                "MODE": "api",
                "CONSOLE_WEB_URL": alb.url,
                "CONSOLE_API_URL": alb.url,
                "SERVICE_API_URL": alb.url,
                "APP_WEB_URL": alb.url,
                "SQLALCHEMY_POOL_PRE_PING": "True",
                **redis_environment(redis),
                "WEB_API_CORS_ALLOW_ORIGINS": "*",
                "CONSOLE_CORS_ALLOW_ORIGINS": "*",
                **storage_environment(storage_bucket),
                "S3_USE_AWS_MANAGED_IAM": "true",
                "DB_DATABASE": postgres.database_name,
                **vector_store_environment(postgres),
                "CODE_EXECUTION_ENDPOINT": f"http://localhost:{SANDBOX_PORT}",
            },
            {**postgres_secrets(postgres), **redis_secrets(redis)},
            additional_environment_variables,
        )

        log_group = logs.LogGroup(
            self, "Logs",
            retention=logs.RetentionDays.TWO_WEEKS,
            removal_policy=RemovalPolicy.DESTROY,
        )

        task_definition.add_container(
            CONTAINER_NAME,
            image=image,
            environment=environment,
            secrets=secrets,
            logging=ecs.LogDrivers.aws_logs(stream_prefix="log", log_group=log_group),
            # keep the container alive without serving anything
            # https://stackoverflow.com/a/42873832
            entry_point=["tail"],
            command=["-f", "/dev/null"],
        )

        storage_bucket.grant_read_write(task_definition.task_role)
        task_definition.task_role.add_to_principal_policy(
            iam.PolicyStatement(actions=BEDROCK_ACTIONS, resources=["*"])
        )

        self.service = ecs.FargateService(
            self, "FargateService",
            cluster=cluster,
            task_definition=task_definition,
            capacity_provider_strategies=[
                ecs.CapacityProviderStrategy(capacity_provider="FARGATE", weight=1),
                ecs.CapacityProviderStrategy(capacity_provider="FARGATE_SPOT", weight=0),
            ],
            enable_execute_command=True,
            min_healthy_percent=0,
            desired_count=0,
        )

        postgres.connections.allow_default_port_from(self.service)
        redis.connections.allow_default_port_from(self.service)

        # ---------------------------------------------------------------
        # Outputs
        # ---------------------------------------------------------------
        stack = Stack.of(self)
        target = f"--region {stack.region} --cluster {cluster.cluster_name}"
        service_name = self.service.service_name

        CfnOutput(stack, "ConsoleStartServiceCommand",
                  value=f"aws ecs update-service {target} --service {service_name} --desired-count 1")
        CfnOutput(stack, "ConsoleStopServiceCommand",
                  value=f"aws ecs update-service {target} --service {service_name} --desired-count 0")
        CfnOutput(stack, "ConsoleListTasksCommand",
                  value=f"aws ecs list-tasks {target} --service-name {service_name} --desired-status RUNNING")
        CfnOutput(stack, "ConsoleConnectToTaskCommand",
                  value=(
                      f"aws ecs execute-command {target} --container {CONTAINER_NAME} "
                      f'--interactive --command "bash" --task TASK_ID'
                  ))

        logger.info("ConsoleService wired  desired_count=0  custom_repository=%s",
                    custom_repository is not None)
