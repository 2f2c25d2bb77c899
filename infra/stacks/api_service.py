"""
Dify API service: one Fargate task hosting every backend process.

Containers (they share the task's network namespace, so they talk over localhost):
  - Main                      dify-api in api mode, behind the ALB      :5001
  - Worker                    dify-api in worker mode, runs migrations
  - SandboxFileMount          one-shot, fills the shared /dependencies volume
  - Sandbox                   dify-sandbox, untrusted code execution     :8194
  - PluginDaemon              dify-plugin-daemon                         :5002
  - ExternalKnowledgeBaseAPI  Bedrock Knowledge Bases bridge             :8000
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from constructs import Construct
from aws_cdk import (
    Duration,
    RemovalPolicy,
    aws_ecr_assets as ecr_assets,
    aws_ecs as ecs,
    aws_iam as iam,
    aws_logs as logs,
    aws_s3 as s3,
    aws_secretsmanager as secretsmanager,
)

from stacks.config import (
    AdditionalEnvironmentVariable,
    API_HEALTH_CHECK_PATH,
    API_PATH_PREFIXES,
    API_PORT,
    BEDROCK_ACTIONS,
    DIFY_API_IMAGE,
    DIFY_PLUGIN_DAEMON_IMAGE,
    DIFY_SANDBOX_IMAGE,
    KNOWLEDGE_API_PORT,
    PLUGIN_DAEMON_PORT,
    SANDBOX_PORT,
    SANDBOX_PYTHON_LIB_PATH,
    SYSCALL_COUNT,
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

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SANDBOX_DOCKER_DIR = PROJECT_ROOT / "infra" / "docker" / "sandbox"
KNOWLEDGE_API_DIR = PROJECT_ROOT / "knowledge_api"

SANDBOX_VOLUME = "sandbox"
DEPENDENCIES_PATH = "/dependencies"


def allowed_syscalls() -> str:
    """Every syscall number, i.e. no seccomp filtering in the sandbox."""
    return ",".join(str(i) for i in range(SYSCALL_COUNT))


def api_route_paths() -> List[str]:
    return API_PATH_PREFIXES + [f"{p}/*" for p in API_PATH_PREFIXES]


class ApiService(Construct):

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
        sandbox_image_tag: str,
        allow_any_syscalls: bool = False,
        debug: bool = False,
        additional_environment_variables: Optional[List[AdditionalEnvironmentVariable]] = None,
    ) -> None:
        super().__init__(scope, construct_id)

        extra = additional_environment_variables or []

        task_definition = ecs.FargateTaskDefinition(
            self, "Task",
            cpu=TASK_CPU,
            memory_limit_mib=TASK_MEMORY_MIB,
            runtime_platform=ecs.RuntimePlatform(
                cpu_architecture=ecs.CpuArchitecture.X86_64,
            ),
            volumes=[ecs.Volume(name=SANDBOX_VOLUME)],
        )
        self.task_definition = task_definition

        # TODO: mint one secret per purpose; every inner API key currently shares this value
        encryption_secret = secretsmanager.Secret(
            self, "EncryptionSecret",
            generate_secret_string=secretsmanager.SecretStringGenerator(password_length=42),
        )
        shared_key = ecs.Secret.from_secrets_manager(encryption_secret)

        log_group = logs.LogGroup(
            self, "Logs",
            retention=logs.RetentionDays.TWO_WEEKS,
            removal_policy=RemovalPolicy.DESTROY,
        )
        log_driver = ecs.LogDrivers.aws_logs(stream_prefix="log", log_group=log_group)

        api_image = ecs.ContainerImage.from_registry(f"{DIFY_API_IMAGE}:{image_tag}")
        log_level = "DEBUG" if debug else "ERROR"
        data_env = {
            # recover from Aurora automatic pause
            # https://docs.sqlalchemy.org/en/20/core/pooling.html#disconnect-handling-pessimistic
            "SQLALCHEMY_POOL_PRE_PING": "True",
            **redis_environment(redis),
            **storage_environment(storage_bucket),
            "DB_DATABASE": postgres.database_name,
            **vector_store_environment(postgres),
        }
        data_secrets = {**postgres_secrets(postgres), **redis_secrets(redis)}

        # ---------------------------------------------------------------
        # Main (api)
        # ---------------------------------------------------------------
        environment, secrets = container_variables(
            self, "api",
            {
                "MODE": "api",
                "LOG_LEVEL": log_level,
                "DEBUG": "true" if debug else "false",
                # console and api share the ALB domain
                "CONSOLE_WEB_URL": alb.url,
                "CONSOLE_API_URL": alb.url,
                "SERVICE_API_URL": alb.url,
                "APP_WEB_URL": alb.url,
                "WEB_API_CORS_ALLOW_ORIGINS": "*",
                "CONSOLE_CORS_ALLOW_ORIGINS": "*",
                **data_env,
                "CODE_EXECUTION_ENDPOINT": f"http://localhost:{SANDBOX_PORT}",
                "PLUGIN_DAEMON_URL": f"http://localhost:{PLUGIN_DAEMON_PORT}",
            },
            {
                **data_secrets,
                "SECRET_KEY": shared_key,
                "CODE_EXECUTION_API_KEY": shared_key,
                "INNER_API_KEY_FOR_PLUGIN": shared_key,
                "PLUGIN_API_KEY": shared_key,
            },
            extra,
        )
        task_definition.add_container(
            "Main",
            image=api_image,
            environment=environment,
            secrets=secrets,
            logging=log_driver,
            port_mappings=[ecs.PortMapping(container_port=API_PORT)],
            health_check=ecs.HealthCheck(
                command=["CMD-SHELL", f"curl -f http://localhost:{API_PORT}/health || exit 1"],
                interval=Duration.seconds(15),
                start_period=Duration.seconds(30),
                timeout=Duration.seconds(5),
                retries=5,
            ),
        )

        # ---------------------------------------------------------------
        # Worker
        # ---------------------------------------------------------------
        environment, secrets = container_variables(
            self, "worker",
            {
                "MODE": "worker",
                "LOG_LEVEL": log_level,
                "DEBUG": "true" if debug else "false",
                # migrations run before the worker starts consuming
                "MIGRATION_ENABLED": "true",
                **data_env,
                "PLUGIN_API_URL": f"http://localhost:{PLUGIN_DAEMON_PORT}",
            },
            {
                **data_secrets,
                "SECRET_KEY": shared_key,
                "PLUGIN_API_KEY": shared_key,
            },
            extra,
        )
        task_definition.add_container(
            "Worker",
            image=api_image,
            environment=environment,
            secrets=secrets,
            logging=log_driver,
        )

        # ---------------------------------------------------------------
        # Sandbox + its dependency file mount
        # ---------------------------------------------------------------
        sandbox_file_container = task_definition.add_container(
            "SandboxFileMount",
            image=ecs.ContainerImage.from_asset(
                str(SANDBOX_DOCKER_DIR),
                platform=ecr_assets.Platform.LINUX_AMD64,
            ),
            essential=False,
        )

        sandbox_env = {
            "GIN_MODE": "release",
            "WORKER_TIMEOUT": "15",
            "ENABLE_NETWORK": "true",
            "PYTHON_LIB_PATH": ",".join(SANDBOX_PYTHON_LIB_PATH),
        }
        if allow_any_syscalls:
            logger.warning("Sandbox seccomp filter disabled: all %d syscalls allowed", SYSCALL_COUNT)
            sandbox_env["ALLOWED_SYSCALLS"] = allowed_syscalls()

        environment, secrets = container_variables(
            self, "sandbox", sandbox_env, {"API_KEY": shared_key}, extra,
        )
        sandbox_container = task_definition.add_container(
            "Sandbox",
            image=ecs.ContainerImage.from_registry(f"{DIFY_SANDBOX_IMAGE}:{sandbox_image_tag}"),
            environment=environment,
            secrets=secrets,
            logging=log_driver,
            port_mappings=[ecs.PortMapping(container_port=SANDBOX_PORT)],
        )

        sandbox_file_container.add_mount_points(
            ecs.MountPoint(
                container_path=DEPENDENCIES_PATH,
                source_volume=SANDBOX_VOLUME,
                read_only=False,
            )
        )
        sandbox_container.add_mount_points(
            ecs.MountPoint(
                container_path=DEPENDENCIES_PATH,
                source_volume=SANDBOX_VOLUME,
                read_only=True,
            )
        )
        sandbox_container.add_container_dependencies(
            ecs.ContainerDependency(
                container=sandbox_file_container,
                condition=ecs.ContainerDependencyCondition.COMPLETE,
            )
        )

        # ---------------------------------------------------------------
        # Plugin daemon
        # ---------------------------------------------------------------
        task_definition.add_container(
            "PluginDaemon",
            image=ecs.ContainerImage.from_registry(DIFY_PLUGIN_DAEMON_IMAGE),
            environment={
                **redis_environment(redis),
                **vector_store_environment(postgres),
                "CODE_EXECUTION_ENDPOINT": f"http://localhost:{SANDBOX_PORT}",
                "DB_DATABASE": "dify_plugin",
                "SERVER_PORT": str(PLUGIN_DAEMON_PORT),
                # TODO: switch to aws_s3 so installed plugins survive task replacement
                "PLUGIN_STORAGE_TYPE": "local",
                "PLUGIN_STORAGE_OSS_BUCKET": storage_bucket.bucket_name,
                "MAX_PLUGIN_PACKAGE_SIZE": "52428800",
                "DIFY_INNER_API_URL": f"http://localhost:{API_PORT}",
                "PLUGIN_WORKING_PATH": "/app/storage/cwd",
                "FORCE_VERIFYING_SIGNATURE": "true",
            },
            secrets={
                **data_secrets,
                "SECRET_KEY": shared_key,
                "CODE_EXECUTION_API_KEY": shared_key,
                "DIFY_INNER_API_KEY": shared_key,
                "SERVER_KEY": shared_key,
            },
            logging=log_driver,
            port_mappings=[ecs.PortMapping(container_port=PLUGIN_DAEMON_PORT)],
        )

        # ---------------------------------------------------------------
        # External knowledge base API (Bedrock Knowledge Bases)
        # ---------------------------------------------------------------
        task_definition.add_container(
            "ExternalKnowledgeBaseAPI",
            image=ecs.ContainerImage.from_asset(
                str(KNOWLEDGE_API_DIR),
                platform=ecr_assets.Platform.LINUX_AMD64,
                build_args={"DIFY_VERSION": sandbox_image_tag},
                exclude=["*_tests.py", "**/__pycache__"],
            ),
            environment={
                "BEARER_TOKEN": "dummy-key",
                "BEDROCK_REGION": "us-west-2",
            },
            logging=log_driver,
            port_mappings=[ecs.PortMapping(container_port=KNOWLEDGE_API_PORT)],
        )

        # ---------------------------------------------------------------
        # IAM
        # ---------------------------------------------------------------
        storage_bucket.grant_read_write(task_definition.task_role)

        # TODO: scope resources to the model ARNs configured in Dify
        task_definition.task_role.add_to_principal_policy(
            iam.PolicyStatement(actions=BEDROCK_ACTIONS, resources=["*"])
        )

        # ---------------------------------------------------------------
        # Service
        # ---------------------------------------------------------------
        self.service = ecs.FargateService(
            self, "FargateService",
            cluster=cluster,
            task_definition=task_definition,
            capacity_provider_strategies=[
                ecs.CapacityProviderStrategy(capacity_provider="FARGATE", weight=0),
                ecs.CapacityProviderStrategy(capacity_provider="FARGATE_SPOT", weight=1),
            ],
            enable_execute_command=True,
        )

        self.service.connections.allow_to_default_port(postgres)
        self.service.connections.allow_to_default_port(redis)

        alb.add_ecs_service("Api", self.service, API_PORT, API_HEALTH_CHECK_PATH, api_route_paths())

        logger.info(
            "ApiService wired  image=%s:%s  sandbox=%s:%s  debug=%s",
            DIFY_API_IMAGE, image_tag, DIFY_SANDBOX_IMAGE, sandbox_image_tag, debug,
        )
