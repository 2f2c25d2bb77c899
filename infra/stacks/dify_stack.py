"""
AWS CDK stack: Dify on ECS Fargate.

Resources:
  - VPC (2 AZs, public + private subnets, NAT gateway)
  - S3 bucket for user files
  - Aurora PostgreSQL Serverless v2 (app database + pgvector)
  - ElastiCache Redis (cache + Celery broker)
  - Application Load Balancer (public)
  - ECS cluster with Fargate / Fargate Spot capacity providers
  - API service (api, worker, sandbox, plugin daemon, knowledge base API)
  - Console service for one-off CLI commands
"""

from typing import Optional

from constructs import Construct
import aws_cdk as cdk
from aws_cdk import (
    Stack,
    RemovalPolicy,
    aws_ec2 as ec2,
    aws_ecr as ecr,
    aws_ecs as ecs,
    aws_s3 as s3,
)

from stacks.alb import Alb
from stacks.api_service import ApiService
from stacks.config import DeploymentSettings
from stacks.console_service import ConsoleService
from stacks.data_stores import Postgres, Redis


class DifyStack(Stack):

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        settings: Optional[DeploymentSettings] = None,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        settings = settings or DeploymentSettings.from_context(self.node)

        # ---------------------------------------------------------------
        # VPC
        # ---------------------------------------------------------------
        vpc = ec2.Vpc(self, "Vpc", max_azs=2, nat_gateways=1)

        # ---------------------------------------------------------------
        # S3 -- user file storage
        # ---------------------------------------------------------------
        storage_bucket = s3.Bucket(
            self, "StorageBucket",
            block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
            enforce_ssl=True,
            removal_policy=RemovalPolicy.DESTROY,
            auto_delete_objects=True,
        )

        # ---------------------------------------------------------------
        # Data stores
        # ---------------------------------------------------------------
        postgres = Postgres(self, "Postgres", vpc=vpc)
        redis = Redis(self, "Redis", vpc=vpc)

        # ---------------------------------------------------------------
        # ALB + ECS cluster
        # ---------------------------------------------------------------
        alb = Alb(self, "Alb", vpc=vpc, allowed_ipv4_cidrs=settings.allowed_ipv4_cidrs)

        cluster = ecs.Cluster(
            self, "Cluster",
            vpc=vpc,
            container_insights=True,
            enable_fargate_capacity_providers=True,
        )

        custom_repository = None
        if settings.custom_ecr_repository_name:
            custom_repository = ecr.Repository.from_repository_name(
                self, "CustomRepository", settings.custom_ecr_repository_name,
            )

        # ---------------------------------------------------------------
        # Services
        # ---------------------------------------------------------------
        ApiService(
            self, "ApiService",
            cluster=cluster,
            alb=alb,
            postgres=postgres,
            redis=redis,
            storage_bucket=storage_bucket,
            image_tag=settings.dify_image_tag,
            sandbox_image_tag=settings.dify_sandbox_image_tag,
            allow_any_syscalls=settings.allow_any_syscalls,
            debug=settings.debug,
            additional_environment_variables=settings.additional_environment_variables,
        )

        ConsoleService(
            self, "ConsoleService",
            cluster=cluster,
            alb=alb,
            postgres=postgres,
            redis=redis,
            storage_bucket=storage_bucket,
            image_tag=settings.dify_image_tag,
            custom_repository=custom_repository,
            additional_environment_variables=settings.additional_environment_variables,
        )

        # ---------------------------------------------------------------
        # Outputs
        # ---------------------------------------------------------------
        cdk.CfnOutput(self, "DifyUrl", value=alb.url)
        cdk.CfnOutput(self, "StorageBucketName", value=storage_bucket.bucket_name)
        cdk.CfnOutput(self, "DatabaseEndpoint",
                       value=postgres.cluster.cluster_endpoint.hostname)
