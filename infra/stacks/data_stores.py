"""
Data stores used by Dify.

  - Postgres: Aurora PostgreSQL Serverless v2, hosting both the application
    database and a separate pgvector database
  - Redis: ElastiCache for Redis (TLS + AUTH), used as cache and Celery broker
"""

from __future__ import annotations

import jsii
from constructs import Construct
from aws_cdk import (
    RemovalPolicy,
    aws_ec2 as ec2,
    aws_elasticache as elasticache,
    aws_rds as rds,
    aws_secretsmanager as secretsmanager,
    aws_ssm as ssm,
    custom_resources as cr,
)

POSTGRES_PORT = 5432
REDIS_PORT = 6379


@jsii.implements(ec2.IConnectable)
class Postgres(Construct):

    database_name = "main"
    pg_vector_database_name = "pgvector"

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        vpc: ec2.IVpc,
        min_capacity: float = 0.5,
        max_capacity: float = 2.0,
    ) -> None:
        super().__init__(scope, construct_id)

        self.cluster = rds.DatabaseCluster(
            self, "Cluster",
            engine=rds.DatabaseClusterEngine.aurora_postgres(
                version=rds.AuroraPostgresEngineVersion.VER_15_5,
            ),
            vpc=vpc,
            vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS),
            serverless_v2_min_capacity=min_capacity,
            serverless_v2_max_capacity=max_capacity,
            writer=rds.ClusterInstance.serverless_v2("Writer", auto_minor_version_upgrade=True),
            credentials=rds.Credentials.from_generated_secret("postgres"),
            port=POSTGRES_PORT,
            default_database_name=self.database_name,
            enable_data_api=True,
            storage_encrypted=True,
            removal_policy=RemovalPolicy.DESTROY,
        )
        # generated credentials always produce a secret
        self.secret = self.cluster.secret
        self._connections = ec2.Connections(
            security_groups=self.cluster.connections.security_groups,
            default_port=ec2.Port.tcp(POSTGRES_PORT),
        )

        # pgvector lives in its own database; create it and the extension
        # through the Data API once the writer is up
        create_db = self._run_query(
            "CreatePgVectorDatabase",
            self.database_name,
            f"CREATE DATABASE {self.pg_vector_database_name};",
        )
        create_ext = self._run_query(
            "CreatePgVectorExtension",
            self.pg_vector_database_name,
            "CREATE EXTENSION IF NOT EXISTS vector;",
        )
        create_ext.node.add_dependency(create_db)

    @property
    def connections(self) -> ec2.Connections:
        return self._connections

    def _run_query(self, construct_id: str, database: str, sql: str) -> cr.AwsCustomResource:
        query = cr.AwsCustomResource(
            self, construct_id,
            on_create=cr.AwsSdkCall(
                service="RDSDataService",
                action="executeStatement",
                parameters={
                    "resourceArn": self.cluster.cluster_arn,
                    "secretArn": self.secret.secret_arn,
                    "database": database,
                    "sql": sql,
                },
                physical_resource_id=cr.PhysicalResourceId.of(construct_id),
            ),
            policy=cr.AwsCustomResourcePolicy.from_sdk_calls(
                resources=[self.cluster.cluster_arn],
            ),
            install_latest_aws_sdk=False,
        )
        self.secret.grant_read(query)
        query.node.add_dependency(self.cluster)
        return query


@jsii.implements(ec2.IConnectable)
class Redis(Construct):

    port = REDIS_PORT

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        vpc: ec2.IVpc,
        multi_az: bool = False,
    ) -> None:
        super().__init__(scope, construct_id)

        subnets = vpc.select_subnets(subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS)
        subnet_group = elasticache.CfnSubnetGroup(
            self, "SubnetGroup",
            description="Dify cache/queue subnets",
            subnet_ids=subnets.subnet_ids,
        )

        security_group = ec2.SecurityGroup(self, "SecurityGroup", vpc=vpc)
        self._connections = ec2.Connections(
            security_groups=[security_group],
            default_port=ec2.Port.tcp(self.port),
        )

        # ElastiCache AUTH tokens only allow printable non-punctuation chars
        self.secret = secretsmanager.Secret(
            self, "AuthToken",
            generate_secret_string=secretsmanager.SecretStringGenerator(
                password_length=30,
                exclude_punctuation=True,
            ),
        )

        replication_group = elasticache.CfnReplicationGroup(
            self, "Resource",
            replication_group_description="Dify cache/queue cluster",
            engine="redis",
            engine_version="7.1",
            cache_parameter_group_name="default.redis7",
            cache_node_type="cache.t4g.micro",
            num_cache_clusters=2 if multi_az else 1,
            multi_az_enabled=multi_az,
            automatic_failover_enabled=multi_az,
            port=self.port,
            cache_subnet_group_name=subnet_group.ref,
            security_group_ids=[security_group.security_group_id],
            transit_encryption_enabled=True,
            at_rest_encryption_enabled=True,
            auth_token=self.secret.secret_value.unsafe_unwrap(),
        )
        self.endpoint = replication_group.attr_primary_end_point_address

        # Celery needs the password inside the URL
        self.broker_url = ssm.StringParameter(
            self, "BrokerUrl",
            string_value=(
                f"rediss://:{self.secret.secret_value.unsafe_unwrap()}"
                f"@{self.endpoint}:{self.port}/1?ssl_cert_reqs=optional"
            ),
        )

    @property
    def connections(self) -> ec2.Connections:
        return self._connections
