#!/usr/bin/env python3
"""
AWS CDK entry point.

Provisions Dify on ECS Fargate:
  - VPC with public/private subnets
  - S3 bucket for user files
  - Aurora PostgreSQL Serverless v2 with pgvector
  - ElastiCache Redis
  - Application Load Balancer
  - API service and an on-demand console service

Per-deployment settings are read from CDK context, e.g.
    cdk deploy -c dify_image_tag=1.0.0 -c debug=true
List-valued keys are given as JSON:
    cdk deploy -c allowed_ipv4_cidrs='["203.0.113.0/24"]'
"""

import logging
import os

import aws_cdk as cdk

from stacks.config import DeploymentSettings
from stacks.dify_stack import DifyStack

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
)

app = cdk.App()

settings = DeploymentSettings.from_context(app.node)

DifyStack(
    app,
    "DifyOnAwsStack",
    settings=settings,
    env=cdk.Environment(
        account=app.node.try_get_context("account") or os.getenv("CDK_DEFAULT_ACCOUNT"),
        region=app.node.try_get_context("region") or os.getenv("CDK_DEFAULT_REGION", "us-west-2"),
    ),
)

app.synth()
