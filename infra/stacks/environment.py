"""
Environment and secret wiring shared by the Dify containers.

The Dify processes are configured entirely through environment variables
(https://docs.dify.ai/getting-started/install-self-hosted/environments).
Plain values go into ``environment``; credentials are always passed as
``ecs.Secret`` references so nothing sensitive lands in the task definition.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from constructs import Construct
from aws_cdk import (
    Stack,
    aws_ecs as ecs,
    aws_s3 as s3,
    aws_secretsmanager as secretsmanager,
    aws_ssm as ssm,
)

from stacks.config import (
    AdditionalEnvironmentVariable,
    SecretsManagerValue,
    SsmParameterValue,
)

logger = logging.getLogger(__name__)


def postgres_secrets(postgres) -> Dict[str, ecs.Secret]:
    # the app database and the pgvector store live on the same cluster
    s = postgres.secret
    return {
        "DB_USERNAME": ecs.Secret.from_secrets_manager(s, "username"),
        "DB_HOST": ecs.Secret.from_secrets_manager(s, "host"),
        "DB_PORT": ecs.Secret.from_secrets_manager(s, "port"),
        "DB_PASSWORD": ecs.Secret.from_secrets_manager(s, "password"),
        "PGVECTOR_USER": ecs.Secret.from_secrets_manager(s, "username"),
        "PGVECTOR_HOST": ecs.Secret.from_secrets_manager(s, "host"),
        "PGVECTOR_PORT": ecs.Secret.from_secrets_manager(s, "port"),
        "PGVECTOR_PASSWORD": ecs.Secret.from_secrets_manager(s, "password"),
    }


def redis_secrets(redis) -> Dict[str, ecs.Secret]:
    return {
        "REDIS_PASSWORD": ecs.Secret.from_secrets_manager(redis.secret),
        "CELERY_BROKER_URL": ecs.Secret.from_ssm_parameter(redis.broker_url),
    }


def redis_environment(redis) -> Dict[str, str]:
    return {
        "REDIS_HOST": redis.endpoint,
        "REDIS_PORT": str(redis.port),
        "REDIS_USE_SSL": "true",
        "REDIS_DB": "0",
    }


def storage_environment(bucket: s3.IBucket) -> Dict[str, str]:
    return {
        "STORAGE_TYPE": "s3",
        "S3_BUCKET_NAME": bucket.bucket_name,
        "S3_REGION": Stack.of(bucket).region,
    }


def vector_store_environment(postgres) -> Dict[str, str]:
    return {
        "VECTOR_STORE": "pgvector",
        "PGVECTOR_DATABASE": postgres.pg_vector_database_name,
    }


def _select(
    target: str, variables: Optional[Iterable[AdditionalEnvironmentVariable]]
) -> List[AdditionalEnvironmentVariable]:
    selected = [v for v in (variables or []) if v.applies_to(target)]

    seen = set()
    for v in selected:
        if v.key in seen:
            raise ValueError(
                f"environment variable {v.key} is defined more than once for {target}"
            )
        seen.add(v.key)
    return selected


def get_additional_environment_variables(
    target: str, variables: Optional[Iterable[AdditionalEnvironmentVariable]]
) -> Dict[str, str]:
    """Plain-valued overrides that apply to ``target``."""
    return {v.key: v.value for v in _select(target, variables) if not v.is_secret}


def get_additional_secret_variables(
    scope: Construct,
    target: str,
    variables: Optional[Iterable[AdditionalEnvironmentVariable]],
) -> Dict[str, ecs.Secret]:
    """
    Secret-valued overrides that apply to ``target``.

    The referenced SSM parameters / Secrets Manager secrets must already exist;
    they are imported by name, never created here.
    """
    out: Dict[str, ecs.Secret] = {}
    for v in _select(target, variables):
        if isinstance(v.value, SsmParameterValue):
            param = ssm.StringParameter.from_string_parameter_name(
                scope, f"Param{v.key}{target}", v.value.parameter_name
            )
            out[v.key] = ecs.Secret.from_ssm_parameter(param)
        elif isinstance(v.value, SecretsManagerValue):
            secret = secretsmanager.Secret.from_secret_name_v2(
                scope, f"Secret{v.key}{target}", v.value.secret_name
            )
            out[v.key] = ecs.Secret.from_secrets_manager(secret, v.value.field)
    return out


def merge_variables(
    environment: Dict[str, str],
    secrets: Dict[str, ecs.Secret],
    additional_environment: Dict[str, str],
    additional_secrets: Dict[str, ecs.Secret],
) -> Tuple[Dict[str, str], Dict[str, ecs.Secret]]:
    """
    Merge overrides into a container's environment and secrets.

    Overrides win. ECS rejects a name that is both a plain variable and a
    secret, so an override in one map also drops the name from the other.
    """
    env = {k: v for k, v in environment.items() if k not in additional_secrets}
    sec = {k: v for k, v in secrets.items() if k not in additional_environment}

    overrides = set(additional_environment) | set(additional_secrets)
    overridden = (set(environment) | set(secrets)) & overrides
    if overridden:
        logger.info("Overriding variables: %s", ", ".join(sorted(overridden)))

    env.update(additional_environment)
    sec.update(additional_secrets)
    return env, sec


def container_variables(
    scope: Construct,
    target: str,
    environment: Dict[str, str],
    secrets: Dict[str, ecs.Secret],
    variables: Optional[Iterable[AdditionalEnvironmentVariable]],
) -> Tuple[Dict[str, str], Dict[str, ecs.Secret]]:
    variables = list(variables or [])
    return merge_variables(
        environment,
        secrets,
        get_additional_environment_variables(target, variables),
        get_additional_secret_variables(scope, target, variables),
    )
