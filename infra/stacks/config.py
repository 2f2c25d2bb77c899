from __future__ import annotations

import json
import re
from typing import Any, List, Literal, Optional, Union, get_origin

from pydantic import BaseModel, Field, field_validator

# images
DIFY_API_IMAGE = "langgenius/dify-api"
DIFY_SANDBOX_IMAGE = "langgenius/dify-sandbox"
DIFY_PLUGIN_DAEMON_IMAGE = "langgenius/dify-plugin-daemon:0.0.1-local"

# fixed container ports (all containers share the task's network namespace)
API_PORT = 5001
PLUGIN_DAEMON_PORT = 5002
SANDBOX_PORT = 8194
KNOWLEDGE_API_PORT = 8000

# task shape
TASK_CPU = 1024
TASK_MEMORY_MIB = 2048  # OOM was frequent with 512MB

# ALB routing for the API service
API_HEALTH_CHECK_PATH = "/health"
API_PATH_PREFIXES = ["/console/api", "/api", "/v1", "/files"]

# highest x86_64 syscall number + 1
SYSCALL_COUNT = 457

# https://github.com/langgenius/dify-sandbox/blob/main/internal/static/config_default_amd64.go
SANDBOX_PYTHON_LIB_PATH = [
    "/usr/local/lib/python3.10",
    "/usr/lib/python3.10",
    "/usr/lib/python3",
    # no trailing slash, the whole directory is copied
    "/usr/lib/x86_64-linux-gnu",
    "/etc/ssl/certs/ca-certificates.crt",
    "/etc/nsswitch.conf",
    "/etc/hosts",
    "/etc/resolv.conf",
    "/run/systemd/resolve/stub-resolv.conf",
    "/run/resolvconf/resolv.conf",
]

BEDROCK_ACTIONS = [
    "bedrock:InvokeModel",
    "bedrock:InvokeModelWithResponseStream",
    "bedrock:Rerank",
    "bedrock:Retrieve",
    "bedrock:RetrieveAndGenerate",
]

ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

Target = Literal["api", "worker", "sandbox"]


class SsmParameterValue(BaseModel):
    """Resolve the variable from an SSM parameter at container start."""
    parameter_name: str


class SecretsManagerValue(BaseModel):
    """Resolve the variable from a Secrets Manager secret (optionally one JSON field)."""
    secret_name: str
    field: Optional[str] = None


class AdditionalEnvironmentVariable(BaseModel):
    """A per-deployment override merged into one or more containers."""
    key: str = Field(description="Environment variable name")
    value: Union[str, SsmParameterValue, SecretsManagerValue]
    targets: Optional[List[Target]] = Field(
        default=None,
        description="Containers receiving the variable; all of them when omitted",
    )

    @field_validator("key")
    @classmethod
    def _valid_name(cls, v: str) -> str:
        if not ENV_NAME_RE.match(v):
            raise ValueError(f"invalid environment variable name: {v!r}")
        return v

    def applies_to(self, target: str) -> bool:
        return self.targets is None or target in self.targets

    @property
    def is_secret(self) -> bool:
        return not isinstance(self.value, str)


class DeploymentSettings(BaseModel):
    """Per-deployment knobs, read from CDK context."""
    dify_image_tag: str = "1.0.0"
    dify_sandbox_image_tag: str = "0.2.10"
    allow_any_syscalls: bool = False
    debug: bool = False
    custom_ecr_repository_name: Optional[str] = None
    allowed_ipv4_cidrs: List[str] = Field(default_factory=lambda: ["0.0.0.0/0"])
    additional_environment_variables: List[AdditionalEnvironmentVariable] = Field(
        default_factory=list
    )

    @classmethod
    def from_context(cls, node: Any) -> "DeploymentSettings":
        """
        Build settings from a construct node's context.
        Keys that are not set fall back to the defaults above.

        `cdk -c key=value` always passes strings, so list-typed keys given
        that way are decoded as JSON, e.g.
            -c allowed_ipv4_cidrs='["10.0.0.0/8"]'
        """
        values = {}
        for name, field in cls.model_fields.items():
            v = node.try_get_context(name)
            if v is None:
                continue
            if isinstance(v, str) and get_origin(field.annotation) is list:
                try:
                    v = json.loads(v)
                except json.JSONDecodeError as e:
                    raise ValueError(f"context key {name!r} must be a JSON list: {e}") from e
            values[name] = v
        return cls(**values)
