"""
CDK constructs and stacks for running Dify on ECS Fargate.
"""

from stacks.alb import Alb
from stacks.api_service import ApiService
from stacks.console_service import ConsoleService
from stacks.data_stores import Postgres, Redis
from stacks.dify_stack import DifyStack
