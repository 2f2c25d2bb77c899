"""
Start, stop and inspect the Dify console service.

Usage:
    python scripts/console_task.py start [--wait]
    python scripts/console_task.py stop
    python scripts/console_task.py tasks
    python scripts/console_task.py connect

Cluster and service names are read from the DifyOnAwsStack outputs unless
passed with --cluster / --service.
"""

from __future__ import annotations

import argparse
import logging
import os
import re
import sys
from typing import Dict, List, Optional, Tuple

import boto3

REGION = os.getenv("AWS_REGION", "us-west-2")
STACK_NAME = os.getenv("DIFY_STACK_NAME", "DifyOnAwsStack")
CONTAINER_NAME = "Main"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
)
logger = logging.getLogger("console_task")

# "aws ecs update-service --region r --cluster c --service s --desired-count 1"
_CLUSTER_RE = re.compile(r"--cluster (\S+)")
_SERVICE_RE = re.compile(r"--service (\S+)")


def stack_outputs(cfn, stack_name: str) -> Dict[str, str]:
    resp = cfn.describe_stacks(StackName=stack_name)
    outputs = resp["Stacks"][0].get("Outputs", [])
    return {o["OutputKey"]: o["OutputValue"] for o in outputs}


def resolve_target(outputs: Dict[str, str]) -> Tuple[str, str]:
    """Pull the cluster and service names out of the start command output."""
    command = outputs.get("ConsoleStartServiceCommand")
    if not command:
        raise RuntimeError("ConsoleStartServiceCommand output not found; is the stack deployed?")

    cluster = _CLUSTER_RE.search(command)
    service = _SERVICE_RE.search(command)
    if not cluster or not service:
        raise ValueError(f"Unexpected command format: {command}")
    return cluster.group(1), service.group(1)


def set_desired_count(ecs, cluster: str, service: str, count: int, wait: bool = False) -> None:
    logger.info("Setting desired count of %s to %d", service, count)
    ecs.update_service(cluster=cluster, service=service, desiredCount=count)
    if wait:
        logger.info("Waiting for %s to stabilize (Ctrl+C to stop)...", service)
        ecs.get_waiter("services_stable").wait(cluster=cluster, services=[service])
        logger.info("Service is stable.")


def running_tasks(ecs, cluster: str, service: str) -> List[str]:
    resp = ecs.list_tasks(cluster=cluster, serviceName=service, desiredStatus="RUNNING")
    return resp.get("taskArns", [])


def connect_command(region: str, cluster: str, task_arn: str) -> str:
    task_id = task_arn.rsplit("/", 1)[-1]
    return (
        f"aws ecs execute-command --region {region} --cluster {cluster} "
        f'--container {CONTAINER_NAME} --interactive --command "bash" --task {task_id}'
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("action", choices=["start", "stop", "tasks", "connect"])
    parser.add_argument("--wait", action="store_true", help="poll until the service is stable")
    parser.add_argument("--cluster")
    parser.add_argument("--service")
    parser.add_argument("--region", default=REGION)
    parser.add_argument("--stack", default=STACK_NAME)
    args = parser.parse_args(argv)

    cluster, service = args.cluster, args.service
    if not cluster or not service:
        cfn = boto3.client("cloudformation", region_name=args.region)
        cluster, service = resolve_target(stack_outputs(cfn, args.stack))

    ecs = boto3.client("ecs", region_name=args.region)

    if args.action == "start":
        set_desired_count(ecs, cluster, service, 1, wait=args.wait)
        return 0

    if args.action == "stop":
        set_desired_count(ecs, cluster, service, 0, wait=args.wait)
        return 0

    tasks = running_tasks(ecs, cluster, service)
    if args.action == "tasks":
        for arn in tasks:
            print(arn)
        if not tasks:
            logger.info("No running console tasks. Run 'start' first.")
        return 0

    # connect
    if not tasks:
        logger.error("No running console task to connect to. Run 'start --wait' first.")
        return 1
    print(connect_command(args.region, cluster, tasks[0]))
    return 0


if __name__ == "__main__":
    sys.exit(main())
