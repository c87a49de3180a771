from __future__ import annotations

import typing

POLICY_VERSION = "2012-10-17"

ECS_TASK_EXECUTION_ROLE_POLICY_ARN = "arn:aws:iam::aws:policy/service-role/AmazonECSTaskExecutionRolePolicy"
ECS_INSTANCE_ROLE_POLICY_ARN = "arn:aws:iam::aws:policy/service-role/AmazonEC2ContainerServiceforEC2Role"
SSM_MANAGED_INSTANCE_CORE_POLICY_ARN = "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore"

ECR_PULL_ACTIONS = (
    "ecr:BatchCheckLayerAvailability",
    "ecr:BatchGetImage",
    "ecr:GetDownloadUrlForLayer",
)

ECR_PUSH_ACTIONS = (
    "ecr:CompleteLayerUpload",
    "ecr:InitiateLayerUpload",
    "ecr:PutImage",
    "ecr:UploadLayerPart",
)

# Channels opened by the SSM agent inside the container for `aws ecs execute-command`.
ECS_EXEC_ACTIONS = (
    "ssmmessages:CreateControlChannel",
    "ssmmessages:CreateDataChannel",
    "ssmmessages:OpenControlChannel",
    "ssmmessages:OpenDataChannel",
)


def _policy(*statements: dict[str, typing.Any]) -> dict[str, typing.Any]:
    return {"Version": POLICY_VERSION, "Statement": list(statements)}


def _allow(actions: typing.Iterable[str], resources: typing.Iterable[str]) -> dict[str, typing.Any]:
    return {"Effect": "Allow", "Action": sorted(actions), "Resource": list(resources)}


def build_service_assume_role_policy(service: str) -> dict[str, typing.Any]:
    """
    :param service: the service principal, eg: ecs-tasks.amazonaws.com
    :return: a trust policy letting that service assume the role
    """
    return _policy(
        {
            "Effect": "Allow",
            "Action": "sts:AssumeRole",
            "Principal": {"Service": service},
        }
    )


def build_update_service_policy(service_arn: str) -> dict[str, typing.Any]:
    """Allow `ecs:UpdateService` on exactly one service and nothing else."""
    if not service_arn or "*" in service_arn:
        msg = f"update-service policy must target a single service ARN, got {service_arn!r}"
        raise ValueError(msg)

    return _policy(_allow(["ecs:UpdateService"], [service_arn]))


def build_read_parameters_policy(parameter_arns: typing.Iterable[str]) -> dict[str, typing.Any]:
    arns = sorted(parameter_arns)
    if not arns:
        msg = "at least one parameter ARN is required"
        raise ValueError(msg)

    return _policy(_allow(["ssm:GetParameters"], arns))


def build_ecr_pull_push_policy(repository_arn: str) -> dict[str, typing.Any]:
    # GetAuthorizationToken cannot be scoped to a repository
    return _policy(
        _allow([*ECR_PULL_ACTIONS, *ECR_PUSH_ACTIONS], [repository_arn]),
        _allow(["ecr:GetAuthorizationToken"], ["*"]),
    )


def build_ecs_exec_policy() -> dict[str, typing.Any]:
    return _policy(_allow(ECS_EXEC_ACTIONS, ["*"]))


def build_log_writer_policy(log_group_arn: str) -> dict[str, typing.Any]:
    return _policy(
        _allow(
            ["logs:CreateLogGroup", "logs:CreateLogStream", "logs:PutLogEvents"],
            [log_group_arn, f"{log_group_arn}:*"],
        )
    )
