"""Shared pytest fixtures for personal-infra Pulumi tests.

This module provides common fixtures used across test files:
- infra_root: Sets PERSONAL_INFRA_ROOT environment variable
- pulumi_mocks: Recording Pulumi mock class for resource tests
- run_program: Runs a whole program under fresh recording mocks
- policy_field: Flattens one field of an IAM policy document
- deployment: Deployment with default configuration
"""

import pathlib
import typing

import pulumi
import pytest

import personal_infra.deployment

ACCOUNT_ID = "123456789012"
REGION = "us-east-1"
AZS = ["us-east-1a", "us-east-1b", "us-east-1c"]


# ============================================================================
# Environment Setup Fixtures
# ============================================================================


@pytest.fixture
def infra_root(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path) -> pathlib.Path:
    """Set PERSONAL_INFRA_ROOT environment variable to a temporary directory.

    Usage:
        def test_something(infra_root):
            paths = Paths()
            assert paths.root == infra_root
    """
    monkeypatch.setenv("PERSONAL_INFRA_ROOT", str(tmp_path))
    return tmp_path


# ============================================================================
# Pulumi Mock Fixtures
# ============================================================================


class RecordingPulumiMocks(pulumi.runtime.Mocks):
    """Pulumi mocks that remember every resource they were asked to create.

    Inputs are echoed back as outputs, with the handful of computed attributes
    the components read (ARNs, repository URLs, image URIs) filled in. ECS
    service ids are their ARNs, as they are in AWS.
    """

    def __init__(self) -> None:
        self.resources: list[pulumi.runtime.MockResourceArgs] = []

    def new_resource(self, args: pulumi.runtime.MockResourceArgs) -> tuple[str | None, dict[typing.Any, typing.Any]]:
        self.resources.append(args)

        outputs = dict(args.inputs)
        outputs.setdefault("arn", f"arn:aws:mock:{REGION}:{ACCOUNT_ID}:{args.typ}/{args.name}")

        resource_id = args.name
        if args.typ == "aws:ecs/service:Service":
            resource_id = f"arn:aws:ecs:{REGION}:{ACCOUNT_ID}:service/{args.inputs['name']}"
        elif args.typ == "aws:ecr/repository:Repository":
            outputs["repositoryUrl"] = f"{ACCOUNT_ID}.dkr.ecr.{REGION}.amazonaws.com/{args.inputs['name']}"
        elif args.typ == "awsx:ecr:Image":
            outputs["imageUri"] = f"{args.inputs['repositoryUrl']}@sha256:0123456789abcdef"

        return resource_id, outputs

    def call(
        self, args: pulumi.runtime.MockCallArgs
    ) -> dict[typing.Any, typing.Any] | tuple[dict[typing.Any, typing.Any], list[tuple[str, str]] | None]:
        if args.token == "aws:index/getCallerIdentity:getCallerIdentity":
            return {
                "accountId": ACCOUNT_ID,
                "arn": f"arn:aws:iam::{ACCOUNT_ID}:user/testing",
                "id": ACCOUNT_ID,
                "userId": "AIDATESTING",
            }

        if args.token == "aws:index/getRegion:getRegion":
            return {
                "name": REGION,
                "id": REGION,
                "description": "US East (N. Virginia)",
                "endpoint": f"ec2.{REGION}.amazonaws.com",
            }

        if args.token == "aws:index/getAvailabilityZones:getAvailabilityZones":
            return {"names": AZS, "zoneIds": ["use1-az1", "use1-az2", "use1-az4"], "id": REGION}

        if args.token == "aws:ssm/getParameter:getParameter":
            return {
                "arn": f"arn:aws:ssm:{REGION}::parameter{args.args['name']}",
                "id": args.args["name"],
                "name": args.args["name"],
                "type": "String",
                "value": "ami-0123456789abcdef0",
                "version": 1,
            }

        return {}

    def types(self) -> list[str]:
        return [r.typ for r in self.resources]

    def named(self, typ: str) -> list[pulumi.runtime.MockResourceArgs]:
        return [r for r in self.resources if r.typ == typ]


@pytest.fixture
def pulumi_mocks() -> RecordingPulumiMocks:
    """Returns a fresh, already installed, recording Pulumi mocks instance.

    Usage:
        @pulumi.runtime.test
        def test_my_resource(pulumi_mocks):
            # resources created here are recorded in pulumi_mocks.resources
    """
    mocks = RecordingPulumiMocks()
    pulumi.runtime.set_mocks(mocks, project="personal-infra", stack="dev", preview=False)
    return mocks


@pytest.fixture
def run_program() -> typing.Callable[[typing.Callable[[], typing.Any]], RecordingPulumiMocks]:
    """Returns a function running a Pulumi program under fresh recording mocks.

    The program runs to completion, including every pending resource registration,
    so one test can build and compare several independent stacks.

    Usage:
        def test_something(run_program):
            first = run_program(lambda: ProxyDeployment(deployment))
            second = run_program(lambda: ProxyDeployment(deployment))
            assert first.types() == second.types()
    """

    def run(program: typing.Callable[[], typing.Any]) -> RecordingPulumiMocks:
        mocks = RecordingPulumiMocks()
        pulumi.runtime.set_mocks(mocks, project="personal-infra", stack="dev", preview=False)

        def main() -> None:
            program()

        pulumi.runtime.test(main)()
        return mocks

    return run


# ============================================================================
# IAM Fixtures
# ============================================================================


@pytest.fixture
def policy_field() -> typing.Callable[[dict[str, typing.Any], str], list[str]]:
    """Returns a function listing one field (Action, Resource) across every statement of a policy.

    Usage:
        def test_something(policy_field):
            assert policy_field(policy, "Action") == ["ecs:UpdateService"]
    """

    def field(policy: dict[str, typing.Any], key: str) -> list[str]:
        values: list[str] = []
        for statement in policy.get("Statement", []):
            value = statement.get(key, [])
            values.extend([value] if isinstance(value, str) else value)

        return values

    return field


# ============================================================================
# Deployment Fixtures
# ============================================================================


@pytest.fixture
def deployment(infra_root: pathlib.Path) -> personal_infra.deployment.Deployment:
    """Create a Deployment named "dev" with default configuration.

    PERSONAL_INFRA_ROOT is set to a temporary directory, and no deployment.yaml
    is read, so the WARP sidecar is off unless a test passes a context.
    """
    _ = infra_root
    return personal_infra.deployment.Deployment("dev", load_yaml=False)
