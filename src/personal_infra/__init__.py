from __future__ import annotations

import dataclasses
import enum
import ipaddress
import typing

API_VERSION = "personal-infra/v1"
ANY_IPV4 = "0.0.0.0/0"
DEFAULT_CIDR_BLOCK = "10.0.0.0/16"
LATEST = "latest"
RESOURCE_NAME = "PersonalProxyStack"
USE_WARP = "useWarp"

PROXY_PORT = 8388
WARP_STATUS_PORT = 9091

MAX_SUBNET_MASK = 28

TRUTHY_FLAG_VALUES = frozenset(["1", "on", "true", "yes"])
FALSY_FLAG_VALUES = frozenset(["", "0", "off", "false", "no"])


class SubnetKind(enum.StrEnum):
    PUBLIC = "PUBLIC"
    PRIVATE = "PRIVATE"


class CpuArchitecture(enum.StrEnum):
    ARM64 = "ARM64"
    X86_64 = "X86_64"

    @property
    def docker_platform(self) -> str:
        return "linux/arm64" if self == CpuArchitecture.ARM64 else "linux/amd64"


class SecretParameters(enum.StrEnum):
    SS_ALGORITHM = "/proxy/SS_ALGORITHM"
    SS_PASSWORD = "/proxy/SS_PASSWORD"  # noqa: S105


class Suffixes(enum.StrEnum):
    """Role suffixes appended to the resource name prefix."""

    VPC = "Vpc"

    PROXY_CLUSTER = "Proxy-Cluster"
    PROXY_EXECUTION_ROLE = "Proxy-TaskExecution-Role"
    PROXY_IMAGE = "Proxy-Image"
    PROXY_LOG_GROUP = "Proxy-LogGroup"
    PROXY_REPOSITORY = "Proxy-Repo"
    PROXY_SECURITY_GROUP = "Proxy-SecurityGroup"
    PROXY_SERVICE = "Proxy-Service"
    PROXY_TASK_DEFINITION = "Proxy-FargateTaskDefinition"

    WARP_ASG = "ProxyWithWarp-Asg"
    WARP_CAPACITY_PROVIDER = "ProxyEc2-AsgCapacityProvider"
    WARP_CLUSTER_CAPACITY_PROVIDERS = "ProxyWithWarp-ClusterCapacityProviders"
    WARP_CODEBUILD_ROLE = "ProxyWithWarpCodebuild-Role"
    WARP_EXECUTION_ROLE = "ProxyWithWarp-TaskExecution-Role"
    WARP_INSTANCE_PROFILE = "ProxyWithWarp-InstanceProfile"
    WARP_INSTANCE_ROLE = "ProxyWithWarp-Instance-Role"
    WARP_INSTANCE_SECURITY_GROUP = "ProxyWithWarp-Instance-SecurityGroup"
    WARP_LAUNCH_TEMPLATE = "ProxyWithWarp-LaunchTemplate"
    WARP_PROJECT = "ProxyWithWarp-Project"
    WARP_REPOSITORY = "ProxyWithWarp-Repo"
    WARP_SERVICE = "ProxyWithWarp-Service"
    WARP_TASK_DEFINITION = "ProxyWithWarp-Ec2TaskDefinition"
    WARP_TASK_ROLE = "ProxyWithWarp-Task-Role"


class TagKeys(enum.StrEnum):
    MANAGED_BY = "personal-infra/managed-by"
    STACK = "personal-infra/stack"


def resource_name(prefix: str, suffix: str) -> str:
    return f"{prefix}-{suffix}"


def parse_flag(value: typing.Any) -> tuple[bool, bool]:
    """Interpret a feature flag value.

    Returns ``(enabled, ok)``. Anything that is not a recognizable boolean
    yields ``(False, False)`` so that a malformed flag leaves the feature off.
    """
    if value is None:
        return False, True

    if isinstance(value, bool):
        return value, True

    normalized = str(value).strip().lower()
    if normalized in TRUTHY_FLAG_VALUES:
        return True, True

    if normalized in FALSY_FLAG_VALUES:
        return False, True

    return False, False


@dataclasses.dataclass(frozen=True)
class SubnetTier:
    name: str
    cidr_mask: int
    kind: SubnetKind = SubnetKind.PUBLIC

    def __post_init__(self):
        if not self.name:
            msg = "subnet tier name must not be empty"
            raise ValueError(msg)

        if not hasattr(self.kind, "name"):
            try:
                object.__setattr__(self, "kind", SubnetKind(str(self.kind).upper()))
            except ValueError:
                msg = f"Invalid subnet tier kind {self.kind!r} for tier {self.name!r}"
                raise ValueError(msg) from None


@dataclasses.dataclass(frozen=True)
class NetworkConfig:
    cidr_block: str = DEFAULT_CIDR_BLOCK
    subnet_tiers: tuple[SubnetTier, ...] = (SubnetTier(name="public", cidr_mask=24, kind=SubnetKind.PUBLIC),)
    max_azs: int = 1

    def __post_init__(self):
        object.__setattr__(self, "subnet_tiers", tuple(self.subnet_tiers))

        if self.max_azs < 1:
            msg = f"max_azs must be at least 1, got {self.max_azs}"
            raise ValueError(msg)

        if len(self.subnet_tiers) == 0:
            msg = "At least one subnet tier is required"
            raise ValueError(msg)

        names = [tier.name for tier in self.subnet_tiers]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            msg = f"Duplicate subnet tier names: {duplicates}"
            raise ValueError(msg)

        network = self.network
        for tier in self.subnet_tiers:
            if tier.cidr_mask <= network.prefixlen or tier.cidr_mask > MAX_SUBNET_MASK:
                msg = (
                    f"Subnet tier {tier.name!r} mask /{tier.cidr_mask} does not subdivide {network} "
                    f"(must be between /{network.prefixlen + 1} and /{MAX_SUBNET_MASK})"
                )
                raise ValueError(msg)

        # raises when the tiers do not fit inside the block
        self.subnet_cidr_blocks()

    @property
    def network(self) -> ipaddress.IPv4Network:
        network = ipaddress.ip_network(self.cidr_block)
        if not isinstance(network, ipaddress.IPv4Network):
            msg = f"Only IPv4 address blocks are supported, got {self.cidr_block!r}"
            raise ValueError(msg)  # noqa: TRY004

        return network

    @property
    def public_tiers(self) -> tuple[SubnetTier, ...]:
        return tuple(tier for tier in self.subnet_tiers if tier.kind == SubnetKind.PUBLIC)

    def subnet_cidr_blocks(self, az_count: int | None = None) -> dict[str, tuple[ipaddress.IPv4Network, ...]]:
        """
        Allocate one subnet per tier per availability zone.

        Subnets are packed in tier order, then availability zone order, each one aligned to
        its own size, so the same config always yields the same blocks.
        """
        network = self.network
        az_count = self.max_azs if az_count is None else az_count

        cursor = int(network.network_address)
        end = int(network.broadcast_address)

        blocks: dict[str, tuple[ipaddress.IPv4Network, ...]] = {}
        for tier in self.subnet_tiers:
            size = 2 ** (32 - tier.cidr_mask)
            tier_blocks = []

            for _ in range(az_count):
                cursor = -(-cursor // size) * size
                if cursor + size - 1 > end:
                    msg = f"Subnet tiers do not fit inside {network} across {az_count} availability zone(s)"
                    raise ValueError(msg)

                tier_blocks.append(ipaddress.IPv4Network((cursor, tier.cidr_mask)))
                cursor += size

            blocks[tier.name] = tuple(tier_blocks)

        return blocks


@dataclasses.dataclass(frozen=True)
class SourceRepository:
    """
    GitHub repository the WARP pipeline builds from.

    It must hold this package: the buildspec builds `src/personal_infra/assets/proxy-with-warp` relative to the
    checkout root.
    """

    owner: str = "thomas0chow"
    name: str = "personal-infra"
    branch: str = "feature/warp"

    def __post_init__(self):
        for field in ("owner", "name", "branch"):
            if not getattr(self, field):
                msg = f"source repository {field} must not be empty"
                raise ValueError(msg)

    @property
    def location(self) -> str:
        return f"https://github.com/{self.owner}/{self.name}.git"


@dataclasses.dataclass(frozen=True)
class WarpConfig:
    instance_type: str = "t2.micro"
    memory_limit_mib: int = 512
    status_port: int = WARP_STATUS_PORT
    image_tag: str = LATEST
    repository_name: str = "proxy/with-warp"
    source: SourceRepository = dataclasses.field(default_factory=SourceRepository)


@dataclasses.dataclass(frozen=True)
class DeploymentConfig:
    resource_name: str = RESOURCE_NAME
    use_warp: bool = False
    network: NetworkConfig = dataclasses.field(default_factory=NetworkConfig)
    warp: WarpConfig = dataclasses.field(default_factory=WarpConfig)
    proxy_port: int = PROXY_PORT
    proxy_repository_name: str = "proxy/proxy"
    log_group_name: str = "/aws/ecs/proxy"
    log_retention_days: int = 3
    cpu_architecture: CpuArchitecture = CpuArchitecture.ARM64
    tags: dict[str, str] = dataclasses.field(default_factory=dict)

    def __post_init__(self):
        if not self.resource_name:
            msg = "resource_name must not be empty"
            raise ValueError(msg)

        if not hasattr(self.cpu_architecture, "name"):
            object.__setattr__(self, "cpu_architecture", CpuArchitecture(str(self.cpu_architecture).upper()))

        if not isinstance(self.tags, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in self.tags.items()
        ):
            msg = f"tags must map strings to strings, got {self.tags!r}"
            raise ValueError(msg)

    def name(self, suffix: str) -> str:
        return resource_name(self.resource_name, suffix)

    @property
    def secret_parameters(self) -> dict[str, str]:
        return {parameter.name: parameter.value for parameter in SecretParameters}
