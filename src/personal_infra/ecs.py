from __future__ import annotations

import dataclasses
import enum
import json
import typing


class Capability(enum.StrEnum):
    NET_ADMIN = "NET_ADMIN"
    SYS_ADMIN = "SYS_ADMIN"


class Protocol(enum.StrEnum):
    TCP = "tcp"
    UDP = "udp"


@dataclasses.dataclass(frozen=True)
class SecretReference:
    """
    Handle to an SSM SecureString parameter.

    Only the parameter path is ever known here; ECS resolves the value when the task starts.
    """

    parameter_name: str

    def __post_init__(self):
        if not self.parameter_name:
            msg = "parameter_name must not be empty"
            raise ValueError(msg)

    def arn(self, region: str, account_id: str) -> str:
        return f"arn:aws:ssm:{region}:{account_id}:parameter/{self.parameter_name.lstrip('/')}"

    def __repr__(self) -> str:
        return f"SecretReference({self.parameter_name!r})"


@dataclasses.dataclass(frozen=True)
class LogConfiguration:
    group: str
    region: str
    stream_prefix: str

    def to_dict(self) -> dict[str, typing.Any]:
        return {
            "logDriver": "awslogs",
            "options": {
                "awslogs-group": self.group,
                "awslogs-region": self.region,
                "awslogs-stream-prefix": self.stream_prefix,
            },
        }


@dataclasses.dataclass(frozen=True)
class PortMapping:
    container_port: int
    protocol: Protocol = Protocol.TCP
    host_port: int | None = None

    def to_dict(self) -> dict[str, typing.Any]:
        mapping: dict[str, typing.Any] = {"containerPort": self.container_port, "protocol": str(self.protocol)}
        if self.host_port is not None:
            mapping["hostPort"] = self.host_port

        return mapping


@dataclasses.dataclass(frozen=True)
class SystemControl:
    namespace: str
    value: str


@dataclasses.dataclass(frozen=True)
class ContainerDefinition:
    name: str
    image: str
    secrets: typing.Mapping[str, SecretReference] = dataclasses.field(default_factory=dict)
    log_configuration: LogConfiguration | None = None
    capabilities: tuple[Capability, ...] = ()
    system_controls: tuple[SystemControl, ...] = ()
    port_mappings: tuple[PortMapping, ...] = ()
    memory_limit_mib: int | None = None
    privileged: bool = False
    essential: bool = True

    def __post_init__(self):
        for env_name, reference in self.secrets.items():
            if not isinstance(reference, SecretReference):
                msg = (
                    f"secret {env_name!r} of container {self.name!r} must be a SecretReference, "
                    f"got {type(reference).__name__}"
                )
                raise TypeError(msg)

    def to_dict(self, region: str, account_id: str) -> dict[str, typing.Any]:
        definition: dict[str, typing.Any] = {
            "name": self.name,
            "image": self.image,
            "essential": self.essential,
            "secrets": [
                {"name": env_name, "valueFrom": reference.arn(region, account_id)}
                for env_name, reference in sorted(self.secrets.items())
            ],
        }

        if self.log_configuration is not None:
            definition["logConfiguration"] = self.log_configuration.to_dict()

        if self.capabilities:
            definition["linuxParameters"] = {"capabilities": {"add": [str(c) for c in self.capabilities]}}

        if self.system_controls:
            definition["systemControls"] = [{"namespace": sc.namespace, "value": sc.value} for sc in self.system_controls]

        if self.port_mappings:
            definition["portMappings"] = [pm.to_dict() for pm in self.port_mappings]

        if self.memory_limit_mib is not None:
            definition["memory"] = self.memory_limit_mib

        if self.privileged:
            definition["privileged"] = True

        return definition


def render_container_definitions(
    containers: typing.Iterable[ContainerDefinition],
    region: str,
    account_id: str,
) -> str:
    return json.dumps([c.to_dict(region, account_id) for c in containers])
