from __future__ import annotations

import copy
import pathlib
import typing
import warnings

import deepmerge  # type: ignore
import pulumi
import yaml

import personal_infra
import personal_infra.paths


def default_spec() -> dict[str, typing.Any]:
    return {
        "resource_name": personal_infra.RESOURCE_NAME,
        "use_warp": False,
        "network": {},
        "warp": {"source": {}},
        "tags": {},
    }


def _normalize_keys(d: dict[str, typing.Any]) -> dict[str, typing.Any]:
    return {key.replace("-", "_"): value for key, value in d.items()}


def config_from_spec(spec: dict[str, typing.Any]) -> personal_infra.DeploymentConfig:
    spec = _normalize_keys(copy.deepcopy(spec))

    use_warp, ok = personal_infra.parse_flag(spec.pop("use_warp", False))
    if not ok:
        warnings.warn(
            "'spec.use_warp' is not a boolean; the WARP sidecar stays disabled",
            stacklevel=2,
        )

    network_spec = _normalize_keys(spec.pop("network", None) or {})
    warp_spec = _normalize_keys(spec.pop("warp", None) or {})
    source_spec = _normalize_keys(warp_spec.pop("source", None) or {})
    spec["tags"] = spec.get("tags") or {}

    try:
        if "subnet_tiers" in network_spec:
            network_spec["subnet_tiers"] = tuple(
                personal_infra.SubnetTier(**_normalize_keys(tier)) for tier in network_spec["subnet_tiers"]
            )

        return personal_infra.DeploymentConfig(
            use_warp=use_warp,
            network=personal_infra.NetworkConfig(**network_spec),
            warp=personal_infra.WarpConfig(source=personal_infra.SourceRepository(**source_spec), **warp_spec),
            **spec,
        )
    except TypeError as e:
        msg = f"invalid deployment spec: {e}"
        raise ValueError(msg) from e


class Deployment:
    name: str
    d: pathlib.Path
    cfg: personal_infra.DeploymentConfig
    spec: dict[str, typing.Any]
    context: dict[str, typing.Any]

    def __init__(
        self,
        name: str,
        paths: personal_infra.paths.Paths | None = None,
        *,
        load_yaml=True,
        context: typing.Mapping[str, typing.Any] | None = None,
    ):
        self.name = name
        self.d = (paths or personal_infra.paths.Paths()).root / name
        self.context = dict(context or {})
        self.spec = default_spec()
        self.cfg = personal_infra.DeploymentConfig()

        if not load_yaml:
            return

        if not self.deployment_yaml.exists():
            return

        self.load_config()

    @classmethod
    def from_stack(cls, paths: personal_infra.paths.Paths | None = None) -> Deployment:
        config = pulumi.Config()
        return cls(
            pulumi.get_stack(),
            paths,
            context={personal_infra.USE_WARP: config.get(personal_infra.USE_WARP)},
        )

    @property
    def deployment_yaml(self) -> pathlib.Path:
        return self.d / "deployment.yaml"

    def load_config(self) -> None:
        cfg_dict = yaml.safe_load(self.deployment_yaml.read_text()) or {}
        if (
            cfg_dict.get("kind") != personal_infra.DeploymentConfig.__name__
            or cfg_dict.get("apiVersion") != personal_infra.API_VERSION
        ):
            msg = (
                f"mismatched deployment config kind={cfg_dict.get('kind')!r} "
                f"apiVersion={cfg_dict.get('apiVersion')!r} in {str(self.deployment_yaml)!r}"
            )
            raise ValueError(msg)

        deepmerge.always_merger.merge(self.spec, cfg_dict.get("spec") or {})
        self.cfg = config_from_spec(self.spec)

    @property
    def use_warp(self) -> bool:
        """
        Whether the WARP sidecar is part of this deployment.

        The `useWarp` stack config wins over `spec.use_warp`. A value that cannot be read as a
        boolean turns the sidecar off rather than failing the deployment.
        """
        raw = self.context.get(personal_infra.USE_WARP)
        if raw is None:
            return self.cfg.use_warp

        enabled, ok = personal_infra.parse_flag(raw)
        if not ok:
            pulumi.log.warn(
                f"ignoring malformed {personal_infra.USE_WARP!r} value {raw!r}; the WARP sidecar stays disabled"
            )

        return enabled

    @property
    def required_tags(self) -> dict[str, str]:
        return {str(personal_infra.TagKeys.STACK): self.name} | self.cfg.tags

    def resource_name(self, suffix: str) -> str:
        return self.cfg.name(suffix)
