import typing

import pulumi
import pulumi_aws as aws

import personal_infra
import personal_infra.deployment
import personal_infra.paths
from personal_infra import Suffixes
from personal_infra.pulumi_resources.aws_proxy_service import ProxyService
from personal_infra.pulumi_resources.aws_vpc import ProxyVpc
from personal_infra.pulumi_resources.aws_warp_sidecar import WarpSidecar


class ProxyDeployment(pulumi.ComponentResource):
    deployment: personal_infra.deployment.Deployment
    paths: personal_infra.paths.Paths
    required_tags: dict[str, str]
    region: str
    account_id: str
    azs: list[str]

    vpc: ProxyVpc
    proxy: ProxyService
    warp: WarpSidecar | None

    @classmethod
    def autoload(cls) -> "ProxyDeployment":
        paths = personal_infra.paths.Paths()
        return cls(deployment=personal_infra.deployment.Deployment.from_stack(paths), paths=paths)

    def __init__(
        self,
        deployment: personal_infra.deployment.Deployment,
        paths: personal_infra.paths.Paths | None = None,
        *args,
        **kwargs,
    ):
        self.deployment = deployment
        self.paths = paths or personal_infra.paths.Paths()

        super().__init__(
            f"personal-infra:{self.__class__.__name__}",
            deployment.cfg.resource_name,
            *args,
            **kwargs,
        )

        self.required_tags = self.deployment.required_tags | {
            str(personal_infra.TagKeys.MANAGED_BY): __name__,
        }

        self.account_id = aws.get_caller_identity().account_id
        self.region = aws.get_region().name
        self.azs = aws.get_availability_zones(state="available").names

        self._define_vpc()
        self._define_proxy()
        self.warp = self._define_warp()

        outputs: dict[str, typing.Any] = {
            "vpc_id": self.vpc.vpc.id,
            "public_subnet_ids": self.vpc.public_subnet_ids,
            "cluster_name": self.proxy.cluster.name,
            "proxy_service_name": self.proxy.service.name,
            "proxy_image_uri": self.proxy.image.image_uri,
            "log_group_name": self.proxy.log_group.name,
            "use_warp": self.warp is not None,
        }

        if self.warp is not None:
            outputs = outputs | {
                "warp_service_name": self.warp.service.name,
                "warp_repository_url": self.warp.repository.repository_url,
                "warp_project_name": self.warp.project.name,
            }

        for key, value in outputs.items():
            pulumi.export(key, value)

        self.register_outputs(outputs)

    def _define_vpc(self) -> None:
        self.vpc = ProxyVpc(
            name=self.deployment.resource_name(Suffixes.VPC),
            network=self.deployment.cfg.network,
            azs=self.azs,
            tags=self.required_tags,
            opts=pulumi.ResourceOptions(parent=self),
        ).with_secure_default_security_group()

    def _define_proxy(self) -> None:
        self.proxy = ProxyService(
            cfg=self.deployment.cfg,
            vpc=self.vpc,
            region=self.region,
            account_id=self.account_id,
            tags=self.required_tags,
            build_context=self.paths.proxy_build_context,
            opts=pulumi.ResourceOptions(parent=self),
        )

    def _define_warp(self) -> WarpSidecar | None:
        if not self.deployment.use_warp:
            pulumi.log.info(f"{personal_infra.USE_WARP} is off; deploying the Fargate proxy only")
            return None

        pulumi.log.info(f"{personal_infra.USE_WARP} is on; adding the WARP sidecar to {self.proxy.name}")

        return WarpSidecar(
            cfg=self.deployment.cfg,
            vpc=self.vpc,
            cluster=self.proxy.cluster,
            secrets=self.proxy.secrets,
            log_group=self.proxy.log_group,
            region=self.region,
            account_id=self.account_id,
            tags=self.required_tags,
            buildspec=self.paths.warp_buildspec,
            opts=pulumi.ResourceOptions(parent=self),
        )
