import json
import pathlib

import pulumi
import pulumi_aws as aws
import pulumi_awsx as awsx

import personal_infra
import personal_infra.aws_iam
import personal_infra.ecs
import personal_infra.paths
from personal_infra import Suffixes
from personal_infra.pulumi_resources import expire_untagged_images
from personal_infra.pulumi_resources.aws_vpc import ProxyVpc

PROXY_CONTAINER_NAME = "proxy"
PROXY_STREAM_PREFIX = "proxy"


def proxy_secrets(cfg: personal_infra.DeploymentConfig) -> dict[str, personal_infra.ecs.SecretReference]:
    return {
        env_name: personal_infra.ecs.SecretReference(parameter_name)
        for env_name, parameter_name in cfg.secret_parameters.items()
    }


def build_proxy_container(
    image: str,
    secrets: dict[str, personal_infra.ecs.SecretReference],
    log_configuration: personal_infra.ecs.LogConfiguration,
    port: int = personal_infra.PROXY_PORT,
) -> personal_infra.ecs.ContainerDefinition:
    return personal_infra.ecs.ContainerDefinition(
        name=PROXY_CONTAINER_NAME,
        image=image,
        secrets=secrets,
        log_configuration=log_configuration,
        port_mappings=(
            personal_infra.ecs.PortMapping(container_port=port, protocol=personal_infra.ecs.Protocol.TCP),
            personal_infra.ecs.PortMapping(container_port=port, protocol=personal_infra.ecs.Protocol.UDP),
        ),
    )


class ProxyService(pulumi.ComponentResource):
    cfg: personal_infra.DeploymentConfig
    name: str
    region: str
    account_id: str
    tags: dict[str, str]

    cluster: aws.ecs.Cluster
    log_group: aws.cloudwatch.LogGroup
    secrets: dict[str, personal_infra.ecs.SecretReference]
    repository: aws.ecr.Repository
    image: awsx.ecr.Image
    execution_role: aws.iam.Role
    task_definition: aws.ecs.TaskDefinition
    security_group: aws.ec2.SecurityGroup
    ingress_rules: list[aws.vpc.SecurityGroupIngressRule]
    service: aws.ecs.Service

    def __init__(
        self,
        cfg: personal_infra.DeploymentConfig,
        vpc: ProxyVpc,
        region: str,
        account_id: str,
        tags: dict[str, str],
        build_context: pathlib.Path | None = None,
        cpu: str = "256",
        memory: str = "512",
        opts: pulumi.ResourceOptions | None = None,
    ):
        """
        Shadowsocks on AWS Fargate

        Create an ECS cluster, a Fargate task definition whose image is built from a local directory, and a
        public ECS service listening on the proxy port over both TCP and UDP.

        The container only ever receives SSM parameter ARNs for SS_ALGORITHM and SS_PASSWORD; ECS resolves the
        values when the task starts, so the parameters must exist before the first deployment.

        :param cfg: deployment configuration
        :param vpc: the VPC whose public subnets host the service
        :param region: AWS region name, used in log and parameter ARNs
        :param account_id: AWS account id, used in parameter ARNs
        :param tags: Tags to apply to resources
        :param build_context: directory holding the proxy Dockerfile
        :param cpu: CPU units for the Fargate task
        :param memory: Memory for the Fargate task
        :param opts:
        """
        self.cfg = cfg
        self.name = cfg.name("Proxy")
        self.region = region
        self.account_id = account_id
        self.tags = tags

        if opts is None:
            opts = pulumi.ResourceOptions()

        super().__init__(f"personal-infra:{self.__class__.__name__}", self.name, None, opts)

        if not vpc.public_subnets:
            msg = "the proxy service needs at least one public subnet tier"
            raise ValueError(msg)

        self.build_context = build_context or personal_infra.paths.Paths().proxy_build_context

        self._define_cluster()
        self._define_logging()
        self.secrets = proxy_secrets(cfg)
        self._define_image()
        self._define_execution_role()
        self._define_task_definition(cpu, memory)
        self._define_security_group(vpc)
        self._define_service(vpc)

        self.register_outputs(
            {
                "cluster_name": self.cluster.name,
                "service_name": self.service.name,
                "image_uri": self.image.image_uri,
                "log_group_name": self.log_group.name,
            }
        )

    def _define_cluster(self) -> None:
        cluster_name = self.cfg.name(Suffixes.PROXY_CLUSTER)
        self.cluster = aws.ecs.Cluster(
            cluster_name,
            aws.ecs.ClusterArgs(name=cluster_name, tags=self.tags),
            opts=pulumi.ResourceOptions(parent=self),
        )

    def _define_logging(self) -> None:
        # Not protected or retained, so the group goes away with the stack.
        self.log_group = aws.cloudwatch.LogGroup(
            self.cfg.name(Suffixes.PROXY_LOG_GROUP),
            aws.cloudwatch.LogGroupArgs(
                name=self.cfg.log_group_name,
                retention_in_days=self.cfg.log_retention_days,
                skip_destroy=False,
                tags=self.tags,
            ),
            opts=pulumi.ResourceOptions(parent=self),
        )

    def _define_image(self) -> None:
        self.repository = aws.ecr.Repository(
            self.cfg.name(Suffixes.PROXY_REPOSITORY),
            name=self.cfg.proxy_repository_name,
            force_delete=True,
            image_scanning_configuration=aws.ecr.RepositoryImageScanningConfigurationArgs(
                scan_on_push=True,
            ),
            tags=self.tags | {"Name": self.cfg.proxy_repository_name},
            opts=pulumi.ResourceOptions(parent=self),
        )
        expire_untagged_images(self.cfg.name(Suffixes.PROXY_REPOSITORY), self.repository)

        self.image = awsx.ecr.Image(
            self.cfg.name(Suffixes.PROXY_IMAGE),
            repository_url=self.repository.repository_url,
            context=str(self.build_context),
            platform=self.cfg.cpu_architecture.docker_platform,
            opts=pulumi.ResourceOptions(parent=self.repository),
        )

    def _define_execution_role(self) -> None:
        role_name = self.cfg.name(Suffixes.PROXY_EXECUTION_ROLE)
        self.execution_role = aws.iam.Role(
            role_name,
            aws.iam.RoleArgs(
                name=role_name,
                description=f"Role for {self.name} Fargate Task Execution",
                assume_role_policy=json.dumps(
                    personal_infra.aws_iam.build_service_assume_role_policy("ecs-tasks.amazonaws.com")
                ),
                tags=self.tags,
            ),
            opts=pulumi.ResourceOptions(parent=self),
        )

        aws.iam.RolePolicyAttachment(
            f"{role_name}-ecs-task-execution",
            role=self.execution_role.name,
            policy_arn=personal_infra.aws_iam.ECS_TASK_EXECUTION_ROLE_POLICY_ARN,
            opts=pulumi.ResourceOptions(parent=self.execution_role),
        )

        aws.iam.RolePolicy(
            f"{role_name}-proxy-parameters",
            name="proxy-parameters-access",
            role=self.execution_role.id,
            policy=json.dumps(
                personal_infra.aws_iam.build_read_parameters_policy(
                    ref.arn(self.region, self.account_id) for ref in self.secrets.values()
                )
            ),
            opts=pulumi.ResourceOptions(parent=self.execution_role),
        )

    def _define_task_definition(self, cpu: str, memory: str) -> None:
        container_definitions = pulumi.Output.all(self.image.image_uri, self.log_group.name).apply(
            lambda args: personal_infra.ecs.render_container_definitions(
                [
                    build_proxy_container(
                        args[0],
                        self.secrets,
                        personal_infra.ecs.LogConfiguration(
                            group=args[1], region=self.region, stream_prefix=PROXY_STREAM_PREFIX
                        ),
                        self.cfg.proxy_port,
                    )
                ],
                self.region,
                self.account_id,
            )
        )

        family = self.cfg.name(Suffixes.PROXY_TASK_DEFINITION)
        self.task_definition = aws.ecs.TaskDefinition(
            family,
            aws.ecs.TaskDefinitionArgs(
                family=family,
                requires_compatibilities=["FARGATE"],
                network_mode="awsvpc",
                runtime_platform=aws.ecs.TaskDefinitionRuntimePlatformArgs(
                    cpu_architecture=str(self.cfg.cpu_architecture), operating_system_family="LINUX"
                ),
                cpu=cpu,
                memory=memory,
                container_definitions=container_definitions,
                execution_role_arn=self.execution_role.arn,
                tags=self.tags,
            ),
            opts=pulumi.ResourceOptions(parent=self),
        )

    def _define_security_group(self, vpc: ProxyVpc) -> None:
        sg_name = self.cfg.name(Suffixes.PROXY_SECURITY_GROUP)
        self.security_group = aws.ec2.SecurityGroup(
            sg_name,
            aws.ec2.SecurityGroupArgs(
                description=f"{self.name} Shadowsocks ingress",
                vpc_id=vpc.vpc.id,
                tags=self.tags | {"Name": sg_name},
            ),
            opts=pulumi.ResourceOptions(parent=self),
        )

        aws.vpc.SecurityGroupEgressRule(
            f"{sg_name}-egress",
            aws.vpc.SecurityGroupEgressRuleArgs(
                security_group_id=self.security_group.id, cidr_ipv4=personal_infra.ANY_IPV4, ip_protocol="-1"
            ),
            opts=pulumi.ResourceOptions(parent=self.security_group),
        )

        self.ingress_rules = [
            aws.vpc.SecurityGroupIngressRule(
                f"{sg_name}-{protocol}-{self.cfg.proxy_port}",
                aws.vpc.SecurityGroupIngressRuleArgs(
                    security_group_id=self.security_group.id,
                    cidr_ipv4=personal_infra.ANY_IPV4,
                    ip_protocol=str(protocol),
                    from_port=self.cfg.proxy_port,
                    to_port=self.cfg.proxy_port,
                    description=f"shadowsocks {protocol}",
                ),
                opts=pulumi.ResourceOptions(parent=self.security_group),
            )
            for protocol in (personal_infra.ecs.Protocol.TCP, personal_infra.ecs.Protocol.UDP)
        ]

    def _define_service(self, vpc: ProxyVpc) -> None:
        service_name = self.cfg.name(Suffixes.PROXY_SERVICE)
        self.service = aws.ecs.Service(
            service_name,
            aws.ecs.ServiceArgs(
                name=service_name,
                cluster=self.cluster.arn,
                task_definition=self.task_definition.arn,
                launch_type="FARGATE",
                desired_count=1,
                enable_ecs_managed_tags=True,
                network_configuration=aws.ecs.ServiceNetworkConfigurationArgs(
                    # Clients connect straight to the task's public address.
                    assign_public_ip=True,
                    subnets=vpc.public_subnet_ids,
                    security_groups=[self.security_group.id],
                ),
                propagate_tags="SERVICE",
                tags=self.tags,
            ),
            opts=pulumi.ResourceOptions(parent=self),
        )
