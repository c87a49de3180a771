import base64
import json
import pathlib

import pulumi
import pulumi_aws as aws
import yaml

import personal_infra
import personal_infra.aws_iam
import personal_infra.ecs
import personal_infra.paths
from personal_infra import Suffixes
from personal_infra.ecs import Capability, PortMapping, SystemControl
from personal_infra.pulumi_resources import expire_untagged_images
from personal_infra.pulumi_resources.aws_vpc import ProxyVpc

WARP_CONTAINER_NAME = "ProxyWithWarp"
WARP_STREAM_PREFIX = "proxy-with-warp"

ECS_OPTIMIZED_AMI_PARAMETER = "/aws/service/ecs/optimized-ami/amazon-linux-2/recommended/image_id"
CODEBUILD_IMAGE = "aws/codebuild/amazonlinux2-x86_64-standard:5.0"

WARP_SYSTEM_CONTROLS = (
    # WARP routes IPv6 through the tunnel
    SystemControl(namespace="net.ipv6.conf.all.disable_ipv6", value="0"),
    # policy routing marks packets; strict reverse-path filtering would drop them
    SystemControl(namespace="net.ipv4.conf.all.src_valid_mark", value="1"),
)


def build_warp_container(
    image: str,
    secrets: dict[str, personal_infra.ecs.SecretReference],
    log_configuration: personal_infra.ecs.LogConfiguration,
    warp: personal_infra.WarpConfig,
) -> personal_infra.ecs.ContainerDefinition:
    return personal_infra.ecs.ContainerDefinition(
        name=WARP_CONTAINER_NAME,
        image=image,
        secrets=secrets,
        log_configuration=log_configuration,
        capabilities=(Capability.NET_ADMIN, Capability.SYS_ADMIN),
        system_controls=WARP_SYSTEM_CONTROLS,
        port_mappings=(PortMapping(container_port=warp.status_port),),
        memory_limit_mib=warp.memory_limit_mib,
        privileged=True,
    )


def build_pipeline_environment(
    region: str,
    account_id: str,
    repository_name: pulumi.Input[str],
    image_tag: str,
    service_name: pulumi.Input[str],
    cluster_name: pulumi.Input[str],
) -> dict[str, pulumi.Input[str]]:
    return {
        "AWS_DEFAULT_REGION": region,
        "AWS_ACCOUNT_ID": account_id,
        "IMAGE_REPO_NAME": repository_name,
        "IMAGE_TAG": image_tag,
        "SERVICE_NAME": service_name,
        "CLUSTER_NAME": cluster_name,
    }


def load_buildspec(path: pathlib.Path) -> str:
    spec = yaml.safe_load(path.read_text())
    if not isinstance(spec, dict) or "version" not in spec or "phases" not in spec:
        msg = f"{str(path)!r} is not a CodeBuild buildspec (expected 'version' and 'phases')"
        raise ValueError(msg)

    return yaml.safe_dump(spec, sort_keys=False)


def ecs_cluster_user_data(cluster_name: str) -> str:
    script = f"#!/bin/bash\necho ECS_CLUSTER={cluster_name} >> /etc/ecs/ecs.config\n"
    return base64.b64encode(script.encode()).decode()


class WarpSidecar(pulumi.ComponentResource):
    cfg: personal_infra.DeploymentConfig
    warp: personal_infra.WarpConfig
    name: str
    region: str
    account_id: str
    tags: dict[str, str]

    repository: aws.ecr.Repository

    instance_role: aws.iam.Role
    instance_security_group: aws.ec2.SecurityGroup
    launch_template: aws.ec2.LaunchTemplate
    asg: aws.autoscaling.Group
    capacity_provider: aws.ecs.CapacityProvider
    cluster_capacity_providers: aws.ecs.ClusterCapacityProviders

    execution_role: aws.iam.Role
    task_role: aws.iam.Role
    task_definition: aws.ecs.TaskDefinition
    service: aws.ecs.Service

    codebuild_role: aws.iam.Role
    update_service_policy: aws.iam.RolePolicy
    project: aws.codebuild.Project

    def __init__(
        self,
        cfg: personal_infra.DeploymentConfig,
        vpc: ProxyVpc,
        cluster: aws.ecs.Cluster,
        secrets: dict[str, personal_infra.ecs.SecretReference],
        log_group: aws.cloudwatch.LogGroup,
        region: str,
        account_id: str,
        tags: dict[str, str],
        buildspec: pathlib.Path | None = None,
        opts: pulumi.ResourceOptions | None = None,
    ):
        """
        Shadowsocks behind a Cloudflare WARP tunnel on EC2

        The tunnel needs NET_ADMIN, SYS_ADMIN, privileged mode, and kernel parameter overrides, none of which
        Fargate allows, so this runs on a single self-managed instance registered as a capacity provider on the
        proxy's existing cluster. A CodeBuild project rebuilds the image from GitHub and redeploys the service.

        It is possible to debug the container using ECS Exec.

        aws ecs execute-command --cluster cluster-name --task task-id --container ProxyWithWarp --interactive --command "/bin/sh"

        :param cfg: deployment configuration
        :param vpc: the VPC whose public subnets host the instance
        :param cluster: the proxy cluster the capacity provider and service are attached to
        :param secrets: the proxy's SS_ALGORITHM and SS_PASSWORD references
        :param log_group: the proxy's log group, written under a separate stream prefix
        :param region: AWS region name
        :param account_id: AWS account id
        :param tags: Tags to apply to resources
        :param buildspec: path to the CodeBuild buildspec
        :param opts:
        """
        self.cfg = cfg
        self.warp = cfg.warp
        self.name = cfg.name("ProxyWithWarp")
        self.region = region
        self.account_id = account_id
        self.tags = tags

        if opts is None:
            opts = pulumi.ResourceOptions()

        super().__init__(f"personal-infra:{self.__class__.__name__}", self.name, None, opts)

        self.buildspec = buildspec or personal_infra.paths.Paths().warp_buildspec

        self._define_repository()
        self._define_capacity(vpc, cluster)
        self._define_task_definition(secrets, log_group)
        self._define_service(cluster)
        self._define_pipeline(cluster)

        self.register_outputs(
            {
                "repository_url": self.repository.repository_url,
                "service_name": self.service.name,
                "capacity_provider_name": self.capacity_provider.name,
                "project_name": self.project.name,
            }
        )

    def _define_repository(self) -> None:
        self.repository = aws.ecr.Repository(
            self.cfg.name(Suffixes.WARP_REPOSITORY),
            name=self.warp.repository_name,
            force_delete=True,
            image_scanning_configuration=aws.ecr.RepositoryImageScanningConfigurationArgs(
                scan_on_push=True,
            ),
            tags=self.tags | {"Name": self.warp.repository_name},
            opts=pulumi.ResourceOptions(parent=self),
        )
        expire_untagged_images(self.cfg.name(Suffixes.WARP_REPOSITORY), self.repository)

    def _define_capacity(self, vpc: ProxyVpc, cluster: aws.ecs.Cluster) -> None:
        role_name = self.cfg.name(Suffixes.WARP_INSTANCE_ROLE)
        self.instance_role = aws.iam.Role(
            role_name,
            name=role_name,
            assume_role_policy=json.dumps(
                personal_infra.aws_iam.build_service_assume_role_policy("ec2.amazonaws.com")
            ),
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self, delete_before_replace=True),
        )

        for suffix, policy_arn in (
            ("ecs", personal_infra.aws_iam.ECS_INSTANCE_ROLE_POLICY_ARN),
            ("ssm", personal_infra.aws_iam.SSM_MANAGED_INSTANCE_CORE_POLICY_ARN),
        ):
            aws.iam.RolePolicyAttachment(
                f"{role_name}-{suffix}",
                role=self.instance_role.name,
                policy_arn=policy_arn,
                opts=pulumi.ResourceOptions(parent=self.instance_role, delete_before_replace=True),
            )

        profile_name = self.cfg.name(Suffixes.WARP_INSTANCE_PROFILE)
        profile = aws.iam.InstanceProfile(
            profile_name,
            name=profile_name,
            role=self.instance_role.name,
            opts=pulumi.ResourceOptions(parent=self, delete_before_replace=True),
        )

        sg_name = self.cfg.name(Suffixes.WARP_INSTANCE_SECURITY_GROUP)
        self.instance_security_group = aws.ec2.SecurityGroup(
            sg_name,
            vpc_id=vpc.vpc.id,
            description=f"{self.name} container instance",
            egress=[
                aws.ec2.SecurityGroupEgressArgs(
                    from_port=0,
                    to_port=0,
                    protocol="-1",
                    cidr_blocks=[personal_infra.ANY_IPV4],
                )
            ],
            tags=self.tags | {"Name": sg_name},
            opts=pulumi.ResourceOptions(parent=self),
        )

        lt_name = self.cfg.name(Suffixes.WARP_LAUNCH_TEMPLATE)
        self.launch_template = aws.ec2.LaunchTemplate(
            lt_name,
            name_prefix=f"{lt_name}-",
            image_id=aws.ssm.get_parameter_output(name=ECS_OPTIMIZED_AMI_PARAMETER).value,
            instance_type=self.warp.instance_type,
            iam_instance_profile=aws.ec2.LaunchTemplateIamInstanceProfileArgs(arn=profile.arn),
            network_interfaces=[
                aws.ec2.LaunchTemplateNetworkInterfaceArgs(
                    associate_public_ip_address="true",
                    delete_on_termination="true",
                    security_groups=[self.instance_security_group.id],
                )
            ],
            metadata_options=aws.ec2.LaunchTemplateMetadataOptionsArgs(
                http_endpoint="enabled",
                http_tokens="required",
                http_put_response_hop_limit=2,
            ),
            user_data=cluster.name.apply(ecs_cluster_user_data),
            tags=self.tags | {"Name": lt_name},
            opts=pulumi.ResourceOptions(parent=self),
        )

        asg_name = self.cfg.name(Suffixes.WARP_ASG)
        self.asg = aws.autoscaling.Group(
            asg_name,
            name_prefix=f"{asg_name}-",
            min_size=1,
            max_size=1,
            desired_capacity=1,
            vpc_zone_identifiers=vpc.public_subnet_ids,
            launch_template=aws.autoscaling.GroupLaunchTemplateArgs(
                id=self.launch_template.id,
                version="$Latest",
            ),
            protect_from_scale_in=False,
            tags=[
                aws.autoscaling.GroupTagArgs(key=key, value=value, propagate_at_launch=True)
                for key, value in (self.tags | {"Name": asg_name, "AmazonECSManaged": "true"}).items()
            ],
            opts=pulumi.ResourceOptions(parent=self),
        )

        cp_name = self.cfg.name(Suffixes.WARP_CAPACITY_PROVIDER)
        self.capacity_provider = aws.ecs.CapacityProvider(
            cp_name,
            name=cp_name,
            auto_scaling_group_provider=aws.ecs.CapacityProviderAutoScalingGroupProviderArgs(
                auto_scaling_group_arn=self.asg.arn,
                managed_termination_protection="DISABLED",
                managed_scaling=aws.ecs.CapacityProviderAutoScalingGroupProviderManagedScalingArgs(
                    status="ENABLED",
                    target_capacity=100,
                ),
            ),
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self),
        )

        # Owned here rather than by the cluster, so removing the sidecar detaches the provider cleanly.
        self.cluster_capacity_providers = aws.ecs.ClusterCapacityProviders(
            self.cfg.name(Suffixes.WARP_CLUSTER_CAPACITY_PROVIDERS),
            cluster_name=cluster.name,
            capacity_providers=[self.capacity_provider.name],
            opts=pulumi.ResourceOptions(parent=self),
        )

    def _define_task_definition(
        self,
        secrets: dict[str, personal_infra.ecs.SecretReference],
        log_group: aws.cloudwatch.LogGroup,
    ) -> None:
        execution_role_name = self.cfg.name(Suffixes.WARP_EXECUTION_ROLE)
        self.execution_role = aws.iam.Role(
            execution_role_name,
            aws.iam.RoleArgs(
                name=execution_role_name,
                description=f"Role for {self.name} EC2 Task Execution",
                assume_role_policy=json.dumps(
                    personal_infra.aws_iam.build_service_assume_role_policy("ecs-tasks.amazonaws.com")
                ),
                tags=self.tags,
            ),
            opts=pulumi.ResourceOptions(parent=self),
        )
        aws.iam.RolePolicyAttachment(
            f"{execution_role_name}-ecs-task-execution",
            role=self.execution_role.name,
            policy_arn=personal_infra.aws_iam.ECS_TASK_EXECUTION_ROLE_POLICY_ARN,
            opts=pulumi.ResourceOptions(parent=self.execution_role),
        )
        aws.iam.RolePolicy(
            f"{execution_role_name}-proxy-parameters",
            name="proxy-parameters-access",
            role=self.execution_role.id,
            policy=json.dumps(
                personal_infra.aws_iam.build_read_parameters_policy(
                    ref.arn(self.region, self.account_id) for ref in secrets.values()
                )
            ),
            opts=pulumi.ResourceOptions(parent=self.execution_role),
        )

        task_role_name = self.cfg.name(Suffixes.WARP_TASK_ROLE)
        self.task_role = aws.iam.Role(
            task_role_name,
            aws.iam.RoleArgs(
                name=task_role_name,
                description=f"Role for {self.name} EC2 Task",
                assume_role_policy=json.dumps(
                    personal_infra.aws_iam.build_service_assume_role_policy("ecs-tasks.amazonaws.com")
                ),
                tags=self.tags,
            ),
            opts=pulumi.ResourceOptions(parent=self),
        )
        aws.iam.RolePolicy(
            f"{task_role_name}-ecs-exec",
            name="ecs-exec",
            role=self.task_role.id,
            policy=json.dumps(personal_infra.aws_iam.build_ecs_exec_policy()),
            opts=pulumi.ResourceOptions(parent=self.task_role),
        )

        # The pipeline pushes this tag; the service starts once the first build lands.
        # Logs go to the proxy's group, under their own stream prefix.
        container_definitions = pulumi.Output.all(self.repository.repository_url, log_group.name).apply(
            lambda args: personal_infra.ecs.render_container_definitions(
                [
                    build_warp_container(
                        f"{args[0]}:{self.warp.image_tag}",
                        secrets,
                        personal_infra.ecs.LogConfiguration(
                            group=args[1], region=self.region, stream_prefix=WARP_STREAM_PREFIX
                        ),
                        self.warp,
                    )
                ],
                self.region,
                self.account_id,
            )
        )

        family = self.cfg.name(Suffixes.WARP_TASK_DEFINITION)
        self.task_definition = aws.ecs.TaskDefinition(
            family,
            aws.ecs.TaskDefinitionArgs(
                family=family,
                requires_compatibilities=["EC2"],
                network_mode="bridge",
                container_definitions=container_definitions,
                execution_role_arn=self.execution_role.arn,
                task_role_arn=self.task_role.arn,
                tags=self.tags,
            ),
            opts=pulumi.ResourceOptions(parent=self),
        )

    def _define_service(self, cluster: aws.ecs.Cluster) -> None:
        service_name = self.cfg.name(Suffixes.WARP_SERVICE)
        self.service = aws.ecs.Service(
            service_name,
            aws.ecs.ServiceArgs(
                name=service_name,
                cluster=cluster.arn,
                task_definition=self.task_definition.arn,
                desired_count=1,
                enable_execute_command=True,
                capacity_provider_strategies=[
                    aws.ecs.ServiceCapacityProviderStrategyArgs(
                        capacity_provider=self.capacity_provider.name,
                        weight=1,
                        base=0,
                    )
                ],
                enable_ecs_managed_tags=True,
                propagate_tags="SERVICE",
                tags=self.tags,
            ),
            opts=pulumi.ResourceOptions(parent=self, depends_on=[self.cluster_capacity_providers]),
        )

    def _define_pipeline(self, cluster: aws.ecs.Cluster) -> None:
        role_name = self.cfg.name(Suffixes.WARP_CODEBUILD_ROLE)
        project_name = self.cfg.name(Suffixes.WARP_PROJECT)

        self.codebuild_role = aws.iam.Role(
            role_name,
            aws.iam.RoleArgs(
                name=role_name,
                description=f"Role for the {project_name} CodeBuild project",
                assume_role_policy=json.dumps(
                    personal_infra.aws_iam.build_service_assume_role_policy("codebuild.amazonaws.com")
                ),
                tags=self.tags,
            ),
            opts=pulumi.ResourceOptions(parent=self),
        )

        # ECS service ids are their ARNs
        self.update_service_policy = aws.iam.RolePolicy(
            f"{role_name}-updateEcsService",
            name="updateEcsService",
            role=self.codebuild_role.id,
            policy=self.service.id.apply(
                lambda arn: json.dumps(personal_infra.aws_iam.build_update_service_policy(arn))
            ),
            opts=pulumi.ResourceOptions(parent=self.codebuild_role),
        )

        ecr_policy = aws.iam.RolePolicy(
            f"{role_name}-ecr-pull-push",
            name="ecr-pull-push",
            role=self.codebuild_role.id,
            policy=self.repository.arn.apply(
                lambda arn: json.dumps(personal_infra.aws_iam.build_ecr_pull_push_policy(arn))
            ),
            opts=pulumi.ResourceOptions(parent=self.codebuild_role),
        )

        log_group_arn = f"arn:aws:logs:{self.region}:{self.account_id}:log-group:/aws/codebuild/{project_name}"
        logs_policy = aws.iam.RolePolicy(
            f"{role_name}-codebuild-logs",
            name="codebuild-logs",
            role=self.codebuild_role.id,
            policy=json.dumps(personal_infra.aws_iam.build_log_writer_policy(log_group_arn)),
            opts=pulumi.ResourceOptions(parent=self.codebuild_role),
        )

        environment = build_pipeline_environment(
            region=self.region,
            account_id=self.account_id,
            repository_name=self.repository.name,
            image_tag=self.warp.image_tag,
            service_name=self.service.name,
            cluster_name=cluster.name,
        )

        self.project = aws.codebuild.Project(
            project_name,
            aws.codebuild.ProjectArgs(
                name=project_name,
                description="Rebuild the WARP proxy image and redeploy its ECS service",
                service_role=self.codebuild_role.arn,
                source=aws.codebuild.ProjectSourceArgs(
                    type="GITHUB",
                    location=self.warp.source.location,
                    buildspec=load_buildspec(self.buildspec),
                    git_clone_depth=1,
                ),
                source_version=self.warp.source.branch,
                artifacts=aws.codebuild.ProjectArtifactsArgs(type="NO_ARTIFACTS"),
                environment=aws.codebuild.ProjectEnvironmentArgs(
                    compute_type="BUILD_GENERAL1_SMALL",
                    image=CODEBUILD_IMAGE,
                    type="LINUX_CONTAINER",
                    # docker build needs the daemon
                    privileged_mode=True,
                    environment_variables=[
                        aws.codebuild.ProjectEnvironmentEnvironmentVariableArgs(name=name, value=value, type="PLAINTEXT")
                        for name, value in environment.items()
                    ],
                ),
                tags=self.tags,
            ),
            opts=pulumi.ResourceOptions(parent=self, depends_on=[self.update_service_policy, ecr_policy, logs_policy]),
        )
