import collections
import ipaddress
import warnings

import pulumi
import pulumi_aws as aws

import personal_infra


class ProxyVpc(pulumi.ComponentResource):
    """
    A small VPC for the proxy: one address block, an internet gateway, and one subnet per tier per AZ.
    """

    name: str
    network: personal_infra.NetworkConfig
    cidr_block: ipaddress.IPv4Network
    subnet_cidr_blocks: dict[str, tuple[ipaddress.IPv4Network, ...]]
    azs: list[str]
    tags: dict[str, str]

    vpc: aws.ec2.Vpc
    internet_gateway: aws.ec2.InternetGateway
    subnets: dict[str, list[aws.ec2.Subnet]]
    public_route_table: aws.ec2.RouteTable
    public_route: aws.ec2.Route
    private_route_tables: dict[str, aws.ec2.RouteTable]
    route_table_associations: list[aws.ec2.RouteTableAssociation]
    default_security_group: aws.ec2.DefaultSecurityGroup | None

    def __init__(
        self,
        name: str,
        network: personal_infra.NetworkConfig,
        azs: list[str],
        tags: dict[str, str],
        *args,
        **kwargs,
    ):
        """
        :param name: the name of the VPC, also used as the prefix of every child resource
        :param network: address block and subnet tiers
        :param azs: the availability zone names available to the VPC. Only the first `network.max_azs` are used.
        :param tags: the tags to apply to all the resources
        """
        self.name = name
        self.network = network
        self.tags = tags
        self.default_security_group = None

        super().__init__(f"personal-infra:{self.__class__.__name__}", self.name, *args, **kwargs)

        if len(azs) == 0:
            pulumi.error("Using zero availability zones is not supported")

        self.azs = list(azs)[: network.max_azs]

        if len(self.azs) == 1:
            warnings.warn(
                "Using a single availability zone is not recommended for production workloads",
                stacklevel=2,
            )

        self.cidr_block = network.network
        self.subnet_cidr_blocks = network.subnet_cidr_blocks(len(self.azs))

        self.vpc = aws.ec2.Vpc(
            name,
            cidr_block=str(self.cidr_block),
            enable_dns_hostnames=True,
            enable_dns_support=True,
            tags=self.tags | {"Name": name},
            opts=pulumi.ResourceOptions(parent=self),
        )

        self.internet_gateway = aws.ec2.InternetGateway(
            name,
            vpc_id=self.vpc.id,
            tags=self.tags | {"Name": name},
            opts=pulumi.ResourceOptions(parent=self.vpc),
        )

        self.subnets = collections.defaultdict(list)

        for tier in network.subnet_tiers:
            public = tier.kind == personal_infra.SubnetKind.PUBLIC

            for j, az in enumerate(self.azs):
                number = j + 1
                subnet_name = f"{self.name}-{tier.name}-az{number}"
                subnet = aws.ec2.Subnet(
                    subnet_name,
                    vpc_id=self.vpc.id,
                    cidr_block=str(self.subnet_cidr_blocks[tier.name][j]),
                    availability_zone=az,
                    map_public_ip_on_launch=public,
                    tags=self.tags | {"Name": subnet_name},
                    opts=pulumi.ResourceOptions(parent=self.vpc),
                )
                self.subnets[tier.name].append(subnet)

        self.public_route_table = aws.ec2.RouteTable(
            f"{self.name}-public",
            vpc_id=self.vpc.id,
            tags=self.tags | {"Name": f"{self.name}-public"},
            opts=pulumi.ResourceOptions(parent=self.vpc),
        )

        self.public_route = aws.ec2.Route(
            f"{self.name}-public",
            route_table_id=self.public_route_table.id,
            gateway_id=self.internet_gateway.id,
            destination_cidr_block=personal_infra.ANY_IPV4,
            opts=pulumi.ResourceOptions(parent=self.public_route_table),
        )

        # Private tiers get an isolated route table each; there is no NAT gateway.
        self.private_route_tables = {}
        self.route_table_associations = []

        for tier in network.subnet_tiers:
            if tier.kind == personal_infra.SubnetKind.PUBLIC:
                route_table = self.public_route_table
            else:
                route_table = aws.ec2.RouteTable(
                    f"{self.name}-{tier.name}",
                    vpc_id=self.vpc.id,
                    tags=self.tags | {"Name": f"{self.name}-{tier.name}"},
                    opts=pulumi.ResourceOptions(parent=self.vpc),
                )
                self.private_route_tables[tier.name] = route_table

            for i, subnet in enumerate(self.subnets[tier.name]):
                self.route_table_associations.append(
                    aws.ec2.RouteTableAssociation(
                        f"{self.name}-{tier.name}-az{i + 1}",
                        subnet_id=subnet.id,
                        route_table_id=route_table.id,
                        opts=pulumi.ResourceOptions(parent=route_table),
                    )
                )

        self.register_outputs(
            {
                "cidr_block": str(self.cidr_block),
                "subnet_cidr_blocks": {k: [str(n) for n in v] for k, v in self.subnet_cidr_blocks.items()},
                "azs": self.azs,
                "vpc_id": self.vpc.id,
                "public_subnet_ids": [sn.id for sn in self.public_subnets],
            }
        )

    @property
    def public_subnets(self) -> list[aws.ec2.Subnet]:
        return [subnet for tier in self.network.public_tiers for subnet in self.subnets[tier.name]]

    @property
    def public_subnet_ids(self) -> list[pulumi.Output[str]]:
        return [subnet.id for subnet in self.public_subnets]

    def with_secure_default_security_group(self):
        """
        Manage the default security group by removing its ingress and egress rules, so nothing
        lands in it by accident.
        :return:
        """
        self.default_security_group = aws.ec2.DefaultSecurityGroup(
            f"{self.name}-default",
            vpc_id=self.vpc.id,
            tags=self.tags | {"Name": f"{self.name}-default"},
            opts=pulumi.ResourceOptions(parent=self),
        )

        return self
