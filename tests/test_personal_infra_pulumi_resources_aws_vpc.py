import pulumi
import pytest

import personal_infra
import personal_infra.pulumi_resources.aws_vpc


def two_tier_network() -> personal_infra.NetworkConfig:
    return personal_infra.NetworkConfig(
        cidr_block="10.10.0.0/16",
        subnet_tiers=(
            personal_infra.SubnetTier(name="public", cidr_mask=24),
            personal_infra.SubnetTier(name="isolated", cidr_mask=24, kind=personal_infra.SubnetKind.PRIVATE),
        ),
        max_azs=2,
    )


@pulumi.runtime.test
def test_define_proxy_vpc(pulumi_mocks):
    vpc = personal_infra.pulumi_resources.aws_vpc.ProxyVpc(
        "bologna01-Vpc",
        two_tier_network(),
        ["mpn2-az4", "mpn2-az1", "mpn2-az2"],
        {"personal-infra/stack": "testing"},
    )

    assert vpc.name == "bologna01-Vpc"
    assert vpc.azs == ["mpn2-az4", "mpn2-az1"]
    assert [str(n) for n in vpc.subnet_cidr_blocks["public"]] == ["10.10.0.0/24", "10.10.1.0/24"]
    assert len(vpc.public_subnets) == 2
    assert list(vpc.private_route_tables) == ["isolated"]

    def check(_):
        subnets = {r.name: r.inputs for r in pulumi_mocks.named("aws:ec2/subnet:Subnet")}
        assert sorted(subnets) == [
            "bologna01-Vpc-isolated-az1",
            "bologna01-Vpc-isolated-az2",
            "bologna01-Vpc-public-az1",
            "bologna01-Vpc-public-az2",
        ]
        assert subnets["bologna01-Vpc-public-az1"]["mapPublicIpOnLaunch"] is True
        assert subnets["bologna01-Vpc-isolated-az1"]["mapPublicIpOnLaunch"] is False
        assert subnets["bologna01-Vpc-public-az2"]["availabilityZone"] == "mpn2-az1"

        routes = pulumi_mocks.named("aws:ec2/route:Route")
        assert len(routes) == 1
        assert routes[0].inputs["destinationCidrBlock"] == "0.0.0.0/0"

        assert len(pulumi_mocks.named("aws:ec2/routeTableAssociation:RouteTableAssociation")) == 4

        vpcs = pulumi_mocks.named("aws:ec2/vpc:Vpc")
        assert vpcs[0].inputs["cidrBlock"] == "10.10.0.0/16"
        assert vpcs[0].inputs["tags"] == {"personal-infra/stack": "testing", "Name": "bologna01-Vpc"}

    return pulumi.Output.all(
        vpc.vpc.urn,
        *[sn.urn for subnets in vpc.subnets.values() for sn in subnets],
        vpc.public_route.urn,
        *[rta.urn for rta in vpc.route_table_associations],
    ).apply(check)


@pulumi.runtime.test
def test_proxy_vpc_single_az_warns(pulumi_mocks):
    _ = pulumi_mocks
    with pytest.warns(UserWarning, match="single availability zone"):
        vpc = personal_infra.pulumi_resources.aws_vpc.ProxyVpc(
            "solo-Vpc", personal_infra.NetworkConfig(), ["mpn2-az4", "mpn2-az1"], {}
        )

    assert vpc.azs == ["mpn2-az4"]
    assert vpc.public_subnet_ids is not None


@pulumi.runtime.test
def test_proxy_vpc_secure_default_security_group(pulumi_mocks):
    vpc = personal_infra.pulumi_resources.aws_vpc.ProxyVpc(
        "locked-Vpc", two_tier_network(), ["mpn2-az4", "mpn2-az1"], {}
    ).with_secure_default_security_group()

    def check(_):
        groups = pulumi_mocks.named("aws:ec2/defaultSecurityGroup:DefaultSecurityGroup")
        assert [g.name for g in groups] == ["locked-Vpc-default"]
        assert "ingress" not in groups[0].inputs
        assert "egress" not in groups[0].inputs

    assert vpc.default_security_group is not None
    return vpc.default_security_group.urn.apply(check)
