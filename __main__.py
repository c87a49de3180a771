from personal_infra.pulumi_resources.proxy_deployment import ProxyDeployment

ProxyDeployment.autoload()
