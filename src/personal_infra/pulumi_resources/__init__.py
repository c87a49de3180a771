import json

import pulumi
import pulumi_aws as aws


def expire_untagged_images(name: str, repository: aws.ecr.Repository, days: int = 30) -> aws.ecr.LifecyclePolicy:
    return aws.ecr.LifecyclePolicy(
        f"{name}-ecr-expire-untagged-images",
        repository=repository.name,
        policy=json.dumps(
            {
                "rules": [
                    {
                        "rulePriority": 1,
                        "description": f"Expire images older than {days} days",
                        "selection": {
                            "tagStatus": "untagged",
                            "countType": "sinceImagePushed",
                            "countUnit": "days",
                            "countNumber": days,
                        },
                        "action": {"type": "expire"},
                    }
                ]
            }
        ),
        opts=pulumi.ResourceOptions(parent=repository),
    )
