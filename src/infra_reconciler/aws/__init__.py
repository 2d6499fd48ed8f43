"""AWS control plane (ECR, ECS, ELBv2, Application Auto Scaling) over boto3."""
