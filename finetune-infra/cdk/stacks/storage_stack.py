"""
Storage Stack - S3 Bucket for Training Data

This stack creates:
- Private S3 bucket holding the custom image dataset, training config
  files and model outputs
"""
from aws_cdk import (
    Stack,
    RemovalPolicy,
    aws_s3 as s3,
    CfnOutput,
)
from constructs import Construct


class StorageStack(Stack):
    """S3 storage for datasets and model outputs."""

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        bucket_prefix: str,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        # Account ID is appended to keep the name globally unique
        self.training_bucket = s3.Bucket(
            self,
            "TrainingBucket",
            bucket_name=f"{bucket_prefix}-{self.account}",
            block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
            encryption=s3.BucketEncryption.S3_MANAGED,
            enforce_ssl=True,
            removal_policy=RemovalPolicy.RETAIN,
        )

        # Outputs
        CfnOutput(
            self,
            "TrainingBucketName",
            value=self.training_bucket.bucket_name,
            description="Training data S3 bucket name",
        )
