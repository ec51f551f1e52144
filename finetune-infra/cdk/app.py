#!/usr/bin/env python3
"""
SDXL Fine-Tuning Infrastructure - AWS CDK Application

- S3 bucket for datasets and model outputs
- CodeCommit + CodeBuild + ECR for the training container image
- SageMaker pipeline that validates inputs and trains the model
"""
import os
import aws_cdk as cdk
from stacks import (
    StorageStack,
    ContainerBuildStack,
    TrainingPipelineStack,
)


def build_app(app: cdk.App) -> cdk.App:
    # Get configuration from context
    def context(key: str, default: str) -> str:
        return app.node.try_get_context(key) or default

    bucket_prefix = context("bucket_prefix", "sagemaker-kohya-ss-fine-tuning")
    repository_name = context("repository_name", "kohya-ss-fine-tuning")
    pipeline_name = context("pipeline_name", "kohya-ss-fine-tuning-pipeline")

    env = cdk.Environment(
        account=os.environ.get("CDK_DEFAULT_ACCOUNT"),
        region=os.environ.get("CDK_DEFAULT_REGION", "us-east-1"),
    )

    # 1. Storage Stack (training bucket)
    storage_stack = StorageStack(
        app,
        f"{pipeline_name}-storage",
        env=env,
        bucket_prefix=bucket_prefix,
    )

    # 2. Container Build Stack (source repo, image build, registry)
    build_stack = ContainerBuildStack(
        app,
        f"{pipeline_name}-container-build",
        env=env,
        repository_name=repository_name,
        code_repository_name=context("code_repository_name", "kohya-ss-fine-tuning-container-image"),
        build_project_name=context("build_project_name", "kohya-ss-fine-tuning-build-container"),
        kohya_ss_version=context("kohya_ss_version", "v22.6.2"),
    )

    # 3. Training Pipeline Stack (roles, SageMaker pipeline)
    pipeline_stack = TrainingPipelineStack(
        app,
        f"{pipeline_name}-pipeline",
        env=env,
        pipeline_name=pipeline_name,
        training_bucket=storage_stack.training_bucket,
        image_repository=build_stack.image_repository,
    )
    pipeline_stack.add_dependency(storage_stack)
    pipeline_stack.add_dependency(build_stack)

    for stack in [storage_stack, build_stack, pipeline_stack]:
        cdk.Tags.of(stack).add("Project", pipeline_name)
        cdk.Tags.of(stack).add("ManagedBy", "CDK")

    return app


def main():
    app = build_app(cdk.App())
    app.synth()


if __name__ == "__main__":
    main()
