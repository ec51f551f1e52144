"""
Training Pipeline Stack - SageMaker Pipeline

This stack creates:
- SageMaker service role used by the training job
- Pipeline execution role
- SageMaker pipeline: validate inputs, then train or fail
"""
from aws_cdk import (
    Stack,
    aws_ecr as ecr,
    aws_iam as iam,
    aws_s3 as s3,
    aws_sagemaker as sagemaker,
    CfnOutput,
)
from constructs import Construct

from finetune.pipeline import MAX_PARALLEL_EXECUTION_STEPS, build_training_pipeline


class TrainingPipelineStack(Stack):
    """SageMaker pipeline that fine-tunes SDXL on a custom dataset."""

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        pipeline_name: str,
        training_bucket: s3.IBucket,
        image_repository: ecr.IRepository,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        # Role assumed by the training job
        self.sagemaker_role = iam.Role(
            self,
            "SageMakerServiceRole",
            assumed_by=iam.ServicePrincipal("sagemaker.amazonaws.com"),
            description="The service role used by SageMaker to execute commands",
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name("AmazonSageMakerFullAccess"),
            ],
        )
        training_bucket.grant_read_write(self.sagemaker_role)
        image_repository.grant_pull(self.sagemaker_role)

        # Role assumed by the pipeline itself
        self.execution_role = iam.Role(
            self,
            "PipelineExecutionRole",
            assumed_by=iam.ServicePrincipal("sagemaker.amazonaws.com"),
            description="The role used to execute the SageMaker pipeline",
        )
        self.execution_role.add_to_policy(
            iam.PolicyStatement(
                actions=["sagemaker:Create*", "sagemaker:Describe*", "sagemaker:AddTags", "s3:GetObject"],
                resources=["*"],
            )
        )
        self.sagemaker_role.grant_pass_role(self.execution_role)

        training_pipeline = build_training_pipeline(
            pipeline_name,
            training_bucket.bucket_name,
            image_repository.repository_uri_for_tag("latest"),
        )
        definition = training_pipeline.to_definition(self.sagemaker_role.role_arn)

        self.pipeline = sagemaker.CfnPipeline(
            self,
            "Pipeline",
            pipeline_name=pipeline_name,
            pipeline_description=training_pipeline.description,
            pipeline_definition={"PipelineDefinitionBody": self.to_json_string(definition)},
            parallelism_configuration=sagemaker.CfnPipeline.ParallelismConfigurationProperty(
                max_parallel_execution_steps=MAX_PARALLEL_EXECUTION_STEPS,
            ),
            role_arn=self.execution_role.role_arn,
        )

        # Outputs
        CfnOutput(
            self,
            "PipelineName",
            value=pipeline_name,
            description="SageMaker pipeline name",
        )

        CfnOutput(
            self,
            "SageMakerRoleArn",
            value=self.sagemaker_role.role_arn,
            description="Role used by training jobs (SAGEMAKER_ROLE_ARN)",
        )
