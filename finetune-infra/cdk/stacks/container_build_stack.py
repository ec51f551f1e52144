"""
Container Build Stack - Training Image CI

This stack creates:
- CodeCommit repository with the training container source
- ECR repository for the training image
- CodeBuild project that builds the image and pushes it to ECR
- EventBridge rule that starts a build whenever the repository changes
"""
from aws_cdk import (
    Stack,
    Duration,
    aws_codebuild as codebuild,
    aws_codecommit as codecommit,
    aws_ecr as ecr,
    aws_events_targets as targets,
    CfnOutput,
)
from constructs import Construct


class ContainerBuildStack(Stack):
    """Build pipeline for the Kohya SS training container."""

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        repository_name: str,
        code_repository_name: str,
        build_project_name: str,
        kohya_ss_version: str = "v22.6.2",
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.code_repository = codecommit.Repository(
            self,
            "TrainingContainerCodeRepository",
            repository_name=code_repository_name,
            description="Source code to build the training container image using Docker, and the training code",
        )

        self.image_repository = ecr.Repository(
            self,
            "TrainingContainerRepository",
            repository_name=repository_name,
            image_scan_on_push=True,
            encryption=ecr.RepositoryEncryption.AES_256,
        )

        self.build_project = codebuild.Project(
            self,
            "TrainingContainerBuildProject",
            project_name=build_project_name,
            description="Builds the training container image and pushes the image to ECR",
            source=codebuild.Source.code_commit(repository=self.code_repository, clone_depth=1),
            build_spec=codebuild.BuildSpec.from_source_filename("container/buildspec.yml"),
            environment=codebuild.BuildEnvironment(
                build_image=codebuild.LinuxBuildImage.AMAZON_LINUX_2_5,
                compute_type=codebuild.ComputeType.LARGE,
                privileged=True,  # docker build
            ),
            environment_variables={
                "KOHYA_SS_VERSION": codebuild.BuildEnvironmentVariable(value=kohya_ss_version),
                "IMAGE_TAG": codebuild.BuildEnvironmentVariable(value="latest"),
                "IMAGE_REPO_NAME": codebuild.BuildEnvironmentVariable(value=repository_name),
                "AWS_ACCOUNT_ID": codebuild.BuildEnvironmentVariable(value=self.account),
            },
            concurrent_build_limit=1,
            timeout=Duration.minutes(60),
            queued_timeout=Duration.minutes(480),
        )
        self.image_repository.grant_pull_push(self.build_project)

        # Any change to the source repository rebuilds the image
        self.code_repository.on_state_change(
            "BuildNewTrainingContainerImageRule",
            description="Updating the CodeCommit repository will trigger the CodeBuild project "
                        "that builds a new training container image",
            target=targets.CodeBuildProject(self.build_project),
        )

        # Outputs
        CfnOutput(
            self,
            "CodeRepositoryCloneUrl",
            value=self.code_repository.repository_clone_url_http,
            description="Training container source repository (HTTPS clone URL)",
        )

        CfnOutput(
            self,
            "TrainingImageUri",
            value=self.image_repository.repository_uri_for_tag("latest"),
            description="Training container image URI",
        )
