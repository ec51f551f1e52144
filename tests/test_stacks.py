import json
import shutil

import pytest

cdk = pytest.importorskip("aws_cdk")
assertions = pytest.importorskip("aws_cdk.assertions")

pytestmark = [
    pytest.mark.infra,
    pytest.mark.skipif(shutil.which("node") is None, reason="CDK synthesis needs Node.js"),
]


@pytest.fixture(scope="module")
def stacks():
    from stacks import ContainerBuildStack, StorageStack, TrainingPipelineStack

    app = cdk.App()
    storage = StorageStack(app, "storage", bucket_prefix="sagemaker-kohya-ss-fine-tuning")
    build = ContainerBuildStack(
        app,
        "build",
        repository_name="kohya-ss-fine-tuning",
        code_repository_name="kohya-ss-fine-tuning-container-image",
        build_project_name="kohya-ss-fine-tuning-build-container",
    )
    pipeline = TrainingPipelineStack(
        app,
        "pipeline",
        pipeline_name="kohya-ss-fine-tuning-pipeline",
        training_bucket=storage.training_bucket,
        image_repository=build.image_repository,
    )
    return {
        "storage": assertions.Template.from_stack(storage),
        "build": assertions.Template.from_stack(build),
        "pipeline": assertions.Template.from_stack(pipeline),
    }


def test_training_bucket_is_private(stacks):
    stacks["storage"].has_resource_properties("AWS::S3::Bucket", {
        "PublicAccessBlockConfiguration": {
            "BlockPublicAcls": True,
            "BlockPublicPolicy": True,
            "IgnorePublicAcls": True,
            "RestrictPublicBuckets": True,
        },
    })


def test_image_repository_scans_on_push(stacks):
    stacks["build"].has_resource_properties("AWS::ECR::Repository", {
        "RepositoryName": "kohya-ss-fine-tuning",
        "ImageScanningConfiguration": {"ScanOnPush": True},
    })


def test_build_project_limits(stacks):
    stacks["build"].has_resource_properties("AWS::CodeBuild::Project", {
        "Name": "kohya-ss-fine-tuning-build-container",
        "ConcurrentBuildLimit": 1,
        "TimeoutInMinutes": 60,
        "QueuedTimeoutInMinutes": 480,
        "Environment": assertions.Match.object_like({"PrivilegedMode": True}),
    })


def test_repository_change_triggers_build(stacks):
    stacks["build"].has_resource_properties("AWS::Events::Rule", {
        "EventPattern": assertions.Match.object_like({
            "source": ["aws.codecommit"],
            "detail-type": ["CodeCommit Repository State Change"],
        }),
    })


def test_pipeline_runs_one_step_at_a_time(stacks):
    template = stacks["pipeline"]
    template.resource_count_is("AWS::SageMaker::Pipeline", 1)
    template.has_resource_properties("AWS::SageMaker::Pipeline", {
        "PipelineName": "kohya-ss-fine-tuning-pipeline",
        "ParallelismConfiguration": {"MaxParallelExecutionSteps": 1},
    })


def test_pipeline_definition_and_execution_role(stacks):
    template = stacks["pipeline"]
    (pipeline,) = template.find_resources("AWS::SageMaker::Pipeline").values()
    properties = pipeline["Properties"]

    body = json.dumps(properties["PipelineDefinition"]["PipelineDefinitionBody"])
    assert "InputsValid" in body
    assert "TrainNewFineTunedModel" in body
    assert "GreaterThanOrEqualTo" in body

    roles = template.find_resources("AWS::IAM::Role", {
        "Properties": {"Description": "The role used to execute the SageMaker pipeline"},
    })
    (execution_role_id,) = roles.keys()
    assert properties["RoleArn"] == {"Fn::GetAtt": [execution_role_id, "Arn"]}
