import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from finetune import launcher
from finetune.pipeline import (
    VALIDATION_FAILED_MESSAGE,
    ParameterValidationError,
    RunStatus,
    build_training_pipeline,
)

ROLE = "arn:aws:iam::123456789012:role/sm"
RUN_ARN = "arn:aws:sagemaker:us-east-1:123456789012:pipeline/p/execution/abc123"


def _client_error(operation: str, code: str = "404") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": "Not Found"}}, operation)


@pytest.fixture
def pipeline():
    return build_training_pipeline(
        "kohya-ss-fine-tuning-pipeline",
        "training-bucket",
        "123456789012.dkr.ecr.us-east-1.amazonaws.com/kohya-ss-fine-tuning:latest",
    )


def test_ensure_bucket_creates_missing_bucket(monkeypatch):
    monkeypatch.setattr(launcher.config, "AWS_REGION", "eu-west-1")
    s3 = MagicMock()
    s3.head_bucket.side_effect = _client_error("HeadBucket")

    launcher.ensure_bucket(s3, "training-bucket")

    s3.create_bucket.assert_called_once_with(
        Bucket="training-bucket",
        CreateBucketConfiguration={"LocationConstraint": "eu-west-1"},
    )


def test_ensure_bucket_keeps_existing_bucket():
    s3 = MagicMock()
    launcher.ensure_bucket(s3, "training-bucket")
    s3.create_bucket.assert_not_called()


def test_upload_dataset_skips_existing(tmp_path):
    (tmp_path / "images").mkdir()
    (tmp_path / "images" / "a.png").write_bytes(b"a")
    (tmp_path / "images" / "b.png").write_bytes(b"b")
    (tmp_path / "kohya-sdxl-config.toml").write_text("")

    s3 = MagicMock()

    def head_object(Bucket, Key):
        if Key.endswith("a.png"):
            return {}
        raise _client_error("HeadObject")

    s3.head_object.side_effect = head_object

    counts = launcher.upload_dataset(s3, tmp_path, prefix="0001-dataset", bucket="training-bucket")

    assert counts == {"uploaded": 2, "skipped": 1}
    uploaded_keys = sorted(call.args[2] for call in s3.upload_file.call_args_list)
    assert uploaded_keys == ["0001-dataset/images/b.png", "0001-dataset/kohya-sdxl-config.toml"]


def test_upload_dataset_force_uploads_everything(tmp_path):
    (tmp_path / "a.png").write_bytes(b"a")
    s3 = MagicMock()

    counts = launcher.upload_dataset(s3, tmp_path, bucket="training-bucket", force=True)

    assert counts == {"uploaded": 1, "skipped": 0}
    s3.head_object.assert_not_called()


def test_upload_dataset_missing_directory(tmp_path):
    with pytest.raises(FileNotFoundError):
        launcher.upload_dataset(MagicMock(), tmp_path / "missing", bucket="training-bucket")


def test_upsert_pipeline_creates_when_absent(pipeline):
    sm = MagicMock()
    sm.describe_pipeline.side_effect = _client_error("DescribePipeline", "ResourceNotFound")
    sm.create_pipeline.return_value = {"PipelineArn": "arn:pipeline"}

    assert launcher.upsert_pipeline(sm, pipeline, ROLE) == "arn:pipeline"

    sm.update_pipeline.assert_not_called()
    kwargs = sm.create_pipeline.call_args.kwargs
    assert kwargs["PipelineName"] == pipeline.name
    assert kwargs["RoleArn"] == ROLE
    assert kwargs["ParallelismConfiguration"] == {"MaxParallelExecutionSteps": 1}
    assert json.loads(kwargs["PipelineDefinition"])["Version"] == "2020-12-01"


def test_upsert_pipeline_updates_in_place(pipeline):
    sm = MagicMock()
    sm.update_pipeline.return_value = {"PipelineArn": "arn:pipeline"}

    assert launcher.upsert_pipeline(sm, pipeline, ROLE, "arn:exec-role") == "arn:pipeline"

    sm.create_pipeline.assert_not_called()
    assert sm.update_pipeline.call_args.kwargs["RoleArn"] == "arn:exec-role"


def test_start_run_submits_overrides(pipeline):
    sm = MagicMock()
    sm.start_pipeline_execution.return_value = {"PipelineExecutionArn": RUN_ARN}

    assert launcher.start_run(sm, pipeline, {"TrainingVolumeSizeInGB": "100"}) == RUN_ARN

    kwargs = sm.start_pipeline_execution.call_args.kwargs
    assert kwargs["PipelineName"] == pipeline.name
    assert kwargs["PipelineParameters"] == [{"Name": "TrainingVolumeSizeInGB", "Value": "100"}]


def test_start_run_rejects_small_volume_without_submitting(pipeline):
    sm = MagicMock()

    with pytest.raises(ParameterValidationError, match="at least 50GB"):
        launcher.start_run(sm, pipeline, {"TrainingVolumeSizeInGB": 49})

    sm.start_pipeline_execution.assert_not_called()


def test_plan_run(pipeline):
    plan = launcher.plan_run(pipeline, {"TrainingVolumeSizeInGB": 64}, ROLE)
    assert plan["branch"] == "Train"
    assert plan["request"]["ResourceConfig"]["VolumeSizeInGB"] == 64

    assert launcher.plan_run(pipeline, {"TrainingVolumeSizeInGB": 10}) == {
        "branch": "Fail",
        "message": VALIDATION_FAILED_MESSAGE,
    }


def test_get_run_status_succeeded():
    sm = MagicMock()
    sm.describe_pipeline_execution.return_value = {"PipelineExecutionStatus": "Succeeded"}

    outcome = launcher.get_run_status(sm, RUN_ARN)

    assert outcome.status is RunStatus.SUCCEEDED
    assert outcome.failure_reason is None
    sm.list_pipeline_execution_steps.assert_not_called()


def test_get_run_status_uses_fail_step_message():
    sm = MagicMock()
    sm.describe_pipeline_execution.return_value = {"PipelineExecutionStatus": "Failed"}
    sm.list_pipeline_execution_steps.return_value = {
        "PipelineExecutionSteps": [
            {"StepName": "Fail", "StepStatus": "Failed",
             "Metadata": {"Fail": {"ErrorMessage": VALIDATION_FAILED_MESSAGE}}},
            {"StepName": "InputsValid", "StepStatus": "Succeeded"},
        ]
    }

    outcome = launcher.get_run_status(sm, RUN_ARN)

    assert outcome.status is RunStatus.FAILED
    assert outcome.failure_reason == VALIDATION_FAILED_MESSAGE


def test_get_run_status_prefers_execution_reason():
    sm = MagicMock()
    sm.describe_pipeline_execution.return_value = {
        "PipelineExecutionStatus": "Failed",
        "FailureReason": "Step failure: TrainNewFineTunedModel",
    }

    outcome = launcher.get_run_status(sm, RUN_ARN)

    assert outcome.failure_reason == "Step failure: TrainNewFineTunedModel"


def test_wait_for_run_polls_until_terminal(monkeypatch):
    monkeypatch.setattr(launcher.time, "sleep", lambda seconds: None)
    sm = MagicMock()
    sm.describe_pipeline_execution.side_effect = [
        {"PipelineExecutionStatus": "Executing"},
        {"PipelineExecutionStatus": "Executing"},
        {"PipelineExecutionStatus": "Succeeded"},
    ]

    outcome = launcher.wait_for_run(sm, RUN_ARN, poll_seconds=0)

    assert outcome.status is RunStatus.SUCCEEDED
    assert sm.describe_pipeline_execution.call_count == 3


def test_last_run_round_trip(tmp_path):
    assert launcher.load_last_run(tmp_path) is None
    launcher.save_last_run(RUN_ARN, tmp_path)
    assert launcher.load_last_run(tmp_path) == RUN_ARN


def test_cli_plan_prints_fail_branch(capsys):
    launcher.main(["--action", "plan", "--param", "TrainingVolumeSizeInGB=49"])
    out = json.loads(capsys.readouterr().out)
    assert out == {"branch": "Fail", "message": VALIDATION_FAILED_MESSAGE}


def test_cli_rejects_malformed_param():
    with pytest.raises(SystemExit) as excinfo:
        launcher.main(["--action", "plan", "--param", "TrainingVolumeSizeInGB"])
    assert excinfo.value.code == 2


def test_cli_launch_saves_run(monkeypatch, tmp_path):
    sm = MagicMock()
    sm.start_pipeline_execution.return_value = {"PipelineExecutionArn": RUN_ARN}
    monkeypatch.setattr(launcher, "get_clients", lambda: {"s3": MagicMock(), "sagemaker": sm})
    monkeypatch.setattr(launcher.config, "LOCAL_STATE_DIR", tmp_path)

    launcher.main(["--action", "launch"])

    assert launcher.load_last_run(tmp_path) == RUN_ARN


def test_cli_launch_invalid_volume_exits(monkeypatch):
    sm = MagicMock()
    monkeypatch.setattr(launcher, "get_clients", lambda: {"s3": MagicMock(), "sagemaker": sm})

    with pytest.raises(SystemExit) as excinfo:
        launcher.main(["--action", "launch", "--param", "TrainingVolumeSizeInGB=10"])

    assert excinfo.value.code == 1
    sm.start_pipeline_execution.assert_not_called()


def test_default_pipeline_uses_configured_prefixes(monkeypatch):
    monkeypatch.setattr(launcher.config, "TRAINING_BUCKET", "bucket")
    monkeypatch.setattr(launcher.config, "S3_DATASET_PREFIX", "data")
    monkeypatch.setattr(launcher.config, "S3_MODEL_PREFIX", "models")

    spec = launcher.default_pipeline().evaluate().job_spec

    assert spec.input_data_location == "s3://bucket/data"
    assert spec.output_location == "s3://bucket/models"


@pytest.mark.parametrize("action", ["deploy", "full"])
def test_cli_requires_role_before_touching_aws(monkeypatch, capsys, action):
    s3, sm = MagicMock(), MagicMock()
    monkeypatch.setattr(launcher, "get_clients", lambda: {"s3": s3, "sagemaker": sm})
    monkeypatch.setattr(launcher.config, "SAGEMAKER_ROLE_ARN", None)

    with pytest.raises(SystemExit) as excinfo:
        launcher.main(["--action", action])

    assert excinfo.value.code == 1
    assert "SAGEMAKER_ROLE_ARN is not set" in capsys.readouterr().err
    sm.create_pipeline.assert_not_called()
    sm.update_pipeline.assert_not_called()
    s3.upload_file.assert_not_called()


def test_cli_deploy_with_role(monkeypatch):
    sm = MagicMock()
    sm.update_pipeline.return_value = {"PipelineArn": "arn:pipeline"}
    monkeypatch.setattr(launcher, "get_clients", lambda: {"s3": MagicMock(), "sagemaker": sm})
    monkeypatch.setattr(launcher.config, "SAGEMAKER_ROLE_ARN", ROLE)
    monkeypatch.setattr(launcher.config, "PIPELINE_ROLE_ARN", ROLE)

    launcher.main(["--action", "deploy"])

    assert sm.update_pipeline.call_args.kwargs["RoleArn"] == ROLE
