#!/usr/bin/env python3
"""
================================================================================
SAGEMAKER PIPELINE LAUNCHER
================================================================================

Run the SDXL fine-tuning pipeline on AWS SageMaker.

Features:
- Uploads the local dataset to S3 (skips existing files)
- Creates or updates the SageMaker pipeline
- Validates parameters locally, then starts a pipeline execution
- Reports and waits on execution status

Usage:
    finetune-launch --action upload   # Upload dataset to S3
    finetune-launch --action deploy   # Create or update the pipeline
    finetune-launch --action plan     # Show the job a run would start
    finetune-launch --action launch   # Start a pipeline execution
    finetune-launch --action status   # Check execution status
    finetune-launch --action wait     # Wait for the last execution
    finetune-launch --action full     # Upload, deploy, launch and wait

Parameters are passed as --param Name=Value, e.g.
    finetune-launch --action launch --param TrainingVolumeSizeInGB=100

================================================================================
"""

import argparse
import json
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import boto3
from botocore.exceptions import ClientError

from finetune import config
from finetune.pipeline import (
    MAX_PARALLEL_EXECUTION_STEPS,
    Fail,
    ParameterValidationError,
    RunOutcome,
    RunStatus,
    TrainingPipeline,
    build_training_pipeline,
)

# =============================================================================
# AWS CLIENTS
# =============================================================================

def get_clients():
    """Get AWS clients."""
    session = boto3.Session(region_name=config.AWS_REGION)
    return {
        's3': session.client('s3'),
        'sagemaker': session.client('sagemaker'),
    }


def default_pipeline() -> TrainingPipeline:
    return build_training_pipeline(
        config.PIPELINE_NAME,
        config.TRAINING_BUCKET,
        config.training_image_uri(),
        dataset_prefix=config.S3_DATASET_PREFIX,
        model_prefix=config.S3_MODEL_PREFIX,
    )


# =============================================================================
# S3 OPERATIONS
# =============================================================================

def ensure_bucket(s3_client, bucket: str = None):
    """Create S3 bucket if it doesn't exist."""
    bucket = bucket or config.TRAINING_BUCKET
    try:
        s3_client.head_bucket(Bucket=bucket)
        print(f"Bucket exists: {bucket}")
    except ClientError:
        print(f"Creating bucket: {bucket}")
        if config.AWS_REGION == 'us-east-1':
            s3_client.create_bucket(Bucket=bucket)
        else:
            s3_client.create_bucket(
                Bucket=bucket,
                CreateBucketConfiguration={'LocationConstraint': config.AWS_REGION}
            )


def upload_dataset(s3_client, local_dir: Path, prefix: str = config.S3_DATASET_PREFIX,
                   bucket: str = None, force: bool = False) -> Dict[str, int]:
    """Upload a local dataset directory to S3."""
    bucket = bucket or config.TRAINING_BUCKET
    local_dir = Path(local_dir)
    if not local_dir.is_dir():
        raise FileNotFoundError(f"Dataset directory not found: {local_dir}")

    ensure_bucket(s3_client, bucket)

    uploaded = 0
    skipped = 0

    for file_path in sorted(local_dir.rglob('*')):
        if not file_path.is_file():
            continue

        s3_key = f"{prefix}/{file_path.relative_to(local_dir).as_posix()}"

        if not force:
            try:
                s3_client.head_object(Bucket=bucket, Key=s3_key)
                skipped += 1
                continue
            except ClientError:
                pass

        s3_client.upload_file(str(file_path), bucket, s3_key)
        uploaded += 1
        print(f"  Uploaded: {s3_key}")

    print(f"Upload complete: {uploaded} new, {skipped} skipped")
    return {'uploaded': uploaded, 'skipped': skipped}


# =============================================================================
# PIPELINE
# =============================================================================

def upsert_pipeline(sagemaker_client, pipeline: TrainingPipeline, role_arn: str,
                    execution_role_arn: str = None) -> str:
    """Create the pipeline, or update it in place if it already exists."""
    request = {
        'PipelineName': pipeline.name,
        'PipelineDefinition': pipeline.to_json(role_arn),
        'PipelineDescription': pipeline.description,
        'RoleArn': execution_role_arn or role_arn,
        'ParallelismConfiguration': {'MaxParallelExecutionSteps': MAX_PARALLEL_EXECUTION_STEPS},
    }

    try:
        sagemaker_client.describe_pipeline(PipelineName=pipeline.name)
    except ClientError:
        print(f"Creating pipeline: {pipeline.name}")
        response = sagemaker_client.create_pipeline(**request)
    else:
        print(f"Updating pipeline: {pipeline.name}")
        response = sagemaker_client.update_pipeline(**request)

    return response['PipelineArn']


def plan_run(pipeline: TrainingPipeline, overrides: Optional[Mapping[str, Any]] = None,
             role_arn: str = None) -> Dict[str, Any]:
    """Evaluate a run locally without submitting anything."""
    decision = pipeline.evaluate(overrides)
    if isinstance(decision, Fail):
        return {'branch': 'Fail', 'message': decision.message}

    job_name = f"{pipeline.name}-plan"
    return {
        'branch': 'Train',
        'request': decision.job_spec.to_request(job_name, role_arn or '<role-arn>'),
    }


def start_run(sagemaker_client, pipeline: TrainingPipeline,
              overrides: Optional[Mapping[str, Any]] = None) -> str:
    """Start a pipeline execution and return its ARN."""
    decision = pipeline.evaluate(overrides)
    if isinstance(decision, Fail):
        raise ParameterValidationError(decision.message)

    display_name = f"{pipeline.name}-{datetime.now().strftime('%Y%m%d-%H%M%S')}"
    response = sagemaker_client.start_pipeline_execution(
        PipelineName=pipeline.name,
        PipelineExecutionDisplayName=display_name,
        PipelineParameters=pipeline.execution_parameters(overrides),
        ParallelismConfiguration={'MaxParallelExecutionSteps': MAX_PARALLEL_EXECUTION_STEPS},
    )
    run_arn = response['PipelineExecutionArn']

    print(f"Started execution: {display_name}")
    print(f"  ARN: {run_arn}")
    return run_arn


def _step_failure_reason(sagemaker_client, run_arn: str) -> Optional[str]:
    """Failure reason of the first failed step, if any."""
    response = sagemaker_client.list_pipeline_execution_steps(PipelineExecutionArn=run_arn)
    for step in response.get('PipelineExecutionSteps', []):
        if step.get('StepStatus') != 'Failed':
            continue
        if step.get('FailureReason'):
            return step['FailureReason']
        fail = step.get('Metadata', {}).get('Fail', {})
        if fail.get('ErrorMessage'):
            return fail['ErrorMessage']
    return None


def get_run_status(sagemaker_client, run_arn: str) -> RunOutcome:
    """Get status of a pipeline execution."""
    response = sagemaker_client.describe_pipeline_execution(PipelineExecutionArn=run_arn)
    status = RunStatus(response['PipelineExecutionStatus'])

    failure_reason = None
    if status is RunStatus.FAILED:
        failure_reason = response.get('FailureReason') or _step_failure_reason(sagemaker_client, run_arn)

    return RunOutcome(run_arn=run_arn, status=status, failure_reason=failure_reason)


def wait_for_run(sagemaker_client, run_arn: str, poll_seconds: int = 60) -> RunOutcome:
    """Wait for a pipeline execution to finish."""
    print(f"Waiting for execution: {run_arn}")

    while True:
        outcome = get_run_status(sagemaker_client, run_arn)
        print(f"  Status: {outcome.status.value}")

        if outcome.status.is_terminal:
            return outcome

        time.sleep(poll_seconds)


# =============================================================================
# LOCAL STATE
# =============================================================================

def save_last_run(run_arn: str, state_dir: Path = None):
    state_dir = Path(state_dir or config.LOCAL_STATE_DIR)
    state_dir.mkdir(parents=True, exist_ok=True)
    with open(state_dir / 'last_run.json', 'w') as f:
        json.dump({'run_arn': run_arn, 'created': datetime.now().isoformat()}, f, indent=2)


def load_last_run(state_dir: Path = None) -> Optional[str]:
    run_file = Path(state_dir or config.LOCAL_STATE_DIR) / 'last_run.json'
    if not run_file.exists():
        return None
    with open(run_file) as f:
        return json.load(f)['run_arn']


def outcome_to_dict(outcome: RunOutcome) -> Dict[str, Any]:
    status = {'run_arn': outcome.run_arn, 'status': outcome.status.value}
    if outcome.failure_reason:
        status['failure_reason'] = outcome.failure_reason
    return status


def parse_override(pair: str):
    """Split a `Name=Value` command line override."""
    name, sep, value = pair.partition('=')
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"Expected Name=Value, got {pair!r}")
    return name, value


# =============================================================================
# MAIN
# =============================================================================

def require_role(parser):
    if not config.SAGEMAKER_ROLE_ARN:
        parser.exit(1, "SAGEMAKER_ROLE_ARN is not set (see the SageMakerRoleArn output of the pipeline stack)\n")


def main(argv=None):
    parser = argparse.ArgumentParser(description="SageMaker Pipeline Launcher")
    parser.add_argument('--action', choices=['upload', 'deploy', 'plan', 'launch', 'status', 'wait', 'full'],
                        default='status', help='Action to perform')
    parser.add_argument('--run-arn', type=str, help='Pipeline execution ARN')
    parser.add_argument('--param', action='append', type=parse_override, metavar='NAME=VALUE',
                        help='Pipeline parameter override (repeatable)')
    parser.add_argument('--dataset-dir', type=Path, default=config.LOCAL_DATASET_DIR,
                        help='Local dataset directory to upload')
    parser.add_argument('--force', action='store_true', help='Force re-upload of data')

    args = parser.parse_args(argv)
    overrides = dict(args.param or [])
    pipeline = default_pipeline()

    if args.action == 'plan':
        try:
            print(json.dumps(plan_run(pipeline, overrides, config.SAGEMAKER_ROLE_ARN), indent=2))
        except ParameterValidationError as e:
            parser.exit(1, f"Invalid parameters: {e}\n")
        return

    clients = get_clients()

    if args.action == 'upload':
        upload_dataset(clients['s3'], args.dataset_dir, force=args.force)

    elif args.action == 'deploy':
        require_role(parser)
        upsert_pipeline(clients['sagemaker'], pipeline, config.SAGEMAKER_ROLE_ARN, config.PIPELINE_ROLE_ARN)

    elif args.action == 'launch':
        try:
            run_arn = start_run(clients['sagemaker'], pipeline, overrides)
        except ParameterValidationError as e:
            parser.exit(1, f"Invalid parameters: {e}\n")
        save_last_run(run_arn)

    elif args.action in ('status', 'wait'):
        run_arn = args.run_arn or load_last_run()
        if not run_arn:
            parser.exit(1, "No run ARN provided and no last_run.json found\n")
        if args.action == 'status':
            outcome = get_run_status(clients['sagemaker'], run_arn)
        else:
            outcome = wait_for_run(clients['sagemaker'], run_arn)
        print(json.dumps(outcome_to_dict(outcome), indent=2))

    elif args.action == 'full':
        require_role(parser)

        print("=" * 80)
        print("FULL SAGEMAKER PIPELINE")
        print("=" * 80)

        print("\n[1/4] Uploading dataset to S3...")
        upload_dataset(clients['s3'], args.dataset_dir, force=args.force)

        print("\n[2/4] Deploying pipeline...")
        upsert_pipeline(clients['sagemaker'], pipeline, config.SAGEMAKER_ROLE_ARN, config.PIPELINE_ROLE_ARN)

        print("\n[3/4] Starting execution...")
        try:
            run_arn = start_run(clients['sagemaker'], pipeline, overrides)
        except ParameterValidationError as e:
            parser.exit(1, f"Invalid parameters: {e}\n")
        save_last_run(run_arn)

        print("\n[4/4] Waiting for execution...")
        outcome = wait_for_run(clients['sagemaker'], run_arn)

        if outcome.status is RunStatus.SUCCEEDED:
            print("\nPipeline completed successfully!")
        else:
            print(f"\nExecution {outcome.status.value}: {outcome.failure_reason or 'Unknown'}")


if __name__ == '__main__':
    main()
