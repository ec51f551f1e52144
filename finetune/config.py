"""
Project configuration.

Values come from environment variables, optionally seeded from a `.env`
file at the repository root.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).parent.parent / '.env')

# =============================================================================
# AWS
# =============================================================================

AWS_REGION = os.environ.get('AWS_REGION', 'us-east-1')
AWS_ACCOUNT_ID = os.environ.get('AWS_ACCOUNT_ID')

# =============================================================================
# RESOURCE NAMES
# =============================================================================

TRAINING_BUCKET_PREFIX = os.environ.get('TRAINING_BUCKET_PREFIX', 'sagemaker-kohya-ss-fine-tuning')
TRAINING_BUCKET = f"{TRAINING_BUCKET_PREFIX}-{AWS_ACCOUNT_ID}"
TRAINING_REPOSITORY_NAME = os.environ.get('TRAINING_REPOSITORY_NAME', 'kohya-ss-fine-tuning')
PIPELINE_NAME = os.environ.get('PIPELINE_NAME', 'kohya-ss-fine-tuning-pipeline')
SAGEMAKER_ROLE_ARN = os.environ.get('SAGEMAKER_ROLE_ARN')
PIPELINE_ROLE_ARN = os.environ.get('PIPELINE_ROLE_ARN', SAGEMAKER_ROLE_ARN)

# S3 layout
S3_DATASET_PREFIX = os.environ.get('S3_DATASET_PREFIX', '0001-dataset')
S3_MODEL_PREFIX = os.environ.get('S3_MODEL_PREFIX', 'model-outputs')

# =============================================================================
# LOCAL PATHS
# =============================================================================

LOCAL_DATASET_DIR = Path(os.environ.get('LOCAL_DATASET_DIR', 'dataset'))
LOCAL_STATE_DIR = Path(os.environ.get('LOCAL_STATE_DIR', Path(__file__).parent.parent / '.finetune'))

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')


def training_image_uri(account_id: str = None, region: str = None,
                       repository: str = None, tag: str = 'latest') -> str:
    """ECR image URI of the training container."""
    account_id = account_id or AWS_ACCOUNT_ID
    region = region or AWS_REGION
    repository = repository or TRAINING_REPOSITORY_NAME
    return f"{account_id}.dkr.ecr.{region}.amazonaws.com/{repository}:{tag}"
