"""
Training pipeline definition.

The pipeline is a single condition step: if the bound parameters pass the
input check, a training job is started with them; otherwise the run ends on
a Fail step with a fixed message. The same objects are used to evaluate a
run locally and to render the definition document submitted to SageMaker.
"""
import json
import operator
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

DEFINITION_VERSION = '2020-12-01'
MAX_PARALLEL_EXECUTION_STEPS = 1
MIN_VOLUME_SIZE_GB = 50

DEFAULT_DATASET_PREFIX = '0001-dataset'
DEFAULT_MODEL_PREFIX = 'model-outputs'

VALIDATION_FAILED_MESSAGE = (
    "Input parameter validation failed, the training can not continue. "
    "Make sure the volume size is at least 50GB."
)

# Parameter names
INPUT_DATASET_LOCATION = 'InputS3DatasetLocation'
OUTPUT_MODEL_LOCATION = 'OutputS3ModelLocation'
TRAINING_IMAGE = 'TrainingDockerImage'
TRAINING_INSTANCE_TYPE = 'TrainingInstanceType'
TRAINING_VOLUME_SIZE = 'TrainingVolumeSizeInGB'
MAX_TRAINING_RUNTIME = 'MaxTrainingRuntimeInSeconds'


class ParameterValidationError(ValueError):
    """Raised when submitted parameters cannot be bound or fail validation."""


# =============================================================================
# PARAMETERS
# =============================================================================

class ParameterType(str, Enum):
    STRING = 'String'
    INTEGER = 'Integer'


@dataclass(frozen=True)
class PipelineParameter:
    """A named, typed pipeline input with a default value."""
    name: str
    type: ParameterType
    default: Union[str, int]
    description: str = ''

    def coerce(self, value: Any) -> Union[str, int]:
        """Convert a submitted value to the declared type."""
        if self.type is ParameterType.STRING:
            return str(value)

        if isinstance(value, bool):
            raise ParameterValidationError(f"{self.name} must be an integer, got {value!r}")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                pass
        raise ParameterValidationError(f"{self.name} must be an integer, got {value!r}")

    @property
    def reference(self) -> Dict[str, str]:
        return {'Get': f'Parameters.{self.name}'}

    def to_definition(self) -> Dict[str, Any]:
        return {
            'Name': self.name,
            'Type': self.type.value,
            'Description': self.description,
            'DefaultValue': self.default,
        }


def bind_parameters(parameters: Iterable[PipelineParameter],
                    overrides: Optional[Mapping[str, Any]] = None) -> Mapping[str, Any]:
    """
    Resolve the values for one run.

    Defaults are taken first and overrides applied on top. The result is a
    read-only mapping.
    """
    declared = {p.name: p for p in parameters}
    overrides = dict(overrides or {})

    unknown = sorted(set(overrides) - set(declared))
    if unknown:
        raise ParameterValidationError(f"Unknown pipeline parameters: {', '.join(unknown)}")

    values = {}
    for name, param in declared.items():
        values[name] = param.coerce(overrides[name]) if name in overrides else param.default
    return MappingProxyType(values)


def default_parameters(bucket_name: str, image_uri: str, dataset_prefix: str = DEFAULT_DATASET_PREFIX,
                       model_prefix: str = DEFAULT_MODEL_PREFIX) -> List[PipelineParameter]:
    """The parameters of the fine-tuning pipeline with their stock defaults."""
    return [
        PipelineParameter(
            INPUT_DATASET_LOCATION, ParameterType.STRING,
            f's3://{bucket_name}/{dataset_prefix}',
            'S3 URI of the training dataset',
        ),
        PipelineParameter(
            OUTPUT_MODEL_LOCATION, ParameterType.STRING,
            f's3://{bucket_name}/{model_prefix}',
            'The S3 location where the model will be output to',
        ),
        PipelineParameter(
            TRAINING_IMAGE, ParameterType.STRING, image_uri,
            'The ECR docker image that will be used for training',
        ),
        PipelineParameter(
            TRAINING_INSTANCE_TYPE, ParameterType.STRING, 'ml.g5.8xlarge',
            'The instance type to use for training',
        ),
        PipelineParameter(
            TRAINING_VOLUME_SIZE, ParameterType.INTEGER, MIN_VOLUME_SIZE_GB,
            'The instance volume size to use for training',
        ),
        PipelineParameter(
            MAX_TRAINING_RUNTIME, ParameterType.INTEGER, 86400,  # 24 hours
            'The maximum time a training run is allowed to run',
        ),
    ]


# =============================================================================
# CONDITION
# =============================================================================

OPERATORS = {
    'Equals': operator.eq,
    'GreaterThan': operator.gt,
    'GreaterThanOrEqualTo': operator.ge,
    'LessThan': operator.lt,
    'LessThanOrEqualTo': operator.le,
}


@dataclass(frozen=True)
class Condition:
    """A single comparison of a parameter against a literal."""
    left: str
    operator: str
    right: Any

    def __post_init__(self):
        if self.operator not in OPERATORS:
            raise ValueError(f"Unsupported condition operator: {self.operator}")

    def evaluate(self, params: Mapping[str, Any]) -> bool:
        if self.left not in params:
            raise ParameterValidationError(f"Condition refers to unknown parameter {self.left}")
        return OPERATORS[self.operator](params[self.left], self.right)

    def to_definition(self) -> Dict[str, Any]:
        return {
            'Type': self.operator,
            'LeftValue': {'Get': f'Parameters.{self.left}'},
            'RightValue': self.right,
        }


# =============================================================================
# JOB SPECIFICATION AND DECISION
# =============================================================================

def _training_arguments(fields: Mapping[str, Any], role_arn: Any, channel_name: str,
                        instance_count: int) -> Dict[str, Any]:
    """CreateTrainingJob arguments from concrete values or parameter references."""
    return {
        'AlgorithmSpecification': {
            'TrainingImage': fields[TRAINING_IMAGE],
            'TrainingInputMode': 'File',
        },
        'InputDataConfig': [
            {
                'ChannelName': channel_name,
                'DataSource': {
                    'S3DataSource': {
                        'S3DataType': 'S3Prefix',
                        'S3Uri': fields[INPUT_DATASET_LOCATION],
                        'S3DataDistributionType': 'FullyReplicated',
                    }
                },
                'InputMode': 'File',
            }
        ],
        'OutputDataConfig': {
            'S3OutputPath': fields[OUTPUT_MODEL_LOCATION],
        },
        'ResourceConfig': {
            'InstanceCount': instance_count,
            'InstanceType': fields[TRAINING_INSTANCE_TYPE],
            'VolumeSizeInGB': fields[TRAINING_VOLUME_SIZE],
        },
        'RoleArn': role_arn,
        'StoppingCondition': {
            'MaxRuntimeInSeconds': fields[MAX_TRAINING_RUNTIME],
        },
    }


@dataclass(frozen=True)
class JobSpec:
    """Fully resolved training job for one pipeline run."""
    input_data_location: str
    output_location: str
    image_uri: str
    instance_type: str
    volume_size_gb: int
    max_runtime_seconds: int
    channel_name: str = 'train'
    instance_count: int = 1

    @classmethod
    def from_parameters(cls, params: Mapping[str, Any]) -> 'JobSpec':
        return cls(
            input_data_location=params[INPUT_DATASET_LOCATION],
            output_location=params[OUTPUT_MODEL_LOCATION],
            image_uri=params[TRAINING_IMAGE],
            instance_type=params[TRAINING_INSTANCE_TYPE],
            volume_size_gb=params[TRAINING_VOLUME_SIZE],
            max_runtime_seconds=params[MAX_TRAINING_RUNTIME],
        )

    def to_request(self, job_name: str, role_arn: str) -> Dict[str, Any]:
        """Keyword arguments for `sagemaker.create_training_job`."""
        fields = {
            INPUT_DATASET_LOCATION: self.input_data_location,
            OUTPUT_MODEL_LOCATION: self.output_location,
            TRAINING_IMAGE: self.image_uri,
            TRAINING_INSTANCE_TYPE: self.instance_type,
            TRAINING_VOLUME_SIZE: self.volume_size_gb,
            MAX_TRAINING_RUNTIME: self.max_runtime_seconds,
        }
        request = {'TrainingJobName': job_name}
        request.update(_training_arguments(fields, role_arn, self.channel_name, self.instance_count))
        return request


@dataclass(frozen=True)
class Train:
    job_spec: JobSpec


@dataclass(frozen=True)
class Fail:
    message: str


Decision = Union[Train, Fail]


# =============================================================================
# RUN OUTCOME
# =============================================================================

class RunStatus(str, Enum):
    EXECUTING = 'Executing'
    STOPPING = 'Stopping'
    STOPPED = 'Stopped'
    FAILED = 'Failed'
    SUCCEEDED = 'Succeeded'

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.STOPPED, RunStatus.FAILED, RunStatus.SUCCEEDED)


@dataclass(frozen=True)
class RunOutcome:
    run_arn: str
    status: RunStatus
    failure_reason: Optional[str] = None


# =============================================================================
# PIPELINE
# =============================================================================

@dataclass
class TrainingPipeline:
    """Validate inputs, then train a model or fail with a message."""
    name: str
    parameters: List[PipelineParameter]
    condition: Condition = field(
        default_factory=lambda: Condition(TRAINING_VOLUME_SIZE, 'GreaterThanOrEqualTo', MIN_VOLUME_SIZE_GB)
    )
    fail_message: str = VALIDATION_FAILED_MESSAGE
    description: str = (
        'A SageMaker pipeline that trains Stable Diffusion XL with a custom dataset '
        'and outputs a fine-tuned SDXL model'
    )

    def bind(self, overrides: Optional[Mapping[str, Any]] = None) -> Mapping[str, Any]:
        return bind_parameters(self.parameters, overrides)

    def evaluate(self, overrides: Optional[Mapping[str, Any]] = None) -> Decision:
        """Decide the branch a run with these overrides takes."""
        params = self.bind(overrides)
        if self.condition.evaluate(params):
            return Train(JobSpec.from_parameters(params))
        return Fail(self.fail_message)

    def execution_parameters(self, overrides: Optional[Mapping[str, Any]] = None) -> List[Dict[str, str]]:
        """`PipelineParameters` for StartPipelineExecution; values are sent as strings."""
        params = self.bind(overrides)
        return [{'Name': name, 'Value': str(params[name])} for name in sorted(overrides or {})]

    def to_definition(self, role_arn: Any) -> Dict[str, Any]:
        """The pipeline definition document."""
        references = {p.name: p.reference for p in self.parameters}
        return {
            'Version': DEFINITION_VERSION,
            'Parameters': [p.to_definition() for p in self.parameters],
            'Steps': [
                {
                    'Name': 'InputsValid',
                    'DisplayName': 'Inputs valid',
                    'Description': 'Validate the input values before continuing',
                    'Type': 'Condition',
                    'Arguments': {
                        'Conditions': [self.condition.to_definition()],
                        'IfSteps': [
                            {
                                'Name': 'TrainNewFineTunedModel',
                                'DisplayName': 'Train new fine-tuned model',
                                'Description': 'Trains a new model with a custom dataset',
                                'Type': 'Training',
                                'Arguments': _training_arguments(references, role_arn, 'train', 1),
                            }
                        ],
                        'ElseSteps': [
                            {
                                'Name': 'Fail',
                                'DisplayName': 'Fail',
                                'Description': 'Failed validation of input parameters',
                                'Type': 'Fail',
                                'Arguments': {'ErrorMessage': self.fail_message},
                            }
                        ],
                    },
                }
            ],
        }

    def to_json(self, role_arn: str) -> str:
        return json.dumps(self.to_definition(role_arn))


def build_training_pipeline(name: str, bucket_name: str, image_uri: str, **prefixes) -> TrainingPipeline:
    return TrainingPipeline(name=name, parameters=default_parameters(bucket_name, image_uri, **prefixes))
