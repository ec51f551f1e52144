"""
finetune - SDXL fine-tuning pipeline on SageMaker

Pipeline definition and evaluation, the training container entry point,
and the launcher used to deploy and run the pipeline.
"""

from .pipeline import (
    Condition,
    Fail,
    JobSpec,
    ParameterType,
    ParameterValidationError,
    PipelineParameter,
    RunOutcome,
    RunStatus,
    Train,
    TrainingPipeline,
    bind_parameters,
    build_training_pipeline,
    default_parameters,
)

__all__ = [
    # Parameters
    'ParameterType',
    'PipelineParameter',
    'bind_parameters',
    'default_parameters',
    'ParameterValidationError',
    # Decision
    'Condition',
    'JobSpec',
    'Train',
    'Fail',
    'TrainingPipeline',
    'build_training_pipeline',
    # Run status
    'RunStatus',
    'RunOutcome',
]

__version__ = '0.1.0'
