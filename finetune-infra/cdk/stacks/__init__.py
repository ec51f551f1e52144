from .storage_stack import StorageStack
from .container_build_stack import ContainerBuildStack
from .training_pipeline_stack import TrainingPipelineStack

__all__ = [
    'StorageStack',
    'ContainerBuildStack',
    'TrainingPipelineStack',
]
