#!/usr/bin/env python3
"""
================================================================================
SDXL FINE-TUNING CONTAINER ENTRY POINT
================================================================================

Started by SageMaker inside the training container with no arguments.

- Checks that the `train` channel is not empty
- Runs the Kohya SS trainer with the channel's config file
- Exit 0 on success; on any failure writes the message and traceback to
  the `failure` file SageMaker reports as the job's failure reason, and
  exits 255

Environment:
    SM_INPUT_DIR: Input root (default /opt/ml/input)
    SM_OUTPUT_DIR: Output root (default /opt/ml/output)
    TRAINING_COMMAND: Trainer command line; the config path is appended
    TRAINING_CONFIG_FILE: Config file name inside the channel

The channel is read from <SM_INPUT_DIR>/data/train/, the layout SageMaker mounts.

================================================================================
"""

import logging
import os
import shlex
import subprocess
import sys
import traceback
from pathlib import Path
from typing import List, Optional, Sequence

from finetune import config

logger = logging.getLogger(__name__)

# =============================================================================
# CONFIGURATION
# =============================================================================

DEFAULT_INPUT_ROOT = Path('/opt/ml/input')
DEFAULT_OUTPUT_ROOT = Path('/opt/ml/output')

CHANNEL_NAME = 'train'
CONFIG_FILE_NAME = 'kohya-sdxl-config.toml'

DEFAULT_TRAINING_COMMAND = (
    'accelerate launch --num_cpu_threads_per_process 1 '
    'sdxl_train_network.py --config_file'
)

FAILURE_EXIT_CODE = 255


class MissingInputError(RuntimeError):
    """The input channel is empty."""


# =============================================================================
# TRAINING
# =============================================================================

def configure_logging(level: str = None):
    level = logging.getLevelName(str(level or config.LOG_LEVEL).upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )


def channel_dir(input_root: Path, channel: str = CHANNEL_NAME) -> Path:
    return input_root / 'data' / channel


def list_input_files(channel_path: Path) -> List[Path]:
    """Entries (files or dataset folders) in the channel; raises if there are none."""
    entries = sorted(channel_path.iterdir()) if channel_path.is_dir() else []
    if not entries:
        raise MissingInputError(
            f"No input files found in {channel_path}. Check that the input data channel is "
            f"named '{channel_path.name}', that the S3 URI of the training dataset is correct, "
            f"and that the training role has permission to read it."
        )
    return entries


def training_command(config_path: Path, command: Optional[str] = None) -> List[str]:
    command = command or os.environ.get('TRAINING_COMMAND', DEFAULT_TRAINING_COMMAND)
    return shlex.split(command) + [str(config_path)]


def train(input_root: Path, command: Optional[Sequence[str]] = None,
          config_name: str = None) -> None:
    """Run one training attempt. Raises on any failure."""
    channel_path = channel_dir(input_root)
    entries = list_input_files(channel_path)
    logger.info(f"Found {len(entries)} entries in {channel_path}")

    config_path = channel_path / (config_name or os.environ.get('TRAINING_CONFIG_FILE', CONFIG_FILE_NAME))
    args = list(command) + [str(config_path)] if command else training_command(config_path)

    logger.info(f"Running: {' '.join(args)}")
    subprocess.check_call(args)
    logger.info("Training completed")


def format_failure(exc: BaseException) -> str:
    return f"Exception during training: {exc}\n" + ''.join(
        traceback.format_exception(type(exc), exc, exc.__traceback__)
    )


def write_failure(output_root: Path, text: str):
    """Write the failure text to `<output_root>/failure`."""
    output_root.mkdir(parents=True, exist_ok=True)
    with open(output_root / 'failure', 'w') as f:
        f.write(text)


def run(input_root: Path, output_root: Path, command: Optional[Sequence[str]] = None) -> int:
    """Supervise one training run and return the process exit code."""
    try:
        configure_logging()
        train(input_root, command=command)
    except Exception as e:
        text = format_failure(e)
        try:
            write_failure(output_root, text)
        except OSError:
            logger.exception(f"Could not write failure file under {output_root}")
        print(text, file=sys.stderr)
        return FAILURE_EXIT_CODE
    return 0


# =============================================================================
# ENTRYPOINT
# =============================================================================

def main():
    input_root = Path(os.environ.get('SM_INPUT_DIR', DEFAULT_INPUT_ROOT))
    output_root = Path(os.environ.get('SM_OUTPUT_DIR', DEFAULT_OUTPUT_ROOT))
    sys.exit(run(input_root, output_root))


if __name__ == '__main__':
    main()
