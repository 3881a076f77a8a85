"""Load harness configuration from validation.yaml files."""

import asyncio
import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from example_validator.models.config import ValidationConfig

log = logging.getLogger(__name__)

CONFIG_FILE_NAME = "validation.yaml"


async def load_validation_config(project_root: Path) -> ValidationConfig:
    """Load the harness configuration for a project.

    Args:
        project_root: Root directory of the example project

    Returns:
        Parsed configuration, or the defaults when the project has no
        validation.yaml (or an empty one)

    Raises:
        ValueError: If the file is not valid YAML or fails schema validation

    """
    config_file = project_root / CONFIG_FILE_NAME

    if not config_file.is_file():
        log.debug("No %s in %s, using defaults", CONFIG_FILE_NAME, project_root)
        return ValidationConfig()

    content = await asyncio.to_thread(config_file.read_text)

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {config_file}: {e}") from e

    if data is None:
        return ValidationConfig()

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid validation config schema in {config_file}: "
            "top level must be a mapping"
        )

    try:
        config = ValidationConfig.model_validate(data)
    except ValidationError as e:
        raise ValueError(
            f"Invalid validation config schema in {config_file}: {e}"
        ) from e

    log.info("Loaded configuration from %s", config_file)
    return config
