"""Deployment file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_DEPLOYMENT_FILE_SIZE_BYTES
from .models import DeploymentSpec

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when deployment file loading or validation fails."""

    pass


def parse_spec(raw_data: Any, source: str = "<deployment>") -> DeploymentSpec:
    """Validate already-parsed YAML data.

    Raises:
        SpecLoadError: If the data is not a mapping or fails validation.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Deployment file must contain a YAML mapping: {source}")

    # Support both flat format and a Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
    else:
        spec_data = raw_data

    try:
        return DeploymentSpec.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc or '<root>'}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e


def load_spec(path: Path) -> DeploymentSpec:
    """Load and validate a deployment file.

    Args:
        path: Path to the deployment YAML.

    Returns:
        Validated DeploymentSpec.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    if not path.exists():
        raise SpecLoadError(f"Deployment file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat deployment file {path}: {e}") from e

    if file_size > MAX_DEPLOYMENT_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Deployment file exceeds maximum size of {MAX_DEPLOYMENT_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read deployment file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    spec = parse_spec(raw_data, str(path))
    logger.info(
        "Loaded deployment file",
        extra={"path": str(path), "project": spec.project_id, "region": spec.region},
    )
    return spec
