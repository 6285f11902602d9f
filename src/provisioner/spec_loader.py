"""Spec and template file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES, MAX_TEMPLATE_FILE_SIZE_BYTES
from .models import DeploymentSpec

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


def _read_bounded(path: Path, max_bytes: int, what: str) -> str:
    if not path.exists():
        raise SpecLoadError(f"{what} not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat {what.lower()} {path}: {e}") from e

    if file_size > max_bytes:
        raise SpecLoadError(f"{what} exceeds maximum size of {max_bytes} bytes: {path}")

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read {what.lower()} {path}: {e}") from e


def load_spec(spec_path: Path | None) -> DeploymentSpec:
    """Load and validate a deployment spec from YAML.

    Args:
        spec_path: Path to the spec file. None yields the default layout.

    Returns:
        Validated DeploymentSpec.

    Raises:
        SpecLoadError: If the spec cannot be loaded or fails validation.
    """
    if spec_path is None:
        logger.info("No spec file given, using default deployment layout")
        return DeploymentSpec()

    content = _read_bounded(spec_path, MAX_SPEC_FILE_SIZE_BYTES, "Spec file")

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_path}")

    # Support both flat format and a Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {spec_path}")
    else:
        spec_data = raw_data

    try:
        spec = DeploymentSpec.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {spec_path}:\n{error_list}") from e

    logger.info("Loaded deployment spec from %s", spec_path)
    return spec


def load_template(templates_dir: Path, name: str) -> dict[str, Any]:
    """Load a compiled ARM template JSON.

    The template is opaque: only its top-level shape is checked. Parameters
    go in and typed outputs come out, nothing else is interpreted.

    Args:
        templates_dir: Directory containing compiled ARM JSON templates.
        name: Template file stem (e.g., "cluster").

    Returns:
        Parsed ARM template as a dictionary.

    Raises:
        SpecLoadError: If the template cannot be loaded.
    """
    template_path = templates_dir / f"{name}.json"

    # SECURITY: the stem must not escape the templates directory
    if template_path.resolve().parent != templates_dir.resolve():
        raise SpecLoadError(f"Template name escapes templates directory: {name}")

    content = _read_bounded(template_path, MAX_TEMPLATE_FILE_SIZE_BYTES, "Template file")

    try:
        template = json.loads(content)
    except json.JSONDecodeError as e:
        raise SpecLoadError(f"Invalid JSON in {template_path}: {e}") from e

    if not isinstance(template, dict):
        raise SpecLoadError(f"Template must be a JSON object: {template_path}")

    if "resources" not in template:
        raise SpecLoadError(f"Template has no 'resources' section: {template_path}")

    logger.info("Loaded template '%s' from %s", name, template_path)
    return template
