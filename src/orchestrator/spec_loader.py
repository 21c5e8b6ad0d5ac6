"""Account request file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from .config import MAX_REQUEST_FILE_SIZE_BYTES
from .models import AccountRequestSpec

logger = logging.getLogger(__name__)

REQUEST_FILE_SUFFIXES = (".yaml", ".yml", ".json")
REQUEST_KIND = "AccountRequest"


class SpecLoadError(Exception):
    """Raised when request loading or schema validation fails."""

    pass


def parse_request(raw_data: Any, source: str = "<input>") -> AccountRequestSpec:
    """Validate already-parsed request data.

    Supports both a flat body and a Kubernetes-style wrapper
    (apiVersion/kind/metadata/spec).

    Raises:
        SpecLoadError: If the data is not a valid account request.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Request must be a mapping: {source}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        kind = raw_data.get("kind", REQUEST_KIND)
        if kind != REQUEST_KIND:
            raise SpecLoadError(f"Unsupported kind '{kind}' in {source}, expected {REQUEST_KIND}")
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
    else:
        spec_data = raw_data

    try:
        return AccountRequestSpec.model_validate(spec_data)
    except PydanticValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e


def load_request(path: Path) -> AccountRequestSpec:
    """Load and validate an account request file.

    Args:
        path: YAML or JSON request file.

    Returns:
        Validated request spec.

    Raises:
        SpecLoadError: If the file cannot be read or fails validation.
    """
    if not path.exists():
        raise SpecLoadError(f"Request file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat request file {path}: {e}") from e

    if file_size > MAX_REQUEST_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Request file exceeds maximum size of {MAX_REQUEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read request file {path}: {e}") from e

    # JSON is a subset of YAML, so one parser covers both formats
    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    spec = parse_request(raw_data, source=str(path))
    logger.info(
        "Loaded account request from %s",
        path,
        extra={"account_email": spec.control_tower_parameters.account_email},
    )
    return spec


def load_requests_dir(requests_dir: Path) -> tuple[dict[Path, AccountRequestSpec], dict[Path, str]]:
    """Load every request file in a directory.

    A broken file does not prevent the others from loading.

    Returns:
        Tuple of (loaded specs by path, error messages by path).
    """
    loaded: dict[Path, AccountRequestSpec] = {}
    failed: dict[Path, str] = {}

    for path in sorted(requests_dir.iterdir()):
        if not path.is_file() or path.suffix.lower() not in REQUEST_FILE_SUFFIXES:
            continue
        try:
            loaded[path] = load_request(path)
        except SpecLoadError as e:
            logger.error("Failed to load request file", extra={"path": str(path), "error": str(e)})
            failed[path] = str(e)

    return loaded, failed
