"""Desired-state document loading with validation.

SECURITY: File size is checked before reading. Input validation is
performed at the boundary; nothing downstream re-validates the document.

Two layouts are accepted:

Flat:
```yaml
cluster:
  kind: Cluster
  fields: {name: prod, location: westeurope, resource_group: rg-prod}
pool:
  kind: NodePool
  fields: {name: system, cluster_id: "${cluster.id}", node_count: 3}
```

Kubernetes-style wrapper:
```yaml
apiVersion: converge/v1
kind: DesiredState
spec:
  resources:
    cluster: {...}
```
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_DOCUMENT_FILE_SIZE_BYTES
from .models import DesiredStateDocument

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when the desired-state document cannot be loaded or validated."""

    pass


def parse_document(raw_data: Any, source: str = "<document>") -> DesiredStateDocument:
    """Validate already-parsed document data.

    Raises:
        SpecLoadError: If the data is not a valid desired-state document.
    """
    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Desired state must be a mapping: {source}")

    # Kubernetes-style format: apiVersion, kind, metadata, spec
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
        resources = spec_data.get("resources") or {}
    else:
        resources = raw_data

    if not isinstance(resources, dict):
        raise SpecLoadError(f"Resources must be a mapping of logical name to declaration: {source}")

    try:
        return DesiredStateDocument.from_mapping(resources)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"] if x != "resources")
            errors.append(f"  - {loc}: {error['msg']}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e


def load_document(path: Path) -> DesiredStateDocument:
    """Load and validate the desired-state document from YAML or JSON.

    Args:
        path: Path to the document. ``.json`` files are parsed as JSON,
            everything else as YAML.

    Returns:
        Validated document.

    Raises:
        SpecLoadError: If the file is missing, too large, unparseable or invalid.
    """
    if not path.exists():
        raise SpecLoadError(f"Desired state file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat desired state file {path}: {e}") from e

    if file_size > MAX_DOCUMENT_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Desired state file exceeds maximum size of {MAX_DOCUMENT_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read desired state file {path}: {e}") from e

    if path.suffix.lower() == ".json":
        try:
            raw_data = json.loads(content)
        except json.JSONDecodeError as e:
            raise SpecLoadError(f"Invalid JSON in {path}: {e}") from e
    else:
        try:
            raw_data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    document = parse_document(raw_data, str(path))
    logger.info(
        "Loaded desired state from %s",
        path,
        extra={"resources": len(document.resources), "fingerprint": document.fingerprint()},
    )
    return document
