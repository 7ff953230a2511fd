"""
Schema Validation - OpenAPI v3 schema validation utilities.

Validates declaration specs against the BigQueryTable schema and checks
BigQuery identifiers before they reach the backend.
"""

import re
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

# Project IDs may carry a legacy domain prefix ("example.com:my-project").
_PROJECT_RE = re.compile(r"(?:[a-z0-9.\-]+:)?[a-z0-9][a-z0-9\-]{0,62}")
_DATASET_RE = re.compile(r"[A-Za-z0-9_]{1,1024}")
_TABLE_RE = re.compile(r"[\w\- ]{1,1024}")


def validate_spec_against_schema(
    spec: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a resource spec against an OpenAPI v3 schema.

    Args:
        spec: The resource specification to validate
        schema: The OpenAPI v3 JSON Schema to validate against

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        validator = Draft7Validator(schema)
        errors = sorted(validator.iter_errors(spec), key=lambda e: list(e.path))

        if not errors:
            return True, None

        # Collect all validation errors
        error_messages = []
        for error in errors:
            path = ".".join(str(p) for p in error.absolute_path) or "(root)"
            error_messages.append(f"{path}: {error.message}")

        return False, "; ".join(error_messages)

    except ValidationError as e:
        return False, f"Validation error: {str(e)}"


def validate_table_identifiers(
    project: str, dataset: str, table_name: str
) -> Tuple[bool, Optional[str]]:
    """
    Check identifiers against BigQuery naming rules.

    Args:
        project: GCP project ID
        dataset: BigQuery dataset ID
        table_name: BigQuery table ID

    Returns:
        Tuple of (is_valid, error_message)
    """
    problems = []
    if not _PROJECT_RE.fullmatch(project):
        problems.append(f"invalid project id {project!r}")
    if not _DATASET_RE.fullmatch(dataset):
        problems.append(f"invalid dataset id {dataset!r}")
    if not _TABLE_RE.fullmatch(table_name):
        problems.append(f"invalid table name {table_name!r}")

    if problems:
        return False, "; ".join(problems)
    return True, None
