"""Derive the desired external table from a declaration."""

from typing import Optional

from crd import TABLE_SPEC_SCHEMA
from errors import ConfigError
from models import Declaration, DesiredState
from validation import validate_spec_against_schema, validate_table_identifiers


def _value(raw) -> Optional[str]:
    if not isinstance(raw, str):
        return None
    raw = raw.strip()
    return raw or None


def extract_desired_state(
    declaration: Declaration, default_project: Optional[str] = None
) -> DesiredState:
    """
    Apply defaulting rules to a declaration's spec.

    tableName falls back to the declaration name, project to the
    process-wide default. dataset has no default.

    Args:
        declaration: The declaration to read
        default_project: Project used when the spec does not name one

    Returns:
        The defaulted DesiredState

    Raises:
        ConfigError: If the spec is invalid or a required value is unset
    """
    valid, error = validate_spec_against_schema(
        declaration.raw_spec, TABLE_SPEC_SCHEMA
    )
    # Missing dataset gets its own message below.
    if not valid and _value(declaration.raw_spec.get("dataset")) is not None:
        raise ConfigError(f"invalid spec: {error}")

    spec = declaration.spec
    table_name = _value(spec.table_name) or declaration.name

    project = _value(spec.project) or _value(default_project)
    if project is None:
        raise ConfigError("project unset")

    dataset = _value(spec.dataset)
    if dataset is None:
        raise ConfigError("dataset unset")

    if not valid:
        raise ConfigError(f"invalid spec: {error}")

    valid, error = validate_table_identifiers(project, dataset, table_name)
    if not valid:
        raise ConfigError(error)

    return DesiredState(project=project, dataset=dataset, table_name=table_name)
