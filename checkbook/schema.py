"""JSON Schema validation for CHECKBOOK documents.

Provides:
- A referencing registry over every schema shipped in checkbook/schemas
- Cached validators keyed by schema name
- Path-qualified error messages
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, List

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from checkbook.core import PACKAGE_ROOT, load_json

SCHEMAS_DIR = PACKAGE_ROOT / "schemas"
SCHEMA_BASE_URI = "https://schemas.momentum.inc/checkbook/"

REDEMPTION_REQUEST = "redemption-request"
LEDGER_SNAPSHOT = "ledger-snapshot"


class SchemaError(Exception):
    """A document failed schema validation."""

    def __init__(self, schema_name: str, errors: List[str]):
        self.schema_name = schema_name
        self.errors = errors
        super().__init__(f"{schema_name}: " + "; ".join(errors))


def schema_path(name: str) -> Path:
    path = SCHEMAS_DIR / f"{name}.schema.json"
    if not path.is_file():
        raise FileNotFoundError(f"Unknown schema: {name}")
    return path


@lru_cache(maxsize=1)
def _schema_registry() -> Registry:
    """Registry of all CHECKBOOK schemas, enabling $ref resolution between them."""
    resources = []
    for path in sorted(SCHEMAS_DIR.glob("*.schema.json")):
        schema = load_json(path)
        if not isinstance(schema, dict):
            continue
        schema_id = schema.get("$id") or f"{SCHEMA_BASE_URI}{path.name}"
        resources.append((schema_id, Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


@lru_cache(maxsize=None)
def schema_validator(name: str) -> Draft202012Validator:
    """Create a validator for a named schema."""
    schema = load_json(schema_path(name))
    return Draft202012Validator(schema, registry=_schema_registry())


def validate_against_schema(obj: Any, name: str) -> List[str]:
    """Validate an object against a named schema.

    Returns:
        List of validation error messages (empty if valid)
    """
    validator = schema_validator(name)
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(validator.iter_errors(obj), key=lambda e: e.json_path)
    ]


def require_valid(obj: Any, name: str) -> Any:
    """Return obj unchanged, or raise SchemaError listing every violation."""
    errors = validate_against_schema(obj, name)
    if errors:
        raise SchemaError(name, errors)
    return obj
