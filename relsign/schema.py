"""JSON Schema validation for relsign input documents.

Schemas live in ``relsign/schemas``. Validators are cached per schema file.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, List

from jsonschema import Draft202012Validator

from relsign.core import load_json

SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"
SIGN_PLAN_SCHEMA = SCHEMAS_DIR / "sign-plan.schema.json"


@lru_cache(maxsize=8)
def schema_validator(schema_path: Path) -> Draft202012Validator:
    """Create a validator for a schema file.

    Args:
        schema_path: Path to the JSON Schema file

    Returns:
        A configured Draft202012Validator
    """
    schema = load_json(schema_path)
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def validate_against_schema(obj: Any, schema_path: Path) -> List[str]:
    """Validate an object against a schema.

    Returns:
        List of validation error messages (empty if valid)
    """
    validator = schema_validator(schema_path)
    errors = sorted(validator.iter_errors(obj), key=lambda e: list(e.absolute_path))
    return [f"{error.json_path}: {error.message}" for error in errors]
