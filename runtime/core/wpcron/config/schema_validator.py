"""JSON Schema validation for runner configuration documents.

Schemas ship inside the package under ``wpcron/schemas`` and are expressed as
YAML but are valid JSON Schema Draft 2020-12 documents.

Validation is strict:
- Unknown kinds are rejected.
- Unknown keys in a config section are rejected by the schemas themselves
  (``additionalProperties: false``), so a typo cannot silently fall back to a
  default.
- Errors are surfaced with stable JSON Pointer-like paths.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

import yaml
from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from wpcron.errors import RunnerConfigError, SchemaValidationError, SchemaViolation

BUNDLED_SCHEMAS_DIR = Path(__file__).resolve().parent.parent / "schemas"

_KIND_TO_SCHEMA_FILENAME: dict[str, str] = {
    "RunnerConfig": "runner_config.schema.yaml",
}


def _load_yaml_object(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise RunnerConfigError(f"Failed to parse YAML: {path}: {e}") from e
    if not isinstance(raw, dict):
        raise RunnerConfigError(f"Expected YAML object at root: {path}")
    return raw


def _escape_json_pointer_token(token: str) -> str:
    # RFC 6901 escaping.
    return token.replace("~", "~0").replace("/", "~1")


def _json_pointer(path: Iterable[Any]) -> str:
    parts: list[str] = []
    for p in path:
        if isinstance(p, int):
            parts.append(str(p))
        else:
            parts.append(_escape_json_pointer_token(str(p)))
    return "/" + "/".join(parts) if parts else "/"


@dataclass(frozen=True)
class SchemaBundle:
    kind: str
    schema: dict[str, Any]
    source_path: Path


class SchemaValidator:
    """Loads config schemas and validates documents by kind."""

    def __init__(self, bundles: dict[str, SchemaBundle]):
        self._bundles = dict(bundles)
        self._validators: dict[str, Draft202012Validator] = {}

    @classmethod
    def load_from_dir(cls, schemas_dir: Path) -> "SchemaValidator":
        schemas_dir = schemas_dir.resolve()
        if not schemas_dir.exists():
            raise RunnerConfigError(f"Schemas directory not found: {schemas_dir}")

        bundles: dict[str, SchemaBundle] = {}
        for kind, filename in _KIND_TO_SCHEMA_FILENAME.items():
            path = schemas_dir / filename
            if not path.exists():
                raise RunnerConfigError(f"Missing required schema file for {kind}: {path}")
            bundles[kind] = SchemaBundle(kind=kind, schema=_load_yaml_object(path), source_path=path)

        return cls(bundles)

    @classmethod
    def load_bundled(cls) -> "SchemaValidator":
        return cls.load_from_dir(BUNDLED_SCHEMAS_DIR)

    def validate(self, kind: str, document: dict[str, Any]) -> None:
        validator = self._get_or_build_validator(kind)

        violations = [
            SchemaViolation(path=_json_pointer(err.absolute_path), message=err.message)
            for err in validator.iter_errors(document)
        ]
        if violations:
            # Stable order: makes errors easier to scan.
            violations.sort(key=lambda v: (v.path, v.message))
            raise SchemaValidationError(kind=kind, violations=violations)

    def _require_bundle(self, kind: str) -> SchemaBundle:
        if kind not in self._bundles:
            raise RunnerConfigError(f"Unknown schema kind: {kind}")
        return self._bundles[kind]

    def _get_or_build_validator(self, kind: str) -> Draft202012Validator:
        if kind in self._validators:
            return self._validators[kind]

        bundle = self._require_bundle(kind)
        try:
            Draft202012Validator.check_schema(bundle.schema)
        except SchemaError as e:
            raise RunnerConfigError(f"Invalid schema for {kind} in {bundle.source_path}: {e.message}") from e

        validator = Draft202012Validator(bundle.schema)
        self._validators[kind] = validator
        return validator
