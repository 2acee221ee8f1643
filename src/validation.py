"""
Spec Validation - Schema checks and the resource Validator.

The Validator is a pure predicate over (candidate spec, previous spec,
deletion flag). The admission chain and the reconciler both call it, so a
spec rejected at admission is also rejected inside the loop.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

from models import ResourceKind

logger = logging.getLogger(__name__)

# A rule receives (candidate, previous) and returns an error message or None
ValidationRule = Callable[[Dict[str, Any], Optional[Dict[str, Any]]], Optional[str]]


@dataclass(frozen=True)
class ValidationResult:
    """Result of a validation operation."""

    is_valid: bool
    error_message: Optional[str] = None


def validate_openapi_schema(schema: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Check that a schema is itself a valid JSON Schema (Draft 7).

    Args:
        schema: The schema to check

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        Draft7Validator.check_schema(schema)
        return True, None
    except Exception as e:
        return False, f"Invalid schema: {str(e)}"


def validate_spec_against_schema(
    spec: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a resource spec against a JSON Schema.

    Every violation is reported as "path: message", joined with "; ".

    Args:
        spec: The resource spec to validate
        schema: The JSON Schema to validate against

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        validator = Draft7Validator(
            schema, format_checker=Draft7Validator.FORMAT_CHECKER
        )
        errors = sorted(
            validator.iter_errors(spec),
            key=lambda e: [str(p) for p in e.absolute_path],
        )

        if not errors:
            return True, None

        error_messages = []
        for error in errors:
            path = ".".join(str(p) for p in error.absolute_path) or "(root)"
            error_messages.append(f"{path}: {error.message}")

        return False, "; ".join(error_messages)

    except ValidationError as e:
        return False, f"Validation error: {str(e)}"
    except Exception as e:
        logger.error(f"Unexpected error during validation: {e}")
        return False, f"Validation failed: {str(e)}"


class Validator:
    """
    Accepts or rejects a candidate spec.

    Args:
        schema: JSON Schema the spec must satisfy (empty means anything goes)
        immutable_fields: Top-level fields that may not change once set
        deletion_protection_field: Field that, when true, blocks deletion
        allow_item_removal: False for kinds that keep no record of applied
            items; an update may then not drop a top-level item, since
            nothing would be left to clean it up
        rules: Extra checks run after the built-in ones
    """

    def __init__(
        self,
        schema: Optional[Dict[str, Any]] = None,
        immutable_fields: Iterable[str] = (),
        deletion_protection_field: Optional[str] = None,
        rules: Iterable[ValidationRule] = (),
        allow_item_removal: bool = True,
    ):
        self.schema = schema or {}
        self.allow_item_removal = allow_item_removal
        self.immutable_fields = tuple(immutable_fields)
        self.deletion_protection_field = deletion_protection_field
        self.rules = tuple(rules)

        if self.schema:
            is_valid, error = validate_openapi_schema(self.schema)
            if not is_valid:
                raise ValueError(error)

    @classmethod
    def for_kind(
        cls, kind: ResourceKind, rules: Iterable[ValidationRule] = ()
    ) -> "Validator":
        return cls(
            schema=kind.schema,
            immutable_fields=kind.immutable_fields,
            deletion_protection_field=kind.deletion_protection_field,
            rules=rules,
            allow_item_removal=kind.status_enabled,
        )

    def validate(
        self,
        candidate: Dict[str, Any],
        previous: Optional[Dict[str, Any]] = None,
        deleting: bool = False,
    ) -> ValidationResult:
        """
        Validate a candidate spec.

        Args:
            candidate: The spec being admitted or reconciled
            previous: The spec it replaces, if any
            deleting: True if the resource is being deleted

        Returns:
            ValidationResult; error_message is set when rejected.
        """
        if deleting:
            return self._validate_deletion(candidate, previous)

        if self.schema:
            is_valid, error = validate_spec_against_schema(candidate, self.schema)
            if not is_valid:
                return ValidationResult(False, f"Spec validation failed: {error}")

        if previous is not None:
            for field_name in self.immutable_fields:
                if field_name not in previous:
                    continue
                if candidate.get(field_name) != previous[field_name]:
                    return ValidationResult(
                        False, f"Field '{field_name}' is immutable"
                    )

            if not self.allow_item_removal:
                removed = sorted(set(previous) - set(candidate))
                if removed:
                    return ValidationResult(
                        False,
                        f"Items cannot be removed from this kind: "
                        f"{', '.join(removed)}; delete the resource instead",
                    )

        for rule in self.rules:
            error = rule(candidate, previous)
            if error:
                return ValidationResult(False, error)

        return ValidationResult(True)

    def _validate_deletion(
        self, candidate: Dict[str, Any], previous: Optional[Dict[str, Any]]
    ) -> ValidationResult:
        field_name = self.deletion_protection_field
        if not field_name:
            return ValidationResult(True)

        for spec in (previous, candidate):
            if spec and spec.get(field_name) is True:
                return ValidationResult(
                    False,
                    f"Deletion is blocked while '{field_name}' is enabled",
                )
        return ValidationResult(True)
