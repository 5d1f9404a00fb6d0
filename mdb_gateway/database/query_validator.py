"""
Operator validation for MDB_GATEWAY.

Every decoded request payload (filters, updates, pipelines, documents) is
walked before any database work happens. Operator keys must be on an
allowlist, and payload shape is bounded to keep worst-case work small.

Security Features:
- Rejects any "$"-operator that is not explicitly allowed
- Blocks $where, $eval, $function and $accumulator even if configured
- Bounds nesting depth, keys per object and key length
- Limits regex length and complexity to prevent ReDoS attacks
- Bounds aggregation pipeline stages and sort fields
"""

import logging
import re
from collections.abc import Iterable, Mapping
from typing import Any

from ..constants import (
    ALLOWED_AGGREGATION_OPERATORS,
    ALLOWED_QUERY_OPERATORS,
    ALLOWED_UPDATE_OPERATORS,
    DANGEROUS_OPERATORS,
    MAX_KEY_LENGTH,
    MAX_OBJECT_KEYS,
    MAX_PIPELINE_STAGES,
    MAX_QUERY_DEPTH,
    MAX_REGEX_COMPLEXITY,
    MAX_REGEX_LENGTH,
    MAX_SORT_FIELDS,
    OPERATOR_PREFIX,
)
from ..exceptions import ConfigurationError, QueryValidationError

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_OPERATORS: frozenset[str] = frozenset(
    ALLOWED_QUERY_OPERATORS + ALLOWED_UPDATE_OPERATORS + ALLOWED_AGGREGATION_OPERATORS
)


class OperatorValidator:
    """
    Validates request payloads against the operator allowlist and shape limits.

    The validator is pure: it never touches the database and holds no
    per-request state, so one instance is shared by all requests.
    """

    def __init__(
        self,
        max_depth: int = MAX_QUERY_DEPTH,
        max_keys: int = MAX_OBJECT_KEYS,
        max_key_length: int = MAX_KEY_LENGTH,
        max_pipeline_stages: int = MAX_PIPELINE_STAGES,
        max_regex_length: int = MAX_REGEX_LENGTH,
        max_regex_complexity: int = MAX_REGEX_COMPLEXITY,
        max_sort_fields: int = MAX_SORT_FIELDS,
        extra_allowed_operators: Iterable[str] | None = None,
    ):
        """
        Initialize the operator validator.

        Args:
            max_depth: Maximum nesting depth (the top-level object is depth 0)
            max_keys: Maximum number of keys in any single object
            max_key_length: Maximum length of any key
            max_pipeline_stages: Maximum stages in aggregation pipelines
            max_regex_length: Maximum length for regex patterns
            max_regex_complexity: Maximum complexity score for regex patterns
            max_sort_fields: Maximum number of fields in a sort specification
            extra_allowed_operators: Operators allowed on top of the defaults

        Raises:
            ConfigurationError: If an extra operator is one of the dangerous ones
        """
        self.max_depth = max_depth
        self.max_keys = max_keys
        self.max_key_length = max_key_length
        self.max_pipeline_stages = max_pipeline_stages
        self.max_regex_length = max_regex_length
        self.max_regex_complexity = max_regex_complexity
        self.max_sort_fields = max_sort_fields

        extra = set(extra_allowed_operators or ())
        blocked = extra & set(DANGEROUS_OPERATORS)
        if blocked:
            raise ConfigurationError(
                f"Operators can never be allowed: {sorted(blocked)}",
                config_key="extra_allowed_operators",
                config_value=sorted(blocked),
            )
        self.allowed_operators = DEFAULT_ALLOWED_OPERATORS | extra

    def is_allowed(self, operator: str) -> bool:
        """Return True if ``operator`` may appear as a key."""
        return operator in self.allowed_operators

    def validate(
        self,
        body: Any,
        max_depth: int | None = None,
        max_keys: int | None = None,
        query_type: str = "body",
    ) -> None:
        """
        Validate a parsed request payload.

        Args:
            body: Payload to walk (dicts, lists and scalars)
            max_depth: Override for the configured maximum depth
            max_keys: Override for the configured maximum keys per object
            query_type: Part of the request being validated, for error context

        Raises:
            QueryValidationError: On a disallowed operator or exceeded limit
        """
        self._walk(
            body,
            path="",
            depth=0,
            max_depth=self.max_depth if max_depth is None else max_depth,
            max_keys=self.max_keys if max_keys is None else max_keys,
            query_type=query_type,
        )

    def validate_filter(self, filter: Any, path: str = "filter") -> None:
        """
        Validate a query filter.

        Raises:
            QueryValidationError: If the filter is not an object or fails validation
        """
        if filter is None:
            return
        if not isinstance(filter, Mapping):
            raise QueryValidationError(
                f"Query filter must be an object, got {type(filter).__name__}",
                query_type="filter",
                path=path,
            )
        self.validate(filter, query_type="filter")

    def validate_update(self, update: Any) -> None:
        """
        Validate an update document or update pipeline.

        Raises:
            QueryValidationError: If the update is empty or fails validation
        """
        if isinstance(update, list):
            self.validate_pipeline(update)
            return
        if not isinstance(update, Mapping) or not update:
            raise QueryValidationError(
                "Update must be a non-empty object or pipeline", query_type="update"
            )
        self.validate(update, query_type="update")

    def validate_pipeline(self, pipeline: Any) -> None:
        """
        Validate an aggregation pipeline.

        Raises:
            QueryValidationError: If the pipeline exceeds limits or contains
                disallowed operators
        """
        if not isinstance(pipeline, list):
            raise QueryValidationError(
                f"Aggregation pipeline must be a list, got {type(pipeline).__name__}",
                query_type="pipeline",
            )

        if len(pipeline) > self.max_pipeline_stages:
            raise QueryValidationError(
                f"Aggregation pipeline exceeds maximum stages: "
                f"{len(pipeline)} > {self.max_pipeline_stages}",
                query_type="pipeline",
                context={"stages": len(pipeline), "max_stages": self.max_pipeline_stages},
            )

        for idx, stage in enumerate(pipeline):
            if not isinstance(stage, Mapping):
                raise QueryValidationError(
                    f"Pipeline stage {idx} must be an object, got {type(stage).__name__}",
                    query_type="pipeline",
                    path=f"[{idx}]",
                )
        self.validate(pipeline, query_type="pipeline")

    def validate_sort(self, sort: Any) -> None:
        """
        Validate a sort specification.

        Raises:
            QueryValidationError: If the sort specification exceeds limits
        """
        if not sort:
            return

        sort_fields = self._extract_sort_fields(sort)
        if len(sort_fields) > self.max_sort_fields:
            raise QueryValidationError(
                f"Sort specification exceeds maximum fields: "
                f"{len(sort_fields)} > {self.max_sort_fields}",
                query_type="sort",
                context={"fields": len(sort_fields), "max_fields": self.max_sort_fields},
            )
        self.validate(sort, query_type="sort")

    def validate_regex(self, pattern: str, path: str = "") -> None:
        """
        Validate a regex pattern to prevent ReDoS attacks.

        Raises:
            QueryValidationError: If the regex pattern is too long, too
                complex or does not compile
        """
        if len(pattern) > self.max_regex_length:
            raise QueryValidationError(
                f"Regex pattern exceeds maximum length: "
                f"{len(pattern)} > {self.max_regex_length}",
                query_type="regex",
                path=path,
                context={"length": len(pattern), "max_length": self.max_regex_length},
            )

        complexity = self._calculate_regex_complexity(pattern)
        if complexity > self.max_regex_complexity:
            raise QueryValidationError(
                f"Regex pattern exceeds maximum complexity: "
                f"{complexity} > {self.max_regex_complexity}",
                query_type="regex",
                path=path,
                context={"complexity": complexity, "max_complexity": self.max_regex_complexity},
            )

        try:
            re.compile(pattern)
        except re.error as e:
            raise QueryValidationError(
                f"Invalid regex pattern: {e}", query_type="regex", path=path
            ) from e

    def _walk(
        self,
        value: Any,
        path: str,
        depth: int,
        max_depth: int,
        max_keys: int,
        query_type: str,
    ) -> None:
        if depth > max_depth:
            raise QueryValidationError(
                f"Payload exceeds maximum nesting depth: {depth} > {max_depth}",
                query_type=query_type,
                path=path or None,
                context={"depth": depth, "max_depth": max_depth},
            )

        if isinstance(value, Mapping):
            if len(value) > max_keys:
                raise QueryValidationError(
                    f"Object has too many keys: {len(value)} > {max_keys}",
                    query_type=query_type,
                    path=path or None,
                    context={"keys": len(value), "max_keys": max_keys},
                )
            for key, item in value.items():
                current_path = f"{path}.{key}" if path else str(key)
                self._check_key(key, current_path, query_type)
                if key == "$regex" and isinstance(item, str):
                    self.validate_regex(item, current_path)
                self._walk(item, current_path, depth + 1, max_depth, max_keys, query_type)

        elif isinstance(value, (list, tuple)):
            for idx, item in enumerate(value):
                self._walk(item, f"{path}[{idx}]", depth + 1, max_depth, max_keys, query_type)

    def _check_key(self, key: Any, path: str, query_type: str) -> None:
        if not isinstance(key, str) or len(key) > self.max_key_length:
            raise QueryValidationError("Invalid key name", query_type=query_type, path=path)

        if key.startswith(OPERATOR_PREFIX) and key not in self.allowed_operators:
            logger.warning(f"Security: Disallowed operator '{key}' at path '{path}'")
            raise QueryValidationError(
                f"Operator '{key}' is not allowed. Found at path: {path}",
                query_type=query_type,
                operator=key,
                path=path,
            )

    def _calculate_regex_complexity(self, pattern: str) -> int:
        """
        Simple heuristic score for patterns likely to backtrack badly.
        """
        complexity = 0
        # Quantifiers
        complexity += len(re.findall(r"[*+?{]", pattern))
        # Alternations
        complexity += len(re.findall(r"\|", pattern))
        # Nested groups
        complexity += len(re.findall(r"\([^)]*\([^)]*\)", pattern))
        # Lookaround
        complexity += len(re.findall(r"\(\?[=!<>]", pattern))
        return complexity

    def _extract_sort_fields(self, sort: Any) -> list[str]:
        """
        Extract field names from a sort specification (object or list of pairs).
        """
        if isinstance(sort, Mapping):
            return [field for field in sort.keys() if isinstance(field, str)]
        if isinstance(sort, list):
            return [
                item[0]
                for item in sort
                if isinstance(item, (list, tuple)) and item and isinstance(item[0], str)
            ]
        return []
