"""Schema validation and one-shot argument repair for tool invocations."""

import json
import re
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field
from rapidfuzz.distance import Levenshtein

from tool_relay.exceptions import ErrorKind, InvalidStructuredDataError
from tool_relay.llm import ToolInvocation
from tool_relay.logging import get_logger
from tool_relay.repair import loads_lenient

log = get_logger(__name__)

TRUE_STRINGS = {"true", "yes", "1", "on"}
FALSE_STRINGS = {"false", "no", "0", "off"}
_INT_RE = re.compile(r"^[+-]?\d+$")
_FLOAT_RE = re.compile(r"^[+-]?(\d+\.\d*|\.\d+|\d+)([eE][+-]?\d+)?$")

_FILE_PATH_ALIASES = {
    "path": "file_path",
    "filepath": "file_path",
    "filename": "file_path",
    "file": "file_path",
}
_TRANSFER_ALIASES = {
    "source": "source_path",
    "src": "source_path",
    "from": "source_path",
    "destination": "destination_path",
    "dest": "destination_path",
    "dst": "destination_path",
    "to": "destination_path",
    "target": "destination_path",
}
_DIRECTORY_ALIASES = {
    "directory": "path",
    "dir": "path",
    "folder": "path",
    "location": "path",
}

# Per-tool alias -> canonical parameter name. Keys are lowercase.
TOOL_ALIASES: dict[str, dict[str, str]] = {
    "read_file": dict(_FILE_PATH_ALIASES),
    "write_file": {
        **_FILE_PATH_ALIASES,
        "data": "content",
        "text": "content",
        "body": "content",
        "contents": "content",
    },
    "copy_file": dict(_TRANSFER_ALIASES),
    "move_file": dict(_TRANSFER_ALIASES),
    "delete_file": dict(_FILE_PATH_ALIASES),
    "list_directory": dict(_DIRECTORY_ALIASES),
    "create_directory": {**_DIRECTORY_ALIASES, "name": "path"},
}

# Tool-independent aliases; each may point at several canonical names and the
# first one the tool actually declares is used.
GENERIC_ALIASES: dict[str, tuple[str, ...]] = {
    "path": ("file_path", "directory_path", "dir_path"),
    "file": ("file_path", "path"),
    "filepath": ("file_path", "path"),
    "filename": ("file_path", "path"),
    "dir": ("path", "directory", "directory_path"),
    "directory": ("path", "directory_path"),
    "folder": ("path", "directory", "directory_path"),
    "q": ("query", "pattern"),
    "search": ("query", "pattern"),
    "term": ("query", "pattern"),
    "cmd": ("command",),
    "url": ("uri", "link"),
    "uri": ("url",),
    "link": ("url",),
    "text": ("content",),
    "body": ("content",),
    "data": ("content",),
}


class ToolParameter(BaseModel):
    """One declared tool parameter."""

    name: str
    type: str = "string"
    required: bool = False
    allowed_values: list[Any] | None = None
    default: Any = None
    description: str = ""

    @classmethod
    def from_json_schema(cls, parameters: dict[str, Any] | None) -> list["ToolParameter"]:
        """Build parameter descriptors from a JSON-schema ``parameters`` object."""
        if not parameters:
            return []
        properties = parameters.get("properties", {}) or {}
        required = set(parameters.get("required", []) or [])
        result = []
        for name, spec in properties.items():
            spec = spec or {}
            declared_type = spec.get("type", "string")
            if isinstance(declared_type, list):
                declared_type = next((t for t in declared_type if t != "null"), "string")
            result.append(cls(
                name=name,
                type=str(declared_type),
                required=name in required,
                allowed_values=spec.get("enum"),
                default=spec.get("default"),
                description=spec.get("description", "") or "",
            ))
        return result


class ValidationIssue(BaseModel):
    """A single validation failure."""

    kind: ErrorKind
    parameter: str
    message: str = Field(default="")


@dataclass
class ValidationOutcome:
    """Result of validating (and possibly repairing) one invocation."""

    invocation: ToolInvocation
    errors: list[ValidationIssue] = field(default_factory=list)
    repaired: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors

    def error_message(self) -> str:
        return "; ".join(issue.message for issue in self.errors)


class _Unresolvable(Exception):
    pass


def _normalize_key(key: str) -> str:
    return key.replace("_", "").replace("-", "").strip().lower()


def _type_matches(value: Any, expected: str) -> bool:
    if expected == "string":
        return isinstance(value, str)
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "array":
        return isinstance(value, list)
    if expected == "object":
        return isinstance(value, dict)
    return True


def _coerce_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUE_STRINGS:
            return True
        if lowered in FALSE_STRINGS:
            return False
    raise _Unresolvable(f"cannot interpret {value!r} as a boolean")


def _coerce_integer(value: Any) -> int:
    if isinstance(value, bool):
        raise _Unresolvable(f"cannot interpret {value!r} as an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        stripped = value.strip()
        if _INT_RE.match(stripped):
            return int(stripped)
        if _FLOAT_RE.match(stripped) and float(stripped).is_integer():
            return int(float(stripped))
    raise _Unresolvable(f"cannot interpret {value!r} as an integer")


def _coerce_number(value: Any) -> int | float:
    if isinstance(value, bool):
        raise _Unresolvable(f"cannot interpret {value!r} as a number")
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if _INT_RE.match(stripped):
            return int(stripped)
        if _FLOAT_RE.match(stripped):
            return float(stripped)
    raise _Unresolvable(f"cannot interpret {value!r} as a number")


def _coerce_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    raise _Unresolvable(f"cannot interpret {value!r} as a string")


def _coerce_array(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, tuple):
        return list(value)
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith("[") and stripped.endswith("]"):
            try:
                parsed = loads_lenient(stripped)
            except InvalidStructuredDataError:
                parsed = None
            if isinstance(parsed, list):
                return parsed
        if "," in stripped:
            return [part.strip() for part in stripped.split(",") if part.strip()]
        return [stripped]
    return [value]


def _coerce_object(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip().startswith("{"):
        try:
            parsed = loads_lenient(value)
        except InvalidStructuredDataError as e:
            raise _Unresolvable(f"cannot interpret {value!r} as an object") from e
        if isinstance(parsed, dict):
            return parsed
    raise _Unresolvable(f"cannot interpret {value!r} as an object")


_COERCERS = {
    "boolean": _coerce_boolean,
    "integer": _coerce_integer,
    "number": _coerce_number,
    "string": _coerce_string,
    "array": _coerce_array,
    "object": _coerce_object,
}


def _match_allowed(value: Any, allowed: list[Any]) -> Any:
    if value in allowed:
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        for candidate in allowed:
            if isinstance(candidate, str) and candidate.lower() == lowered:
                return candidate
    raise _Unresolvable(f"{value!r} is not one of {allowed}")


class InvocationValidator:
    """Check invocation arguments against a tool schema and repair them once.

    Repair order for keys: case-insensitive canonical match, alias tables,
    unambiguous fuzzy match; unknown leftovers are dropped.  Values are then
    coerced to the declared types and missing required parameters that
    declare a default get it.
    """

    def __init__(
        self,
        tool_aliases: dict[str, dict[str, str]] | None = None,
        generic_aliases: dict[str, tuple[str, ...]] | None = None,
        max_fuzzy_distance: int = 2,
    ):
        self.tool_aliases = tool_aliases if tool_aliases is not None else TOOL_ALIASES
        self.generic_aliases = generic_aliases if generic_aliases is not None else GENERIC_ALIASES
        self.max_fuzzy_distance = max_fuzzy_distance

    def check(self, arguments: dict[str, Any], schema: list[ToolParameter]) -> list[ValidationIssue]:
        """Strict validation, no repair."""
        issues: list[ValidationIssue] = []
        declared = {param.name: param for param in schema}

        for key in arguments:
            if key not in declared:
                issues.append(ValidationIssue(
                    kind=ErrorKind.UNRESOLVABLE_PARAMETER_TYPE,
                    parameter=key,
                    message=f"Unknown parameter '{key}'",
                ))

        for param in schema:
            value = arguments.get(param.name)
            if value is None:
                if param.required:
                    issues.append(ValidationIssue(
                        kind=ErrorKind.MISSING_REQUIRED_PARAMETER,
                        parameter=param.name,
                        message=f"Missing required parameter '{param.name}'",
                    ))
                continue
            if not _type_matches(value, param.type):
                issues.append(ValidationIssue(
                    kind=ErrorKind.UNRESOLVABLE_PARAMETER_TYPE,
                    parameter=param.name,
                    message=f"Parameter '{param.name}' expects {param.type}, got {type(value).__name__}",
                ))
            elif param.allowed_values and value not in param.allowed_values:
                issues.append(ValidationIssue(
                    kind=ErrorKind.UNRESOLVABLE_PARAMETER_TYPE,
                    parameter=param.name,
                    message=f"Parameter '{param.name}' must be one of {param.allowed_values}",
                ))
        return issues

    def validate(self, invocation: ToolInvocation, schema: list[ToolParameter]) -> ValidationOutcome:
        """Validate an invocation, repairing its arguments at most once.

        On repair the corrected map is attached as ``repaired_arguments``;
        the original ``arguments`` are left untouched.
        """
        issues = self.check(invocation.arguments, schema)
        if not issues:
            return ValidationOutcome(invocation=invocation)

        repaired, coercion_issues = self.repair(invocation.name, invocation.arguments, schema)
        invocation.repaired_arguments = repaired
        remaining = self.check(repaired, schema)
        # Coercion failures explain the type errors better than the re-check does.
        explained = {issue.parameter for issue in coercion_issues}
        remaining = coercion_issues + [issue for issue in remaining if issue.parameter not in explained]

        log.debug(
            "Repaired invocation arguments",
            tool=invocation.name,
            call_id=invocation.id,
            before=sorted(invocation.arguments),
            after=sorted(repaired),
            errors=len(remaining),
        )
        return ValidationOutcome(invocation=invocation, errors=remaining, repaired=True)

    def repair(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        schema: list[ToolParameter],
    ) -> tuple[dict[str, Any], list[ValidationIssue]]:
        """Map keys to canonical names and coerce values."""
        mapped = self._map_keys(tool_name, arguments, schema)
        issues: list[ValidationIssue] = []

        for param in schema:
            if mapped.get(param.name) is None:
                if param.required and param.default is not None:
                    mapped[param.name] = param.default
                continue
            try:
                mapped[param.name] = self._coerce(mapped[param.name], param)
            except _Unresolvable as e:
                issues.append(ValidationIssue(
                    kind=ErrorKind.UNRESOLVABLE_PARAMETER_TYPE,
                    parameter=param.name,
                    message=f"Parameter '{param.name}': {e}",
                ))
        return mapped, issues

    @staticmethod
    def _coerce(value: Any, param: ToolParameter) -> Any:
        coercer = _COERCERS.get(param.type)
        if coercer is not None:
            value = coercer(value)
        if param.allowed_values:
            value = _match_allowed(value, param.allowed_values)
        return value

    def _map_keys(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        schema: list[ToolParameter],
    ) -> dict[str, Any]:
        canonical = [param.name for param in schema]
        by_lower = {name.lower(): name for name in canonical}
        by_normalized = {_normalize_key(name): name for name in canonical}
        mapped: dict[str, Any] = {}
        pending: list[str] = []

        # Exact and case-insensitive matches claim their names first.
        for key, value in arguments.items():
            target = key if key in canonical else by_lower.get(key.lower()) or by_normalized.get(_normalize_key(key))
            if target and target not in mapped:
                mapped[target] = value
            else:
                pending.append(key)

        unknown: list[str] = []
        tool_table = self.tool_aliases.get(tool_name, {})
        for key in pending:
            target = self._alias_target(key, tool_table, canonical, mapped)
            if target:
                mapped[target] = arguments[key]
            else:
                unknown.append(key)

        for key in unknown:
            unsatisfied = [name for name in canonical if name not in mapped]
            target = self._fuzzy_target(key, unsatisfied)
            if target:
                mapped[target] = arguments[key]
            else:
                log.debug("Dropping unknown parameter", tool=tool_name, parameter=key)
        return mapped

    def _alias_target(
        self,
        key: str,
        tool_table: dict[str, str],
        canonical: list[str],
        mapped: dict[str, Any],
    ) -> str | None:
        lowered = key.lower()
        candidates: list[str] = []
        if lowered in tool_table:
            candidates.append(tool_table[lowered])
        candidates.extend(self.generic_aliases.get(lowered, ()))
        for candidate in candidates:
            if candidate in canonical and candidate not in mapped:
                return candidate
        return None

    def _fuzzy_target(self, key: str, unsatisfied: list[str]) -> str | None:
        normalized = _normalize_key(key)
        if not normalized:
            return None
        matches = []
        for name in unsatisfied:
            target = _normalize_key(name)
            if (
                normalized in target
                or target in normalized
                or Levenshtein.distance(normalized, target) <= self.max_fuzzy_distance
            ):
                matches.append(name)
        if len(matches) == 1:
            return matches[0]
        return None
