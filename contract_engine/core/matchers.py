"""
Matcher engine.

Resolves ValueSpecs either to concrete values (what a stub returns or a
producer test sends) or to predicates evaluated against actual JSON
values. ``ConsumerProducer`` values are unwrapped according to the role
the caller is resolving for.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, List, Optional, Set, Tuple

from jsonpath_ng import Child, Fields, Index
from jsonpath_ng.exceptions import JsonPathLexerError, JsonPathParserError
from jsonpath_ng.ext import parse as jsonpath_parse

from .exceptions import PathNotFoundError, UnresolvableValueError
from .model import (
    TEMPLATE_PLACEHOLDER,
    AnyValue,
    Body,
    BodyMatcher,
    Command,
    ConsumerProducer,
    FromRequest,
    Literal,
    PathParts,
    Regex,
    RequestSpec,
    Role,
    StubRequest,
    Template,
    ValueSpec,
    format_path,
    iter_leaves,
)

logger = logging.getLogger(__name__)


PREDEFINED_PATTERNS = {
    "only_alpha_unicode": r"[^\W\d_]*",
    "alpha_numeric": r"[a-zA-Z0-9]+",
    "number": r"-?(\d*\.\d+|\d+)",
    "positive_int": r"([1-9]\d*)",
    "any_boolean": r"(true|false)",
    "any_double": r"-?(\d*\.\d+)",
    "uuid": r"[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}",
    "iso_date": r"(\d\d\d\d)-(0[1-9]|1[012])-(0[1-9]|[12][0-9]|3[01])",
    "iso_date_time": r"([0-9]{4})-(1[0-2]|0[1-9])-(3[01]|0[1-9]|[12][0-9])T(2[0-3]|[01][0-9]):([0-5][0-9]):([0-5][0-9])(\.\d+)?(Z|[+-]\d\d:?\d\d)?",
    "iso_time": r"(2[0-3]|[01][0-9]):([0-5][0-9]):([0-5][0-9])",
    "email": r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,6}",
    "hostname": r"((http[s]?|ftp):/)/?([^:/\s]+)(:[0-9]{1,5})?",
    "url": r"((http[s]?|ftp):/)/?([^:/\s]+)(:[0-9]{1,5})?(/[^\s]*)?",
    "non_empty": r"[\S\s]+",
    "non_blank": r"^\s*\S[\S\s]*",
}

TYPE_NAMES = ("any", "string", "number", "boolean", "array", "object", "null")


# JSONPath

@lru_cache(maxsize=1024)
def compile_path(json_path: str):
    return jsonpath_parse(json_path)


def is_valid_path(json_path: str) -> bool:
    try:
        compile_path(json_path)
    except (JsonPathLexerError, JsonPathParserError):
        return False
    return True


def extract_all(payload: Any, json_path: str) -> List[Any]:
    if payload is None or isinstance(payload, (str, bytes)):
        raise PathNotFoundError(json_path)
    found = compile_path(json_path).find(payload)
    if not found:
        raise PathNotFoundError(json_path)
    return [m.value for m in found]


def extract(payload: Any, json_path: str) -> Any:
    """Value at ``json_path``; raises PathNotFoundError on a miss."""
    return extract_all(payload, json_path)[0]


def path_parts(path) -> PathParts:
    if isinstance(path, Child):
        return path_parts(path.left) + path_parts(path.right)
    if isinstance(path, Fields):
        return tuple(path.fields)
    if isinstance(path, Index):
        indices = getattr(path, "indices", None)
        return tuple(indices) if indices is not None else (path.index,)
    return ()


def covered_parts(body: Body, matchers: Tuple[BodyMatcher, ...]) -> Set[PathParts]:
    """Body positions addressed by the sideband matcher section."""
    if not matchers or body is None:
        return set()
    skeleton = _skeleton(body)
    covered: Set[PathParts] = set()
    for m in matchers:
        for found in compile_path(m.path).find(skeleton):
            covered.add(path_parts(found.full_path))
    return covered


def is_covered(parts: PathParts, covered: Set[PathParts]) -> bool:
    return any(parts[: len(c)] == c for c in covered)


def _skeleton(tree: Body) -> Any:
    if isinstance(tree, dict):
        return {k: _skeleton(v) for k, v in tree.items()}
    if isinstance(tree, list):
        return [_skeleton(v) for v in tree]
    if isinstance(tree, Literal):
        return tree.value
    return 0


def value_at(payload: Any, parts: PathParts) -> Any:
    """Walk ``parts`` into ``payload``; raises PathNotFoundError on a miss."""
    current = payload
    for p in parts:
        if isinstance(p, int):
            if not isinstance(current, list) or p >= len(current):
                raise PathNotFoundError(format_path(parts))
        elif not isinstance(current, dict) or p not in current:
            raise PathNotFoundError(format_path(parts))
        current = current[p]
    return current


# Role resolution

def select(spec: ValueSpec, role: Role) -> ValueSpec:
    """Unwrap a ConsumerProducer to the branch for ``role``, falling back to the other side."""
    if isinstance(spec, ConsumerProducer):
        chosen = spec.consumer if role is Role.CONSUMER else spec.producer
        if chosen is None:
            chosen = spec.producer if role is Role.CONSUMER else spec.consumer
        if chosen is None:
            raise UnresolvableValueError("consumer/producer value declares neither side")
        return select(chosen, role)
    return spec


def is_concrete(spec: ValueSpec, role: Role, allow_request_refs: bool = False) -> bool:
    try:
        spec = select(spec, role)
    except UnresolvableValueError:
        return False
    if isinstance(spec, Literal):
        return True
    if isinstance(spec, (FromRequest, Template)):
        return allow_request_refs
    return False


def concrete(spec: ValueSpec, role: Role, request: Any = None) -> Any:
    """Concrete value of ``spec`` for ``role``; ``request`` is the payload FromRequest reads."""
    spec = select(spec, role)
    if isinstance(spec, Literal):
        return spec.value
    if isinstance(spec, FromRequest):
        return extract(request, spec.json_path)
    if isinstance(spec, Template):
        return render_template(spec.text, request)
    raise UnresolvableValueError(f"{type(spec).__name__} has no concrete value")


def render_template(text: str, request: Any) -> str:
    def _sub(match: re.Match) -> str:
        return as_text(extract(request, match.group(1)))
    return TEMPLATE_PLACEHOLDER.sub(_sub, text)


def render_body(tree: Body, role: Role, request: Any = None) -> Any:
    """Materialize a body tree into plain JSON for ``role``."""
    if isinstance(tree, dict):
        return {k: render_body(v, role, request) for k, v in tree.items()}
    if isinstance(tree, list):
        return [render_body(v, role, request) for v in tree]
    if tree is None:
        return None
    return concrete(tree, role, request)


# Predicates

def as_text(value: Any) -> str:
    """JSON text form used for regex matching: ``25`` -> ``"25"``, ``True`` -> ``"true"``."""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def json_equals(expected: Any, actual: Any) -> bool:
    if isinstance(expected, bool) or isinstance(actual, bool):
        return isinstance(expected, bool) and isinstance(actual, bool) and expected == actual
    if isinstance(expected, (int, float)) and isinstance(actual, (int, float)):
        return float(expected) == float(actual)
    if isinstance(expected, dict):
        return (
            isinstance(actual, dict)
            and expected.keys() == actual.keys()
            and all(json_equals(v, actual[k]) for k, v in expected.items())
        )
    if isinstance(expected, list):
        return (
            isinstance(actual, list)
            and len(expected) == len(actual)
            and all(json_equals(e, a) for e, a in zip(expected, actual))
        )
    return type(expected) is type(actual) and expected == actual


def regex_matches(pattern: str, actual: Any) -> bool:
    if actual is None or isinstance(actual, (dict, list)):
        return False
    return re.fullmatch(pattern, as_text(actual)) is not None


def type_matches(type_name: str, actual: Any) -> bool:
    if type_name == "any":
        return True
    if type_name == "string":
        return isinstance(actual, str)
    if type_name == "number":
        return isinstance(actual, (int, float)) and not isinstance(actual, bool)
    if type_name == "boolean":
        return isinstance(actual, bool)
    if type_name == "array":
        return isinstance(actual, list)
    if type_name == "object":
        return isinstance(actual, dict)
    if type_name == "null":
        return actual is None
    return False


def type_name_of(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return "any"


def matches(spec: ValueSpec, actual: Any, role: Role, request: Any = None) -> bool:
    """Evaluate ``spec`` against ``actual``; Commands are not engine predicates."""
    spec = select(spec, role)
    if isinstance(spec, Literal):
        return json_equals(spec.value, actual)
    if isinstance(spec, Regex):
        return regex_matches(spec.pattern, actual)
    if isinstance(spec, AnyValue):
        return type_matches(spec.type_name, actual)
    if isinstance(spec, (FromRequest, Template)):
        return json_equals(concrete(spec, role, request), actual)
    raise UnresolvableValueError(f"{type(spec).__name__} cannot be evaluated by the engine")


@dataclass(frozen=True)
class CommandCall:
    """A producer hook invocation: hook name plus the JSON value it receives."""
    name: str
    value: Any


@dataclass(frozen=True)
class Resolution:
    value: Any = None
    predicate: Optional[Callable[[Any], bool]] = None
    command: Optional[Command] = None

    @property
    def is_value(self) -> bool:
        return self.predicate is None and self.command is None


def resolve(spec: ValueSpec, role: Role, request: Any = None) -> Resolution:
    """Resolve ``spec`` to a concrete value, a predicate, or a command hook."""
    selected = select(spec, role)
    if isinstance(selected, Command):
        return Resolution(command=selected)
    if isinstance(selected, (Regex, AnyValue)):
        return Resolution(predicate=lambda actual: matches(selected, actual, role, request))
    return Resolution(value=concrete(selected, role, request))


# Request matching

def header_matches(name: str, spec: ValueSpec, actual: Any, role: Role, request: Any = None) -> bool:
    selected = select(spec, role)
    if name.lower() == "content-type" and isinstance(selected, Literal) and isinstance(actual, str):
        return _media_type(actual) == _media_type(str(selected.value))
    return matches(selected, actual, role, request)


def _media_type(value: str) -> str:
    return value.split(";")[0].strip().lower()


def body_tree_mismatch(tree: Body, actual: Any, role: Role, covered: Set[PathParts]) -> Optional[str]:
    for parts, spec in iter_leaves(tree):
        if is_covered(parts, covered):
            continue
        try:
            value = value_at(actual, parts)
        except PathNotFoundError:
            return f"body field {format_path(parts)} missing"
        if not matches(spec, value, role):
            return f"body field {format_path(parts)} does not match"
    return None


def request_mismatch(spec: RequestSpec, request: StubRequest, role: Role = Role.CONSUMER) -> Optional[str]:
    """Why ``request`` fails ``spec``, or None when it matches."""
    if spec.method.value != request.method:
        return f"method {request.method} != {spec.method.value}"
    if not matches(spec.url, request.path, role):
        return f"url {request.path} does not match"
    for name, vs in spec.query.items():
        if name not in request.query:
            return f"query parameter {name} missing"
        if not matches(vs, request.query[name], role):
            return f"query parameter {name} does not match"
    for name, vs in spec.headers.items():
        actual = request.headers.get(name.lower())
        if actual is None:
            return f"header {name} missing"
        if not header_matches(name, vs, actual, role):
            return f"header {name} does not match"
    if spec.body is not None:
        if isinstance(spec.body, (dict, list)):
            if not isinstance(request.body, (dict, list)):
                return "body is not JSON"
            covered = covered_parts(spec.body, spec.matchers)
            reason = body_tree_mismatch(spec.body, request.body, role, covered)
            if reason:
                return reason
        else:
            actual_body = request.body if request.body is not None else request.raw_body
            if not matches(spec.body, actual_body, role):
                return "body does not match"
    for m in spec.matchers:
        try:
            values = extract_all(request.body, m.path)
        except PathNotFoundError:
            logger.debug("Matcher path not found", extra={"json_path": m.path})
            return f"matcher path {m.path} not found"
        if not all(matches(m.spec, v, role) for v in values):
            return f"matcher {m.path} does not match"
    return None
