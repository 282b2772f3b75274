from __future__ import annotations

import json
import logging
import re
import signal
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from urllib.parse import parse_qsl

import yaml
from jsonschema import Draft202012Validator

from ..config import Settings, get_settings
from .errors import ContractErrorCode
from .exceptions import ParseError
from .matchers import (
    PREDEFINED_PATTERNS,
    TYPE_NAMES,
    compile_path,
    is_concrete,
    is_valid_path,
    type_name_of,
)
from .metrics import metrics
from .model import (
    TEMPLATE_PLACEHOLDER,
    AnyValue,
    BodyMatcher,
    Command,
    Contract,
    ContractSet,
    ConsumerProducer,
    FromRequest,
    HttpMethod,
    Literal,
    Regex,
    RequestSpec,
    ResponseSpec,
    Role,
    Template,
    ValueSpec,
    iter_leaves,
    format_path,
)
from .registry import ContractRegistry

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent.parent / "contracts" / "schema.json"

MARKER_KEYS = {"$regex", "$predefined", "$consumer", "$producer", "$fromRequest", "$command", "$arg", "$anyOf"}
COMMAND_SYNTAX = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*\(\s*\$it\s*\)\s*$")
MATCHER_TYPES = ("by_regex", "by_equality", "by_type", "by_command", "by_null")


class _Context:
    """Where in a contract a value was declared; drives error messages and allowed forms."""

    def __init__(self, source: Optional[str], side: str) -> None:
        self.source = source
        self.side = side

    def fail(self, message: str, code: ContractErrorCode = ContractErrorCode.PARSE_INVALID_STRUCTURE) -> ParseError:
        return ParseError(f"{self.side}: {message}", source=self.source, code=code)


def _regex(pattern: Any, ctx: _Context) -> Regex:
    if not isinstance(pattern, str):
        raise ctx.fail(f"regex must be a string, got {pattern!r}", ContractErrorCode.PARSE_INVALID_REGEX)
    try:
        re.compile(pattern)
    except re.error as e:
        raise ctx.fail(f"invalid regex {pattern!r}: {e}", ContractErrorCode.PARSE_INVALID_REGEX)
    return Regex(pattern)


def _predefined(name: Any, ctx: _Context) -> Regex:
    if name not in PREDEFINED_PATTERNS:
        raise ctx.fail(f"unknown predefined pattern {name!r}", ContractErrorCode.PARSE_UNKNOWN_MATCHER)
    return Regex(PREDEFINED_PATTERNS[name])


def _json_path(path: Any, ctx: _Context) -> str:
    if not isinstance(path, str) or not is_valid_path(path):
        raise ctx.fail(f"invalid JSONPath {path!r}", ContractErrorCode.PARSE_INVALID_JSONPATH)
    return path


def _is_marker(raw: Any) -> bool:
    return isinstance(raw, dict) and bool(raw) and set(raw) <= MARKER_KEYS


def parse_value(raw: Any, ctx: _Context, nested: bool = False) -> ValueSpec:
    """Parse one DSL value form into a ValueSpec."""
    if not _is_marker(raw):
        if isinstance(raw, str) and TEMPLATE_PLACEHOLDER.search(raw):
            template = Template(raw)
            for p in template.paths:
                _json_path(p, ctx)
            return template
        return Literal(raw)

    keys = set(raw)
    if "$consumer" in keys or "$producer" in keys:
        if nested:
            raise ctx.fail("consumer/producer values cannot be nested")
        if keys - {"$consumer", "$producer"}:
            raise ctx.fail(f"unexpected keys next to $consumer/$producer: {sorted(keys)}")
        consumer = parse_value(raw["$consumer"], ctx, nested=True) if "$consumer" in raw else None
        producer = parse_value(raw["$producer"], ctx, nested=True) if "$producer" in raw else None
        return ConsumerProducer(consumer=consumer, producer=producer)
    if keys == {"$regex"}:
        return _regex(raw["$regex"], ctx)
    if keys == {"$predefined"}:
        return _predefined(raw["$predefined"], ctx)
    if keys == {"$fromRequest"}:
        return FromRequest(_json_path(raw["$fromRequest"], ctx))
    if keys == {"$anyOf"}:
        if raw["$anyOf"] not in TYPE_NAMES:
            raise ctx.fail(f"unknown type {raw['$anyOf']!r}", ContractErrorCode.PARSE_UNKNOWN_MATCHER)
        return AnyValue(raw["$anyOf"])
    if "$command" in keys and keys <= {"$command", "$arg"}:
        name = raw["$command"]
        if not isinstance(name, str) or not name.isidentifier():
            raise ctx.fail(f"invalid command name {name!r}")
        arg = _json_path(raw["$arg"], ctx) if "$arg" in raw else None
        return Command(name, arg)
    raise ctx.fail(f"unsupported value form {sorted(keys)}")


def parse_body(raw: Any, ctx: _Context) -> Any:
    if raw is None:
        return None
    if _is_marker(raw):
        return parse_value(raw, ctx)
    if isinstance(raw, dict):
        return {str(k): parse_body(v, ctx) for k, v in raw.items()}
    if isinstance(raw, list):
        return [parse_body(v, ctx) for v in raw]
    return parse_value(raw, ctx)


def _specs(spec: ValueSpec) -> Iterator[ValueSpec]:
    if isinstance(spec, ConsumerProducer):
        for side in (spec.consumer, spec.producer):
            if side is not None:
                yield side
    else:
        yield spec


def _check_request_value(spec: ValueSpec, where: str, ctx: _Context) -> None:
    for s in _specs(spec):
        if isinstance(s, (Command, FromRequest, Template)):
            raise ctx.fail(f"{where}: {type(s).__name__} is only allowed in responses")
    if not is_concrete(spec, Role.PRODUCER):
        raise ctx.fail(
            f"{where}: no concrete value to send from the producer side",
            ContractErrorCode.PARSE_UNRESOLVED_SIDE,
        )


def _check_response_value(spec: ValueSpec, where: str, ctx: _Context) -> None:
    if isinstance(spec, ConsumerProducer) and isinstance(spec.consumer, Command):
        raise ctx.fail(f"{where}: commands run on the producer side only")
    if not is_concrete(spec, Role.CONSUMER, allow_request_refs=True):
        raise ctx.fail(
            f"{where}: no concrete value for the stub to return",
            ContractErrorCode.PARSE_UNRESOLVED_SIDE,
        )


# stands in for leaves with no fixed example value
_NO_EXAMPLE = object()


def _plain_example(tree: Any) -> Any:
    if isinstance(tree, dict):
        return {k: _plain_example(v) for k, v in tree.items()}
    if isinstance(tree, list):
        return [_plain_example(v) for v in tree]
    if tree is None:
        return None
    if isinstance(tree, Literal):
        return tree.value
    if isinstance(tree, ConsumerProducer):
        for side in (tree.producer, tree.consumer):
            if isinstance(side, Literal):
                return side.value
    return _NO_EXAMPLE


def _parse_body_matchers(entries: List[Dict[str, Any]], body: Any, ctx: _Context) -> Tuple[BodyMatcher, ...]:
    example = _plain_example(body)
    result = []
    for entry in entries or []:
        path = _json_path(entry.get("path"), ctx)
        kind = entry.get("type", "by_regex")
        if kind not in MATCHER_TYPES:
            raise ctx.fail(f"unknown matcher type {kind!r}", ContractErrorCode.PARSE_UNKNOWN_MATCHER)
        found = [] if example is None or example is _NO_EXAMPLE else compile_path(path).find(example)
        spec: ValueSpec
        if kind == "by_regex":
            if "predefined" in entry:
                spec = _predefined(entry["predefined"], ctx)
            else:
                spec = _regex(entry.get("value"), ctx)
        elif kind == "by_equality":
            if not found:
                raise ctx.fail(f"by_equality matcher {path} has no example value in the body")
            if found[0].value is _NO_EXAMPLE:
                raise ctx.fail(f"by_equality matcher {path} needs a literal example value in the body")
            spec = Literal(found[0].value)
        elif kind == "by_type":
            sample = found[0].value if found else _NO_EXAMPLE
            spec = AnyValue("any" if sample is _NO_EXAMPLE else type_name_of(sample))
        elif kind == "by_null":
            spec = Literal(None)
        else:
            if ctx.side == "request":
                raise ctx.fail("by_command matchers are only allowed in responses")
            match = COMMAND_SYNTAX.match(str(entry.get("value", "")))
            if not match:
                raise ctx.fail(f"command {entry.get('value')!r} must look like name($it)")
            spec = Command(match.group(1), path)
        result.append(BodyMatcher(path, spec))
    return tuple(result)


def _apply_header_matchers(headers: Dict[str, ValueSpec], entries: List[Dict[str, Any]], ctx: _Context) -> None:
    by_lower = {k.lower(): k for k in headers}
    for entry in entries or []:
        key = entry["key"]
        name = by_lower.get(key.lower(), key)
        existing = headers.get(name)
        if "regex" in entry:
            check: ValueSpec = _regex(entry["regex"], ctx)
        elif "predefined" in entry:
            check = _predefined(entry["predefined"], ctx)
        elif "command" in entry and ctx.side == "response":
            match = COMMAND_SYNTAX.match(entry["command"])
            if not match:
                raise ctx.fail(f"command {entry['command']!r} must look like name($it)")
            check = Command(match.group(1))
        else:
            raise ctx.fail(f"header matcher for {key} needs regex, predefined or command")
        if ctx.side == "request":
            headers[name] = ConsumerProducer(consumer=check, producer=existing)
        else:
            headers[name] = ConsumerProducer(consumer=existing, producer=check)


def _wire_text(value: Any) -> Any:
    # headers and query parameters are text on the wire
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return value


def _parse_request(raw: Dict[str, Any], ctx: _Context) -> RequestSpec:
    method_raw = raw.get("method")
    if not method_raw:
        raise ctx.fail("method is required", ContractErrorCode.PARSE_MISSING_BLOCK)
    try:
        method = HttpMethod(str(method_raw).upper())
    except ValueError:
        raise ctx.fail(f"unknown HTTP method {method_raw!r}", ContractErrorCode.PARSE_INVALID_METHOD)

    url_raw = raw.get("url", raw.get("urlPath"))
    if url_raw is None or url_raw == "":
        raise ctx.fail("url is required", ContractErrorCode.PARSE_MISSING_BLOCK)
    query: Dict[str, ValueSpec] = {}
    if isinstance(url_raw, str) and "?" in url_raw:
        url_raw, qs = url_raw.split("?", 1)
        query.update({k: Literal(v) for k, v in parse_qsl(qs, keep_blank_values=True)})
    url = parse_value(url_raw, ctx)
    _check_request_value(url, "url", ctx)

    for k, v in (raw.get("queryParameters") or {}).items():
        query[str(k)] = parse_value(_wire_text(v), ctx)
    headers = {str(k): parse_value(_wire_text(v), ctx) for k, v in (raw.get("headers") or {}).items()}
    matchers_raw = raw.get("matchers") or {}
    _apply_header_matchers(headers, matchers_raw.get("headers"), ctx)

    body = parse_body(raw.get("body"), ctx)
    body_matchers = _parse_body_matchers(matchers_raw.get("body"), body, ctx)

    for name, spec in query.items():
        _check_request_value(spec, f"query parameter {name}", ctx)
    for name, spec in headers.items():
        _check_request_value(spec, f"header {name}", ctx)
    for parts, spec in iter_leaves(body, include_empty=False):
        _check_request_value(spec, f"body {format_path(parts)}", ctx)
    return RequestSpec(method=method, url=url, query=query, headers=headers, body=body, matchers=body_matchers)


def _parse_response(raw: Dict[str, Any], ctx: _Context) -> ResponseSpec:
    status = raw.get("status")
    if not isinstance(status, int) or isinstance(status, bool):
        raise ctx.fail("status must be an integer", ContractErrorCode.PARSE_MISSING_BLOCK)
    headers = {str(k): parse_value(_wire_text(v), ctx) for k, v in (raw.get("headers") or {}).items()}
    matchers_raw = raw.get("matchers") or {}
    _apply_header_matchers(headers, matchers_raw.get("headers"), ctx)
    body = parse_body(raw.get("body"), ctx)
    body_matchers = _parse_body_matchers(matchers_raw.get("body"), body, ctx)

    for name, spec in headers.items():
        _check_response_value(spec, f"header {name}", ctx)
    for parts, spec in iter_leaves(body, include_empty=False):
        _check_response_value(spec, f"body {format_path(parts)}", ctx)
    return ResponseSpec(status=status, headers=headers, body=body, matchers=body_matchers)


def parse_contract(raw: Any, source: Optional[str] = None, name: Optional[str] = None, index: int = 0) -> Contract:
    """Build an immutable Contract from one parsed DSL document."""
    if not isinstance(raw, dict):
        raise ParseError("contract must be a mapping", source=source)
    for block in ("request", "response"):
        if not isinstance(raw.get(block), dict):
            raise ParseError(f"missing {block} block", source=source, code=ContractErrorCode.PARSE_MISSING_BLOCK)

    priority = raw.get("priority")
    if priority is not None and (not isinstance(priority, int) or isinstance(priority, bool)):
        raise ParseError(f"priority must be an integer, got {priority!r}", source=source)

    request = _parse_request(raw["request"], _Context(source, "request"))
    response = _parse_response(raw["response"], _Context(source, "response"))
    return Contract(
        name=str(raw.get("name") or name or f"contract_{index}"),
        description=str(raw.get("description") or ""),
        request=request,
        response=response,
        priority=priority,
        is_async=bool(raw.get("async") or raw["response"].get("async", False)),
        source=source,
        index=index,
    )


def read_documents(path: Path) -> List[Any]:
    with path.open("r", encoding="utf-8") as f:
        try:
            if path.suffix.lower() in (".yaml", ".yml"):
                docs = [d for d in yaml.safe_load_all(f) if d is not None]
            else:
                docs = [json.load(f)]
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ParseError(f"unreadable contract file: {e}", source=str(path))
    items: List[Any] = []
    for doc in docs:
        items.extend(doc if isinstance(doc, list) else [doc])
    return items


class ContractLoader:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        watch_signals: bool = True,
        on_reload: Optional[Callable[[ContractRegistry], None]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._schema: Dict[str, Any] = {}
        self._validator: Optional[Draft202012Validator] = None
        self.registry: Optional[ContractRegistry] = None
        self.on_reload = on_reload

        # SIGHUP reload, Unix main thread only
        if watch_signals and hasattr(signal, "SIGHUP") and threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGHUP, self._on_sighup)

    def _on_sighup(self, signum: int, frame: Any) -> None:
        logger.info("SIGHUP received: reloading contracts")
        try:
            registry = self.load()
        except ParseError as e:
            # the contracts already being served stay in place
            logger.error("Contract reload failed", extra={"error": e.to_error_detail().to_dict()})
            metrics.record_error(e.code.value)
            return
        if self.on_reload is not None:
            self.on_reload(registry)

    def load_schema(self, schema_path: Path = SCHEMA_PATH) -> None:
        with schema_path.open("r", encoding="utf-8") as f:
            self._schema = json.load(f)
        self._validator = Draft202012Validator(self._schema)

    def _validate(self, data: Any, source: str) -> None:
        if self._validator is None:
            self.load_schema()
        assert self._validator is not None
        errors = sorted(self._validator.iter_errors(data), key=lambda e: list(e.path))
        if errors:
            msgs = [f"{list(e.path)}: {e.message}" for e in errors]
            raise ParseError("contract validation failed", source=source, errors=msgs)

    def load_file(self, path: Path, start_index: int = 0) -> List[Contract]:
        if not path.exists():
            raise ParseError(
                "contract file not found", source=str(path), code=ContractErrorCode.CONFIG_CONTRACTS_NOT_FOUND
            )
        items = read_documents(path)
        contracts = []
        index = start_index
        for i, item in enumerate(items):
            self._validate(item, str(path))
            if item.get("ignored"):
                logger.info("Skipping ignored contract", extra={"source": str(path), "position": i})
                continue
            default_name = path.stem if len(items) == 1 else f"{path.stem}_{i}"
            contracts.append(parse_contract(item, source=str(path), name=default_name, index=index))
            index += 1
        return contracts

    def load(self) -> ContractRegistry:
        root = Path(self.settings.CONTRACTS_PATH)
        files = self.settings.contract_paths()
        if root.is_dir() and not files:
            raise ParseError(
                "no contract files found", source=str(root), code=ContractErrorCode.CONFIG_CONTRACTS_NOT_FOUND
            )
        groups: Dict[str, List[Contract]] = {}
        sources: List[str] = []
        index = 0
        for p in files:
            contracts = self.load_file(p, start_index=index)
            index += len(contracts)
            groups.setdefault(self._group_for(root, p), []).extend(contracts)
            sources.append(str(p))

        sets = []
        for group, contracts in groups.items():
            seen = set()
            for c in contracts:
                if c.name in seen:
                    raise ParseError(
                        f"duplicate contract name {c.name!r} in group {group!r}",
                        source=c.source,
                        code=ContractErrorCode.PARSE_DUPLICATE_NAME,
                    )
                seen.add(c.name)
            sets.append(ContractSet.of(group, contracts))
            metrics.set_contracts_loaded(group, len(contracts))

        self.registry = ContractRegistry(sets, strict=self.settings.STRICT_MATCHING, sources=sources)
        logger.info("Contracts loaded", extra={"sources": sources, "count": index, "groups": sorted(groups)})
        return self.registry

    @staticmethod
    def _group_for(root: Path, path: Path) -> str:
        if not root.is_dir():
            return path.stem
        rel = path.parent.relative_to(root)
        return rel.as_posix() if rel.parts else (root.resolve().name or "default")
