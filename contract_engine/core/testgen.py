"""
Producer test generation.

Every contract becomes one GeneratedTest: the request to send (rendered
with producer-side values) and the assertions the producer's response has
to satisfy. Tests run in-process against any sender callable or are
rendered as a pytest module whose command assertions call hooks on a
producer base class.
"""

from __future__ import annotations

import keyword
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

from jinja2 import Environment

from .errors import ContractErrorCode
from .exceptions import ContractAssertionError, FieldFailure, PathNotFoundError
from .matchers import (
    CommandCall,
    as_text,
    concrete,
    covered_parts,
    extract,
    extract_all,
    header_matches,
    is_covered,
    matches,
    render_body,
    select,
    value_at,
)
from .metrics import metrics
from .model import (
    AnyValue,
    Command,
    Contract,
    ContractSet,
    FromRequest,
    Literal,
    PathParts,
    Regex,
    Role,
    Template,
    ValueSpec,
    format_path,
    iter_leaves,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProducerRequest:
    method: str
    path: str
    query: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None


@dataclass
class ProducerResponse:
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None

    def header(self, name: str) -> Optional[str]:
        for k, v in self.headers.items():
            if k.lower() == name.lower():
                return v
        return None


Sender = Callable[[ProducerRequest], ProducerResponse]


@dataclass(frozen=True)
class Assertion:
    """One expectation on the producer response.

    ``target`` is ``status``, ``header`` or ``body``; ``parts`` addresses a
    body leaf, ``json_path`` a matcher-section position.
    """
    target: str
    spec: ValueSpec
    name: str = ""
    parts: Optional[PathParts] = None
    json_path: Optional[str] = None

    @property
    def location(self) -> str:
        if self.target == "header":
            return self.name
        if self.target == "status":
            return "status"
        return self.json_path or format_path(self.parts or ())

    @property
    def kind(self) -> str:
        selected = select(self.spec, Role.PRODUCER)
        if isinstance(selected, Command):
            return "command"
        if isinstance(selected, Regex):
            return "matches"
        if isinstance(selected, AnyValue):
            return "type"
        return "equals"

    def _actual_values(self, response: ProducerResponse) -> List[Any]:
        if self.target == "status":
            return [response.status]
        if self.target == "header":
            value = response.header(self.name)
            if value is None:
                raise PathNotFoundError(self.name)
            return [value]
        if self.json_path is not None:
            return extract_all(response.body, self.json_path)
        return [value_at(response.body, self.parts or ())]

    def _expected(self, request_body: Any) -> Any:
        selected = select(self.spec, Role.PRODUCER)
        if isinstance(selected, Regex):
            return selected.pattern
        if isinstance(selected, AnyValue):
            return f"<{selected.type_name}>"
        if isinstance(selected, Command):
            return f"{selected.name}($it)"
        return concrete(selected, Role.PRODUCER, request_body)

    def check(self, response: ProducerResponse, request_body: Any, hooks: Any = None) -> List[FieldFailure]:
        try:
            values = self._actual_values(response)
        except PathNotFoundError:
            return [FieldFailure(self.target, self.location, self._safe_expected(request_body), None, "missing")]

        selected = select(self.spec, Role.PRODUCER)
        failures = []
        for value in values:
            if isinstance(selected, Command):
                failure = self._run_command(selected, value, response, hooks)
                if failure:
                    failures.append(failure)
                continue
            try:
                if self.target == "header":
                    ok = header_matches(self.name, selected, value, Role.PRODUCER, request_body)
                else:
                    ok = matches(selected, value, Role.PRODUCER, request_body)
            except PathNotFoundError as e:
                failures.append(FieldFailure(self.target, self.location, e.json_path, value, "request value missing"))
                continue
            if not ok:
                failures.append(FieldFailure(self.target, self.location, self._expected(request_body), value))
        return failures

    def _safe_expected(self, request_body: Any) -> Any:
        try:
            return self._expected(request_body)
        except PathNotFoundError as e:
            return e.json_path

    def _run_command(self, command: Command, value: Any, response: ProducerResponse, hooks: Any) -> Optional[FieldFailure]:
        if command.arg_path and self.target == "body" and command.arg_path != self.json_path:
            try:
                value = extract(response.body, command.arg_path)
            except PathNotFoundError:
                return FieldFailure(self.target, command.arg_path, f"{command.name}($it)", None, "missing")
        call = CommandCall(command.name, value)
        hook = getattr(hooks, call.name, None) if hooks is not None else None
        if hook is None:
            return FieldFailure(
                self.target,
                self.location,
                f"{call.name}($it)",
                value,
                "hook not found",
                ContractErrorCode.VERIFY_HOOK_NOT_FOUND,
            )
        try:
            result = hook(call.value)
        except AssertionError as e:
            return FieldFailure(self.target, self.location, f"{call.name}($it)", value, str(e) or "hook assertion failed")
        if result is False:
            return FieldFailure(self.target, self.location, f"{call.name}($it)", value, "hook returned False")
        return None


@dataclass(frozen=True)
class GeneratedTest:
    name: str
    contract: Contract
    request: ProducerRequest
    assertions: Tuple[Assertion, ...]

    @property
    def async_response(self) -> bool:
        return self.contract.is_async

    @property
    def command_calls(self) -> List[str]:
        return [select(a.spec, Role.PRODUCER).name for a in self.assertions if a.kind == "command"]

    def verify(self, response: ProducerResponse, hooks: Any = None) -> List[FieldFailure]:
        failures: List[FieldFailure] = []
        for assertion in self.assertions:
            failures.extend(assertion.check(response, self.request.body, hooks))
        return failures

    def run(self, send: Sender, hooks: Any = None) -> ProducerResponse:
        """Send the request through ``send`` and assert the response; raises ContractAssertionError."""
        response = send(self.request)
        failures = self.verify(response, hooks)
        metrics.record_verification(not failures)
        if failures:
            logger.warning(
                "Producer violates contract",
                extra={"contract": self.contract.name, "failures": [str(f) for f in failures]},
            )
            raise ContractAssertionError(self.contract.name, failures)
        logger.info("Producer satisfies contract", extra={"contract": self.contract.name})
        return response


class TestGenerator:
    __test__ = False  # not a pytest test class

    def generate(self, contracts: Union[ContractSet, List[Contract]]) -> List[GeneratedTest]:
        return [self.generate_one(c) for c in contracts]

    def generate_one(self, contract: Contract) -> GeneratedTest:
        req = contract.request
        body = render_body(req.body, Role.PRODUCER)
        request = ProducerRequest(
            method=req.method.value,
            path=as_text(concrete(req.url, Role.PRODUCER)),
            query={k: as_text(concrete(v, Role.PRODUCER)) for k, v in req.query.items()},
            headers={k: as_text(concrete(v, Role.PRODUCER)) for k, v in req.headers.items()},
            body=body,
        )

        resp = contract.response
        assertions: List[Assertion] = [Assertion("status", Literal(resp.status))]
        for name, spec in resp.headers.items():
            assertions.append(Assertion("header", spec, name=name))
        covered = covered_parts(resp.body, resp.matchers)
        for parts, spec in iter_leaves(resp.body):
            if is_covered(parts, covered):
                continue
            assertions.append(Assertion("body", spec, parts=parts))
        for m in resp.matchers:
            assertions.append(Assertion("body", m.spec, json_path=m.path))
        return GeneratedTest(name=generated_test_name(contract.name), contract=contract, request=request, assertions=tuple(assertions))


def generated_test_name(contract_name: str) -> str:
    name = re.sub(r"\W+", "_", contract_name).strip("_").lower() or "contract"
    if name[0].isdigit() or keyword.iskeyword(name):
        name = f"c_{name}"
    return f"test_{name}"


def httpx_sender(client: Any) -> Sender:
    """Adapt an ``httpx.Client`` (or FastAPI ``TestClient``) to a Sender."""

    def send(request: ProducerRequest) -> ProducerResponse:
        kwargs: Dict[str, Any] = {"headers": request.headers}
        if request.query:
            kwargs["params"] = request.query
        if isinstance(request.body, (dict, list)):
            kwargs["json"] = request.body
        elif request.body is not None:
            kwargs["content"] = as_text(request.body)
        resp = client.request(request.method, request.path, **kwargs)
        try:
            body = resp.json()
        except ValueError:
            body = resp.text or None
        return ProducerResponse(status=resp.status_code, headers=dict(resp.headers), body=body)

    return send


# pytest module rendering

_MODULE_TEMPLATE = '''"""Producer contract tests generated from {{ group }}. Do not edit."""

import pytest

from contract_engine.core.matchers import (
    as_text,
    extract,
    extract_all,
    json_equals,
    regex_matches,
    render_template,
    type_matches,
    value_at,
)
from {{ base_module }} import {{ base_name }}


class {{ class_name }}({{ base_name }}):
{% if not tests %}    pass
{% endif %}{% for test in tests %}

    {% if test.async_response %}@pytest.mark.async_response
    {% endif %}def {{ test.name }}(self):
        # {{ test.contract.name }}{% if test.contract.description %}: {{ test.contract.description | replace("\\n", " ") }}{% endif %}
        request_body = {{ test.request.body | py }}
        response = self.client.request(
            {{ test.request.method | py }},
            {{ test.request.path | py }},
            params={{ test.request.query | py }},
            headers={{ test.request.headers | py }},
{%- if test.request.body is mapping or (test.request.body is iterable and test.request.body is not string) %}
            json=request_body,
{%- elif test.request.body is not none %}
            content=as_text(request_body),
{%- endif %}
        )
{%- for line in test.lines %}
        {{ line }}
{%- endfor %}
{% endfor %}
'''


def _py(value: Any) -> str:
    return repr(value)


def _assertion_lines(test: GeneratedTest) -> List[str]:
    lines: List[str] = []
    if any(a.target == "body" for a in test.assertions):
        lines.append("body = response.json()")
    for a in test.assertions:
        selected = select(a.spec, Role.PRODUCER)
        if a.target == "status":
            lines.append(f"assert response.status_code == {selected.value!r}")
            continue
        indent = ""
        if a.target == "header":
            actual = f"response.headers[{a.name!r}]"
        elif a.json_path is not None:
            # every match of the path is checked
            lines.append(f"for value in extract_all(body, {a.json_path!r}):")
            actual, indent = "value", "    "
        else:
            actual = f"value_at(body, {tuple(a.parts or ())!r})"
        if isinstance(selected, Command):
            arg = actual
            if selected.arg_path and a.target == "body" and selected.arg_path != a.json_path:
                arg = f"extract(body, {selected.arg_path!r})"
            line = f"self.{selected.name}({arg})"
        elif isinstance(selected, Regex):
            line = f"assert regex_matches({selected.pattern!r}, {actual})"
        elif isinstance(selected, AnyValue):
            line = f"assert type_matches({selected.type_name!r}, {actual})"
        elif isinstance(selected, FromRequest):
            line = f"assert json_equals(extract(request_body, {selected.json_path!r}), {actual})"
        elif isinstance(selected, Template):
            line = f"assert {actual} == render_template({selected.text!r}, request_body)"
        elif a.target == "header" and a.name.lower() == "content-type":
            line = f"assert {actual}.split(';')[0].strip() == {as_text(selected.value)!r}"
        else:
            line = f"assert json_equals({selected.value!r}, {actual})"
        lines.append(indent + line)
    return lines


class _RenderedTest:
    def __init__(self, test: GeneratedTest, name: str) -> None:
        self.name = name
        self.contract = test.contract
        self.request = test.request
        self.async_response = test.async_response
        self.lines = _assertion_lines(test)


def _unique_names(tests: List[GeneratedTest]) -> List[str]:
    """Test names with a numeric suffix where two contracts normalise to the same name."""
    taken: Set[str] = set()
    names = []
    for t in tests:
        name, n = t.name, 1
        while name in taken:
            n += 1
            name = f"{t.name}_{n}"
        taken.add(name)
        names.append(name)
    return names


def render_pytest_module(tests: List[GeneratedTest], base_class: str, group: str = "contracts") -> str:
    """Render ``tests`` as pytest source; ``base_class`` is ``module:ClassName`` and provides ``client`` and hooks."""
    base_module, _, base_name = base_class.partition(":")
    if not base_name:
        raise ValueError("base_class must look like 'package.module:ClassName'")
    env = Environment(keep_trailing_newline=True, autoescape=False)
    env.filters["py"] = _py
    class_name = "TestContracts" + "".join(part.capitalize() for part in re.split(r"\W+|_", group) if part)
    source = env.from_string(_MODULE_TEMPLATE).render(
        group=group,
        base_module=base_module,
        base_name=base_name,
        class_name=class_name,
        tests=[_RenderedTest(t, name) for t, name in zip(tests, _unique_names(tests))],
    )
    return source
