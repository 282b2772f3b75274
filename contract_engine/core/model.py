"""
In-memory contract model.

Contracts are built once by the loader and never mutated afterwards; the
stub generator and the test generator both read the same instances.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"


class Role(str, Enum):
    """Which side of the contract a value is being resolved for."""
    CONSUMER = "consumer"  # stub generation
    PRODUCER = "producer"  # test generation


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Regex:
    pattern: str


@dataclass(frozen=True)
class ConsumerProducer:
    consumer: Optional["ValueSpec"] = None
    producer: Optional["ValueSpec"] = None


@dataclass(frozen=True)
class FromRequest:
    json_path: str


@dataclass(frozen=True)
class Command:
    name: str
    arg_path: Optional[str] = None


TEMPLATE_PLACEHOLDER = re.compile(r"\{\{\{\s*jsonpath\s+this\s+'([^']+)'\s*\}\}\}")


@dataclass(frozen=True)
class Template:
    """String interpolating request values, e.g. ``Hi {{{ jsonpath this '$.name' }}}``."""
    text: str

    @property
    def paths(self) -> List[str]:
        return TEMPLATE_PLACEHOLDER.findall(self.text)


@dataclass(frozen=True)
class AnyValue:
    type_name: str = "any"


ValueSpec = Union[Literal, Regex, ConsumerProducer, FromRequest, Command, Template, AnyValue]
VALUE_SPEC_TYPES = (Literal, Regex, ConsumerProducer, FromRequest, Command, Template, AnyValue)

# A body is a JSON-shaped tree (dicts and lists) whose leaves are ValueSpecs.
Body = Any
PathParts = Tuple[Union[str, int], ...]


@dataclass(frozen=True)
class BodyMatcher:
    path: str
    spec: ValueSpec


@dataclass(frozen=True)
class RequestSpec:
    method: HttpMethod
    url: ValueSpec
    query: Mapping[str, ValueSpec] = field(default_factory=dict)
    headers: Mapping[str, ValueSpec] = field(default_factory=dict)
    body: Body = None
    matchers: Tuple[BodyMatcher, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "query", MappingProxyType(dict(self.query)))
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))


@dataclass(frozen=True)
class ResponseSpec:
    status: int = 200
    headers: Mapping[str, ValueSpec] = field(default_factory=dict)
    body: Body = None
    matchers: Tuple[BodyMatcher, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))


@dataclass(frozen=True)
class Contract:
    name: str
    request: RequestSpec
    response: ResponseSpec
    description: str = ""
    priority: Optional[int] = None
    is_async: bool = False
    source: Optional[str] = None
    index: int = 0

    def sort_key(self) -> Tuple[bool, int, int]:
        # Unprioritized contracts sort last; declaration order breaks ties.
        return (self.priority is None, self.priority if self.priority is not None else 0, self.index)


@dataclass(frozen=True)
class ContractSet:
    """Contracts of one endpoint family, kept in evaluation order."""
    group: str
    contracts: Tuple[Contract, ...]

    @classmethod
    def of(cls, group: str, contracts: List[Contract]) -> "ContractSet":
        return cls(group, tuple(sorted(contracts, key=Contract.sort_key)))

    def __iter__(self) -> Iterator[Contract]:
        return iter(self.contracts)

    def __len__(self) -> int:
        return len(self.contracts)

    def get(self, name: str) -> Optional[Contract]:
        for c in self.contracts:
            if c.name == name:
                return c
        return None


@dataclass(frozen=True)
class NoMatch:
    """Resolution result when no contract accepts a request."""
    reason: str = "no contract matched"
    near_misses: Tuple[Tuple[str, str], ...] = ()

    def __bool__(self) -> bool:
        return False


@dataclass(frozen=True)
class StubRequest:
    method: str
    path: str
    query: Mapping[str, str] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None
    raw_body: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", self.method.upper())
        object.__setattr__(self, "query", MappingProxyType(dict(self.query)))
        object.__setattr__(
            self, "headers", MappingProxyType({k.lower(): v for k, v in self.headers.items()})
        )


@dataclass(frozen=True)
class StubResponse:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    contract: Optional[str] = None


def iter_leaves(tree: Body, parts: PathParts = (), include_empty: bool = True) -> Iterator[Tuple[PathParts, ValueSpec]]:
    """Yield (path parts, spec) for every ValueSpec leaf of a body tree.

    An empty dict or list is a leaf of its own: it yields an AnyValue of the
    container type, so the field is still required to be present.
    """
    if isinstance(tree, (dict, list)) and not tree:
        if include_empty:
            yield parts, AnyValue("object" if isinstance(tree, dict) else "array")
    elif isinstance(tree, dict):
        for key, value in tree.items():
            yield from iter_leaves(value, parts + (key,), include_empty)
    elif isinstance(tree, list):
        for i, value in enumerate(tree):
            yield from iter_leaves(value, parts + (i,), include_empty)
    elif tree is not None:
        yield parts, tree


_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def format_path(parts: PathParts) -> str:
    out = "$"
    for p in parts:
        if isinstance(p, int):
            out += f"[{p}]"
        elif _IDENTIFIER.match(p):
            out += f".{p}"
        else:
            out += "['" + p.replace("'", "\\'") + "']"
    return out
