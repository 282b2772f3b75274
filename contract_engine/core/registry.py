from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union

from .exceptions import AmbiguousMatchError
from .matchers import request_mismatch
from .model import Contract, ContractSet, NoMatch, StubRequest

logger = logging.getLogger(__name__)


class ContractRegistry:
    """Ordered contract sets, one per endpoint family.

    Evaluation order is priority ascending, unprioritized contracts last,
    and declaration order among equals. The registry is read-only once
    built; reloading produces a new registry.
    """

    def __init__(self, sets: Iterable[ContractSet], strict: bool = False, sources: Optional[List[str]] = None) -> None:
        self._sets: Dict[str, ContractSet] = {}
        for s in sets:
            if s.group in self._sets:
                merged = list(self._sets[s.group].contracts) + list(s.contracts)
                self._sets[s.group] = ContractSet.of(s.group, merged)
            else:
                self._sets[s.group] = s
        self.strict = strict
        self.sources = list(sources or [])
        self._all: Tuple[Contract, ...] = tuple(
            sorted((c for s in self._sets.values() for c in s), key=Contract.sort_key)
        )

    @classmethod
    def single(cls, contracts: Union[ContractSet, List[Contract]], group: str = "default", strict: bool = False) -> "ContractRegistry":
        if isinstance(contracts, ContractSet):
            return cls([contracts], strict=strict)
        return cls([ContractSet.of(group, list(contracts))], strict=strict)

    @property
    def groups(self) -> List[str]:
        return sorted(self._sets)

    def get(self, group: str) -> ContractSet:
        return self._sets[group]

    def contracts(self, group: Optional[str] = None) -> Tuple[Contract, ...]:
        if group is None:
            return self._all
        return self._sets[group].contracts

    def __len__(self) -> int:
        return len(self._all)

    def candidates(self, request: StubRequest, group: Optional[str] = None) -> Iterator[Contract]:
        """Contracts accepting ``request``, lazily, in evaluation order."""
        for contract in self.contracts(group):
            if request_mismatch(contract.request, request) is None:
                yield contract

    def resolve(self, request: StubRequest, group: Optional[str] = None) -> Union[Contract, NoMatch]:
        remaining = self.candidates(request, group)
        winner = next(remaining, None)
        if winner is None:
            return NoMatch(near_misses=tuple(self.explain(request, group)))
        self.check_overlap(winner, remaining)
        return winner

    def check_overlap(self, winner: Contract, remaining: Iterator[Contract]) -> None:
        """Flag a second unprioritized contract accepting the same request."""
        if winner.priority is not None:
            return
        other = next(remaining, None)
        if other is None:
            return
        names = [winner.name, other.name]
        logger.warning("Ambiguous contract match, declaration order applied", extra={"contracts": names})
        if self.strict:
            raise AmbiguousMatchError(names)

    def explain(self, request: StubRequest, group: Optional[str] = None) -> List[Tuple[str, str]]:
        misses = []
        for contract in self.contracts(group):
            reason = request_mismatch(contract.request, request)
            if reason is not None:
                misses.append((contract.name, reason))
        return misses
