"""Exceptions, warnings and diagnostic accumulation for model flattening.

Flattening distinguishes fatal problems, which abort the current call, from
modelling problems that are recorded and surfaced together at the end of a run
so that a single invocation reports as many of them as possible.

Fatal:
    ConnectivityError: an inport with no driving line, or a reroute block whose
        matching port/tag cannot be found.

Non-fatal (recorded as ``Diagnostic`` entries and emitted through ``warnings``):
    UnsupportedBlockWarning: a block type or operation the lowering pass does
        not know; its local constraint is left empty.
    AliasCycleWarning: a cycle in the alias graph, collapsed to one variable.
    InfeasibleBoundWarning: merged lower bound above the merged upper bound.
    StructureWarning: recorded wiring does not match the diagram, or a
        coupling constraint could not be built.
"""

import warnings
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Type


class FlattenError(Exception):
    """Base class for errors raised while flattening a diagram."""


class ConnectivityError(FlattenError):
    """Raised when a port consumed during traversal has no driving wire.

    Attributes:
        block (str): Path of the offending block.
    """

    def __init__(self, block: str, message: str):
        super().__init__(f"{message} (block {block!r})")
        self.block = block


class UnsupportedConstructError(FlattenError):
    """Raised by lowering rules for operations that have no polynomial form.

    Discovery catches it and records an ``unsupported`` diagnostic instead of
    aborting.
    """


class FlattenWarning(UserWarning):
    """Base class for non-fatal flattening diagnostics."""


class UnsupportedBlockWarning(FlattenWarning):
    pass


class AliasCycleWarning(FlattenWarning):
    pass


class InfeasibleBoundWarning(FlattenWarning):
    pass


class StructureWarning(FlattenWarning):
    pass


_WARNING_FOR_KIND: Dict[str, Type[FlattenWarning]] = {
    "unsupported": UnsupportedBlockWarning,
    "alias-cycle": AliasCycleWarning,
    "infeasible-bound": InfeasibleBoundWarning,
    "structure": StructureWarning,
}


@dataclass
class Diagnostic:
    """One recorded modelling problem.

    Attributes:
        kind: One of ``unsupported``, ``alias-cycle``, ``infeasible-bound``,
            ``structure``.
        message: Human readable description.
        block: Path of the block involved, if any.
    """

    kind: str
    message: str
    block: Optional[str] = None

    def __str__(self) -> str:
        if self.block is None:
            return f"[{self.kind}] {self.message}"
        return f"[{self.kind}] {self.block}: {self.message}"


@dataclass
class Diagnostics:
    """Ordered collection of diagnostics threaded through the pipeline.

    Every entry is also emitted once through ``warnings.warn`` with the
    ``FlattenWarning`` subclass matching its kind.
    """

    entries: List[Diagnostic] = field(default_factory=list)
    emit: bool = True

    def report(self, kind: str, message: str, block: Optional[str] = None) -> Diagnostic:
        if kind not in _WARNING_FOR_KIND:
            raise ValueError(f"Unknown diagnostic kind: {kind!r}")
        entry = Diagnostic(kind=kind, message=message, block=block)
        self.entries.append(entry)
        if self.emit:
            warnings.warn(str(entry), _WARNING_FOR_KIND[kind], stacklevel=3)
        return entry

    def of_kind(self, kind: str) -> List[Diagnostic]:
        return [d for d in self.entries if d.kind == kind]

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(self.entries)

    def __bool__(self) -> bool:
        return bool(self.entries)
