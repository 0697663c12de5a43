"""Block records produced by graph discovery."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterator, List, Optional

import numpy as np

from flatnlp.polynomial import PolySystem
from flatnlp.variables import Phase


class BlockKind(Enum):
    PRIMITIVE = "primitive"
    BOUND = "bound"
    COST = "cost"
    INPUT = "input"
    EXTERNAL = "external"
    DELAY = "delay"
    INTEGRATOR = "integrator"
    MUX = "mux"
    DEMUX = "demux"
    SUBSYSTEM_BOUNDARY = "subsystem-boundary"
    ROUTE = "route"


# Kinds that only alias an upstream variable instead of introducing one
REROUTE_KINDS = frozenset(
    {BlockKind.MUX, BlockKind.DEMUX, BlockKind.SUBSYSTEM_BOUNDARY, BlockKind.ROUTE}
)
BOUNDARY_KINDS = frozenset({BlockKind.INPUT, BlockKind.EXTERNAL})
SINK_KINDS = frozenset({BlockKind.BOUND, BlockKind.COST})
STATE_KINDS = frozenset({BlockKind.DELAY, BlockKind.INTEGRATOR})


class Hold(Enum):
    ZERO_ORDER = "Zero-Order Hold"
    FIRST_ORDER = "First-Order Hold"

    @classmethod
    def parse(cls, value: str) -> "Hold":
        aliases = {"ZOH": cls.ZERO_ORDER, "FOH": cls.FIRST_ORDER}
        if value in aliases:
            return aliases[value]
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown hold type {value!r}") from None


@dataclass(eq=False)
class Block:
    """One diagram block reached from a sink.

    Attributes:
        index (int): Position in the block table.
        source: The ``DiagramBlock`` this record describes.
        kind (BlockKind): Variant tag.
        system (PolySystem): Local constraint over inputs then outputs. Empty for
            every kind but ``PRIMITIVE``, and for primitives that failed to lower.
        period (float): Move-blocking period for input/external blocks.
        offset (int): Move-blocking offset for input/external blocks.
        hold (Hold): Hold applied to the block's values between major steps.
        inputs (List[int]): Step-variable index of each scalar input, in port order.
        outputs (List[int]): Step-variable index of each scalar output, in port order.
        sink_phases (FrozenSet[Phase]): Major phases a bound or cost applies to.
    """

    index: int
    source: object
    kind: BlockKind
    system: PolySystem = field(default_factory=PolySystem.empty)
    period: float = 1
    offset: int = 0
    hold: Optional[Hold] = None
    inputs: List[int] = field(default_factory=list)
    outputs: List[int] = field(default_factory=list)
    sink_phases: FrozenSet[Phase] = frozenset()

    @property
    def reroute(self) -> bool:
        return self.kind in REROUTE_KINDS

    @property
    def path(self) -> str:
        return self.source.path

    @property
    def move_blocked(self) -> bool:
        return self.kind in BOUNDARY_KINDS and self.period != 1

    def __repr__(self) -> str:
        return f"Block({self.index}, {self.path!r}, {self.kind.value})"


class BlockTable:
    """Growable block table keyed by diagram block identity."""

    def __init__(self):
        self._blocks: List[Block] = []
        self._by_source: Dict[int, Block] = {}

    def get(self, source) -> Optional[Block]:
        return self._by_source.get(id(source))

    def add(self, source, kind: BlockKind, **attrs) -> Block:
        if id(source) in self._by_source:
            raise ValueError(f"Block {source.path!r} already recorded")
        block = Block(index=len(self._blocks), source=source, kind=kind, **attrs)
        self._blocks.append(block)
        self._by_source[id(source)] = block
        return block

    def of_kind(self, *kinds: BlockKind) -> List[Block]:
        return [b for b in self._blocks if b.kind in kinds]

    def __getitem__(self, index: int) -> Block:
        return self._blocks[index]

    def __len__(self) -> int:
        return len(self._blocks)

    def __iter__(self) -> Iterator[Block]:
        return iter(self._blocks)


def parse_move_blocking(info) -> tuple:
    """``(period, offset)`` from a ``move_blocking_info`` parameter value."""
    if info is None:
        return 1, 0
    values = np.atleast_1d(np.asarray(info, dtype=float)).ravel()
    period = values[0] if values.size > 0 else 1
    offset = values[1] if values.size > 1 else 0
    if not np.isinf(period):
        if period < 1 or period != int(period):
            raise ValueError(f"Move-blocking period must be a positive integer or inf, got {period}")
        period = int(period)
    if offset != int(offset):
        raise ValueError(f"Move-blocking offset must be an integer, got {offset}")
    return period, int(offset)
