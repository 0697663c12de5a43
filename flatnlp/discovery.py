"""Graph discovery.

Breadth-first traversal backwards from bound and cost sinks. Every reached
outport gets one step variable per scalar. Primitive blocks are lowered the
first time any of their ports is reached and all of their outports are
registered. Reroute blocks (subsystem boundaries, mux/demux, goto/from) do
not introduce variables of their own: each of their scalars is resolved
through to the real upstream scalar and recorded as an alias edge for
canonicalization. Traversal stops at input/external boundary blocks.
"""

from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Tuple

import numpy as np

from flatnlp.blocks import (
    BOUNDARY_KINDS,
    SINK_KINDS,
    STATE_KINDS,
    Block,
    BlockKind,
    BlockTable,
    Hold,
    parse_move_blocking,
)
from flatnlp.diagram import (
    BOUND_REFERENCE,
    COST_REFERENCE,
    EXTERNAL_REFERENCES,
    INPUT_REFERENCES,
    POLYBLOCK_REFERENCE,
    Diagram,
    DiagramBlock,
    Port,
)
from flatnlp.errors import ConnectivityError, Diagnostics, UnsupportedConstructError
from flatnlp.lowering import BlockLowerer
from flatnlp.variables import MAJOR_PHASES, Phase, StepVarTable

_PHASE_FLAGS = {
    Phase.INITIAL: "initial_step",
    Phase.INTERMEDIATE: "intermediate_step",
    Phase.FINAL: "final_step",
}

_BLOCK_TYPE_KINDS = {
    "From": BlockKind.ROUTE,
    "Mux": BlockKind.MUX,
    "Demux": BlockKind.DEMUX,
    "UnitDelay": BlockKind.DELAY,
    "Integrator": BlockKind.INTEGRATOR,
}


def classify(block: DiagramBlock) -> BlockKind:
    """Variant tag of a diagram block."""
    if block.reference == BOUND_REFERENCE:
        return BlockKind.BOUND
    if block.reference == COST_REFERENCE:
        return BlockKind.COST
    if block.reference in INPUT_REFERENCES:
        return BlockKind.INPUT
    if block.reference in EXTERNAL_REFERENCES:
        return BlockKind.EXTERNAL
    if block.reference == POLYBLOCK_REFERENCE:
        return BlockKind.PRIMITIVE
    if block.block_type == "SubSystem" and block.reference is None:
        return BlockKind.SUBSYSTEM_BOUNDARY
    if block.block_type == "Inport" and block.parent is not None:
        return BlockKind.SUBSYSTEM_BOUNDARY
    return _BLOCK_TYPE_KINDS.get(block.block_type, BlockKind.PRIMITIVE)


def _flag_on(value) -> bool:
    return value is True or value == "on"


# Resolve-through for reroute kinds. Each resolver maps one outport of a
# reroute block to the real upstream (outport, sub_index) of every scalar.

Upstream = List[Tuple[Port, int]]

_RESOLVERS: Dict[str, Callable[["GraphDiscovery", Port], Upstream]] = {}


def resolver(block_type: str):
    def register(fn):
        _RESOLVERS[block_type] = fn
        return fn

    return register


def resolve_through(discovery: "GraphDiscovery", port: Port) -> Upstream:
    fn = _RESOLVERS.get(port.block.block_type)
    if fn is None:
        raise ConnectivityError(
            port.block.path, f"No resolve-through rule for block type {port.block.block_type!r}"
        )
    return fn(discovery, port)


@resolver("SubSystem")
def _resolve_subsystem_outport(discovery: "GraphDiscovery", port: Port) -> Upstream:
    subsystem = port.block
    inner = discovery.diagram.subsystem_port_block(subsystem, "Outport", port.number)
    if inner is None:
        raise ConnectivityError(subsystem.path, f"No Outport block for outport {port.number}")
    upstream = discovery.diagram.driver(inner.inport(1))
    return [(upstream, i) for i in range(discovery.width(port))]


@resolver("Inport")
def _resolve_inner_inport(discovery: "GraphDiscovery", port: Port) -> Upstream:
    inner = port.block
    number = int(discovery.diagram.evaluate_param(inner, "Port"))
    parent = inner.parent
    if number > len(parent.inports):
        raise ConnectivityError(inner.path, f"Subsystem has no inport {number}")
    upstream = discovery.diagram.driver(parent.inport(number))
    return [(upstream, i) for i in range(discovery.width(port))]


@resolver("From")
def _resolve_from(discovery: "GraphDiscovery", port: Port) -> Upstream:
    goto = discovery.diagram.goto_for(port.block)
    if goto is None:
        tag = discovery.diagram.evaluate_param(port.block, "GotoTag")
        raise ConnectivityError(port.block.path, f"No Goto block for tag {tag!r}")
    upstream = discovery.diagram.driver(goto.inport(1))
    return [(upstream, i) for i in range(discovery.width(port))]


@resolver("Mux")
def _resolve_mux(discovery: "GraphDiscovery", port: Port) -> Upstream:
    upstream = []
    for inport in port.block.inports:
        src = discovery.diagram.driver(inport)
        upstream.extend((src, i) for i in range(discovery.width(src)))
    return upstream


@resolver("Demux")
def _resolve_demux(discovery: "GraphDiscovery", port: Port) -> Upstream:
    block = port.block
    src = discovery.diagram.driver(block.inport(1))
    offset = sum(discovery.width(p) for p in block.outports[: port.number - 1])
    return [(src, offset + i) for i in range(discovery.width(port))]


@dataclass
class DiscoveryResult:
    diagram: Diagram
    blocks: BlockTable
    step_vars: StepVarTable
    diagnostics: Diagnostics


class GraphDiscovery:
    """Backward breadth-first traversal from the sinks of a diagram.

    Args:
        diagram (Diagram): Diagram to traverse.
        default_hold (Hold): Hold used for input/external blocks without an
            ``interpType`` parameter.
        diagnostics (Diagnostics): Collection non-fatal problems are reported to.
    """

    def __init__(
        self,
        diagram: Diagram,
        default_hold: Hold = Hold.ZERO_ORDER,
        diagnostics: Optional[Diagnostics] = None,
    ):
        self.diagram = diagram
        self.default_hold = default_hold
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()
        self.lowerer = BlockLowerer(diagram)
        self.blocks = BlockTable()
        self.step_vars = StepVarTable()
        self._queue: Deque[Port] = deque()
        self._visited = set()
        self._aliases: List[Tuple[int, Port, int]] = []

    def width(self, port: Port) -> int:
        return self.diagram.port_width(port)

    def run(self) -> DiscoveryResult:
        sinks = self.diagram.find_blocks(reference=BOUND_REFERENCE) + self.diagram.find_blocks(
            reference=COST_REFERENCE
        )
        for sink in sinks:
            self._record(sink)
            for inport in sink.inports:
                self._enqueue(self.diagram.driver(inport))

        while self._queue:
            self._visit(self._queue.popleft())

        self._link_aliases()
        self._link_inputs()
        self._set_flags()
        self._collect_bounds()
        self._collect_costs()
        self._check_structure()
        return DiscoveryResult(self.diagram, self.blocks, self.step_vars, self.diagnostics)

    def _enqueue(self, port: Port) -> None:
        if id(port) not in self._visited:
            self._visited.add(id(port))
            self._queue.append(port)

    def _visit(self, port: Port) -> None:
        source = port.block
        block = self.blocks.get(source)
        first_visit = block is None
        if first_visit:
            block = self._record(source)

        if block.reroute:
            first = self.step_vars.add_port(block.index, port, self.width(port))
            for sub, (upstream, upstream_sub) in enumerate(resolve_through(self, port)):
                self._aliases.append((first + sub, upstream, upstream_sub))
                self._enqueue(upstream)
            return

        if not first_visit:
            return
        for outport in source.outports:
            self._visited.add(id(outport))
            self.step_vars.add_port(block.index, outport, self.width(outport))
        if block.kind in BOUNDARY_KINDS:
            return
        for inport in source.inports:
            self._enqueue(self.diagram.driver(inport))

    def _record(self, source: DiagramBlock) -> Block:
        kind = classify(source)
        attrs = {}
        if kind == BlockKind.PRIMITIVE:
            try:
                attrs["system"] = self.lowerer.lower(source)
            except UnsupportedConstructError as e:
                self.diagnostics.report("unsupported", str(e), source.path)
        elif kind in BOUNDARY_KINDS:
            period, offset = parse_move_blocking(
                self.diagram.evaluate_param(source, "move_blocking_info", None)
            )
            interp = self.diagram.evaluate_param(source, "interpType", None)
            attrs["period"] = period
            attrs["offset"] = offset
            attrs["hold"] = self.default_hold if interp is None else Hold.parse(interp)
        elif kind == BlockKind.DELAY:
            attrs["hold"] = Hold.ZERO_ORDER
        elif kind in SINK_KINDS:
            attrs["sink_phases"] = frozenset(
                p
                for p in MAJOR_PHASES
                if _flag_on(self.diagram.evaluate_param(source, _PHASE_FLAGS[p], "on"))
            )
        return self.blocks.add(source, kind, **attrs)

    def _scalar_index(self, port: Port, sub: int) -> int:
        first = self.step_vars.first_index(port)
        if first is None:
            raise ConnectivityError(port.block.path, f"Outport {port.number} was never reached")
        return first + sub

    def _link_aliases(self) -> None:
        for index, upstream, sub in self._aliases:
            self.step_vars[index].alias_of = self._scalar_index(upstream, sub)

    def _link_inputs(self) -> None:
        for block in self.blocks:
            block.outputs = [
                i for port in block.source.outports for i in self.step_vars.port_indices(port)
            ]
            if block.reroute or block.kind in BOUNDARY_KINDS:
                continue
            block.inputs = [
                i
                for inport in block.source.inports
                for i in self.step_vars.port_indices(self.diagram.driver(inport))
            ]

    def _set_flags(self) -> None:
        for block in self.blocks:
            for i in block.outputs:
                var = self.step_vars[i]
                var.input = var.input or block.kind == BlockKind.INPUT
                var.external = var.external or block.kind == BlockKind.EXTERNAL
                var.state = var.state or block.kind in STATE_KINDS

    def _collect_bounds(self) -> None:
        for block in self.blocks.of_kind(BlockKind.BOUND):
            n = len(block.inputs)
            lower = self._broadcast(block, "lb", -np.inf, n)
            upper = self._broadcast(block, "ub", np.inf, n)
            if lower is None or upper is None:
                continue
            for i, lb, ub in zip(block.inputs, lower, upper):
                for phase in block.sink_phases:
                    self.step_vars[i].tighten(phase, lb, ub)

    def _broadcast(self, block: Block, name: str, default: float, n: int) -> Optional[np.ndarray]:
        value = np.atleast_1d(
            np.asarray(self.diagram.evaluate_param(block.source, name, default), dtype=float)
        ).ravel()
        if value.size == 1:
            return np.full(n, value[0])
        if value.size != n:
            self.diagnostics.report(
                "structure", f"Bound {name} of length {value.size} on {n} signals", block.path
            )
            return None
        return value

    def _collect_costs(self) -> None:
        for block in self.blocks.of_kind(BlockKind.COST):
            for i in block.inputs:
                for phase in block.sink_phases:
                    self.step_vars[i].add_cost(phase, 1.0)

    def _check_structure(self) -> None:
        """Compare every recorded block's variables with the diagram wiring."""
        for block in self.blocks:
            if block.reroute:
                continue
            expected_out = sum(self.width(p) for p in block.source.outports)
            if len(block.outputs) != expected_out:
                self.diagnostics.report(
                    "structure",
                    f"{len(block.outputs)} output variables for {expected_out} outputs",
                    block.path,
                )
            for i in block.outputs:
                if self.step_vars[i].block != block.index:
                    self.diagnostics.report(
                        "structure", f"Output variable {i} belongs to another block", block.path
                    )
            if block.kind in BOUNDARY_KINDS:
                continue
            expected_in = sum(self.width(p) for p in block.source.inports)
            if len(block.inputs) != expected_in:
                self.diagnostics.report(
                    "structure",
                    f"{len(block.inputs)} input variables for {expected_in} inputs",
                    block.path,
                )
            if not block.system.is_empty and block.system.n_vars != expected_in + expected_out:
                self.diagnostics.report(
                    "structure",
                    f"Local constraint has {block.system.n_vars} columns for "
                    f"{expected_in + expected_out} signals",
                    block.path,
                )


def discover(
    diagram: Diagram,
    default_hold: Hold = Hold.ZERO_ORDER,
    diagnostics: Optional[Diagnostics] = None,
) -> DiscoveryResult:
    """Run graph discovery on ``diagram``."""
    return GraphDiscovery(diagram, default_hold, diagnostics).run()
