"""In-memory block diagram.

The flattening pipeline only queries a diagram; it never edits one. This
module provides a small diagram model with the queries the pipeline needs:

- block enumeration by library reference or block type,
- evaluated block parameters (strings are looked up in a workspace mapping),
- port handles with their connected lines,
- compiled port dimensions, with the ``-2`` frame sentinel for irregular
  dimensioning,
- subsystem scopes and goto/from tag lookup.

Port dimensions follow the compiled-dimension convention
``[n_dims, d_1, ..., d_n]``. A frame-based port is
``[-2, n_signals, r_1, c_1, ..., r_n, c_n]`` and its width is the sum of
``r_i * c_i``. Dimensions that are not declared are inferred by ``compile``.
"""

import ast
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np

from flatnlp.errors import ConnectivityError

BOUND_REFERENCE = "Bound"
COST_REFERENCE = "DiscreteCost"
INPUT_REFERENCES = ("InputFromWorkspace", "InputFromSimulink")
EXTERNAL_REFERENCES = ("ExternalFromWorkspace", "ExternalFromSimulink")
POLYBLOCK_REFERENCE = "Polyblock"

_MISSING = object()

_DEFAULT_PORTS = {
    "Inport": (0, 1),
    "Outport": (1, 0),
    "Goto": (1, 0),
    "From": (0, 1),
    "Constant": (0, 1),
    "Sum": (2, 1),
    "Add": (2, 1),
    "Product": (2, 1),
    "Gain": (1, 1),
    "Bias": (1, 1),
    "Mux": (2, 1),
    "Demux": (1, 2),
    "UnitDelay": (1, 1),
    "Integrator": (1, 1),
}

# Library blocks are subsystems, so their ports follow the reference
_REFERENCE_PORTS = {
    BOUND_REFERENCE: (1, 0),
    COST_REFERENCE: (1, 0),
    POLYBLOCK_REFERENCE: (1, 1),
    **{ref: (0, 1) for ref in INPUT_REFERENCES + EXTERNAL_REFERENCES},
}


@dataclass(eq=False)
class Port:
    block: "DiagramBlock"
    kind: str  # "inport" or "outport"
    number: int  # 1-based
    dims: Optional[List[int]] = None
    line: Optional["Line"] = None

    def __repr__(self) -> str:
        return f"Port({self.block.path!r}, {self.kind}, {self.number})"


@dataclass(eq=False)
class Line:
    src: Port
    dsts: List[Port] = field(default_factory=list)


@dataclass(eq=False)
class DiagramBlock:
    name: str
    block_type: str
    path: str
    reference: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    parent: Optional["DiagramBlock"] = None
    children: List["DiagramBlock"] = field(default_factory=list)
    inports: List[Port] = field(default_factory=list)
    outports: List[Port] = field(default_factory=list)

    def inport(self, number: int) -> Port:
        return self.inports[number - 1]

    def outport(self, number: int) -> Port:
        return self.outports[number - 1]

    def __repr__(self) -> str:
        return f"DiagramBlock({self.path!r}, {self.block_type!r})"


def _as_dims(dims: Union[int, Sequence[int]]) -> List[int]:
    if np.isscalar(dims):
        return [1, int(dims)]
    return [int(d) for d in dims]


def dims_width(dims: Sequence[int]) -> int:
    """Number of scalars carried by a port with the given compiled dimensions."""
    if len(dims) == 0:
        return 0
    if dims[0] == -2:
        sizes = dims[2:]
        return int(sum(r * c for r, c in zip(sizes[0::2], sizes[1::2])))
    return int(np.prod(dims[1:], dtype=int))


class Diagram:
    """A block diagram with a parameter workspace.

    Args:
        name (str): Model name, used as the root of every block path.
        workspace (dict): Variables that string parameters are evaluated against.
    """

    def __init__(self, name: str, workspace: Optional[Dict[str, Any]] = None):
        self.name = name
        self.workspace = dict(workspace) if workspace is not None else {}
        self.blocks: List[DiagramBlock] = []
        self._compiled: Optional[Dict[Port, List[int]]] = None

    # Construction

    def add_block(
        self,
        name: str,
        block_type: str = "SubSystem",
        *,
        reference: Optional[str] = None,
        parent: Optional[DiagramBlock] = None,
        inports: Optional[int] = None,
        outports: Optional[int] = None,
        out_dims: Optional[Sequence[Union[int, Sequence[int]]]] = None,
        **params,
    ) -> DiagramBlock:
        """Add a block and return it.

        ``out_dims`` declares compiled dimensions per outport, each entry either a
        width or a full compiled dimension vector. Undeclared outports are
        inferred when the diagram is compiled.
        """
        n_in, n_out = _REFERENCE_PORTS.get(reference) or _DEFAULT_PORTS.get(block_type, (0, 0))
        n_in = n_in if inports is None else inports
        n_out = n_out if outports is None else outports

        prefix = self.name if parent is None else parent.path
        block = DiagramBlock(
            name=name,
            block_type=block_type,
            path=f"{prefix}/{name}",
            reference=reference,
            params=dict(params),
            parent=parent,
        )
        if block_type in ("Inport", "Outport") and "Port" not in block.params:
            siblings = [
                b for b in self.blocks if b.parent is parent and b.block_type == block_type
            ]
            block.params["Port"] = len(siblings) + 1

        block.inports = [Port(block, "inport", i + 1) for i in range(n_in)]
        block.outports = [Port(block, "outport", i + 1) for i in range(n_out)]
        if out_dims is not None:
            if len(out_dims) != n_out:
                raise ValueError(
                    f"Block {block.path!r} has {n_out} outports but {len(out_dims)} out_dims"
                )
            for port, dims in zip(block.outports, out_dims):
                port.dims = _as_dims(dims)

        if parent is not None:
            parent.children.append(block)
        self.blocks.append(block)
        self._compiled = None
        return block

    def connect(
        self, src: DiagramBlock, dst: DiagramBlock, src_port: int = 1, dst_port: int = 1
    ) -> Line:
        """Draw a line from ``src``'s outport to ``dst``'s inport (ports are 1-based)."""
        out = src.outport(src_port)
        inp = dst.inport(dst_port)
        if inp.line is not None:
            raise ValueError(f"{inp!r} is already driven")
        if out.line is None:
            out.line = Line(src=out)
        out.line.dsts.append(inp)
        inp.line = out.line
        self._compiled = None
        return out.line

    # Queries

    def find_blocks(
        self,
        reference: Optional[Union[str, Sequence[str]]] = None,
        block_type: Optional[str] = None,
        within: Optional[DiagramBlock] = None,
    ) -> List[DiagramBlock]:
        """Blocks matching a library reference and/or block type, in insertion order."""
        if isinstance(reference, str):
            reference = (reference,)
        found = []
        for block in self.blocks:
            if reference is not None and block.reference not in reference:
                continue
            if block_type is not None and block.block_type != block_type:
                continue
            if within is not None and not self._is_inside(block, within):
                continue
            found.append(block)
        return found

    @staticmethod
    def _is_inside(block: DiagramBlock, scope: DiagramBlock) -> bool:
        parent = block.parent
        while parent is not None:
            if parent is scope:
                return True
            parent = parent.parent
        return False

    def evaluate_param(self, block: DiagramBlock, name: str, default: Any = _MISSING) -> Any:
        """Evaluate a block parameter in the workspace.

        String values name a workspace variable or hold a Python literal; any
        other string is returned unchanged.
        """
        if name not in block.params:
            if default is _MISSING:
                raise KeyError(f"Block {block.path!r} has no parameter {name!r}")
            return default
        value = block.params[name]
        if not isinstance(value, str):
            return value
        if value in self.workspace:
            return self.workspace[value]
        try:
            return ast.literal_eval(value)
        except (ValueError, SyntaxError, TypeError):
            return value

    def source_of(self, inport: Port) -> Optional[Port]:
        return None if inport.line is None else inport.line.src

    def destinations_of(self, outport: Port) -> List[Port]:
        return [] if outport.line is None else list(outport.line.dsts)

    def driver(self, inport: Port) -> Port:
        """Driving outport of ``inport``; raises ``ConnectivityError`` if unconnected."""
        src = self.source_of(inport)
        if src is None:
            raise ConnectivityError(
                inport.block.path, f"Inport {inport.number} is not connected"
            )
        return src

    def subsystem_port_block(
        self, subsystem: DiagramBlock, block_type: str, number: int
    ) -> Optional[DiagramBlock]:
        """The ``Inport``/``Outport`` block inside ``subsystem`` with port ``number``."""
        for child in subsystem.children:
            if child.block_type == block_type and int(self.evaluate_param(child, "Port")) == number:
                return child
        return None

    def goto_for(self, from_block: DiagramBlock) -> Optional[DiagramBlock]:
        """The ``Goto`` matching a ``From`` tag, preferring the ``From``'s own scope."""
        tag = self.evaluate_param(from_block, "GotoTag")
        candidates = [
            b
            for b in self.find_blocks(block_type="Goto")
            if self.evaluate_param(b, "GotoTag") == tag
        ]
        for goto in candidates:
            if goto.parent is from_block.parent:
                return goto
        return candidates[0] if candidates else None

    # Compiled dimensions

    def port_dims(self, port: Port) -> List[int]:
        """Compiled dimensions of a port; an inport carries its driver's dimensions."""
        if port.kind == "inport":
            port = self.driver(port)
        if self._compiled is None:
            self.compile()
        return list(self._compiled[port])

    def port_width(self, port: Port) -> int:
        return dims_width(self.port_dims(port))

    def compile(self) -> None:
        """Resolve every outport's dimensions.

        Declared dimensions are kept. The rest are inferred by fixed-point
        iteration over the block rules; anything still unknown becomes scalar.
        """
        known: Dict[Port, List[int]] = {}
        pending: List[Port] = []
        for block in self.blocks:
            for port in block.outports:
                if port.dims is not None:
                    known[port] = list(port.dims)
                else:
                    pending.append(port)

        # Strict sweeps need every input resolved. When they stall (feedback
        # loops), one port is resolved from its known inputs only.
        partial = False
        while pending:
            still = []
            resolved = False
            for port in pending:
                dims = None
                if not (partial and resolved):
                    dims = self._infer_dims(port, known, partial)
                if dims is None:
                    still.append(port)
                else:
                    known[port] = dims
                    resolved = True
            if not resolved:
                if partial:
                    break
                partial = True
            else:
                partial = False
            pending = still

        for port in pending:
            known[port] = [1, 1]
        self._compiled = known

    def _input_dims(self, inport: Port, known: Dict[Port, List[int]]) -> Optional[List[int]]:
        src = self.source_of(inport)
        if src is None:
            return None
        return known.get(src)

    def _infer_dims(
        self, port: Port, known: Dict[Port, List[int]], partial: bool = False
    ) -> Optional[List[int]]:
        block = port.block
        btype = block.block_type

        if btype == "Inport":
            if block.parent is None:
                return [1, 1]
            number = int(self.evaluate_param(block, "Port"))
            if number > len(block.parent.inports):
                return [1, 1]
            return self._input_dims(block.parent.inport(number), known)

        if btype == "SubSystem" and block.reference is None:
            inner = self.subsystem_port_block(block, "Outport", port.number)
            if inner is None or not inner.inports:
                return [1, 1]
            return self._input_dims(inner.inport(1), known)

        if btype == "From":
            goto = self.goto_for(block)
            if goto is None or not goto.inports:
                return [1, 1]
            return self._input_dims(goto.inport(1), known)

        in_dims = [self._input_dims(p, known) for p in block.inports]

        if btype == "Mux":
            if any(d is None for d in in_dims):
                return None
            return [1, sum(dims_width(d) for d in in_dims)]

        if btype == "Demux":
            if not in_dims or in_dims[0] is None:
                return None
            return [1, dims_width(in_dims[0]) // max(len(block.outports), 1)]

        if block.reference == POLYBLOCK_REFERENCE:
            K = self.evaluate_param(block, "K")
            shape = getattr(K, "shape", None) or np.shape(K)
            return [1, int(shape[0]) if len(shape) == 2 else 1]

        if btype == "Constant":
            value = self.evaluate_param(block, "Value", 1.0)
            return [1, int(np.size(value))]

        if not partial and any(d is None for d in in_dims):
            return None
        widths = [dims_width(d) for d in in_dims if d is not None]
        if btype == "Gain":
            widths.append(int(np.size(self.evaluate_param(block, "Gain", 1.0))))
        if not block.inports:
            return [1, max(widths)] if widths else [1, 1]
        if not widths:
            return None
        # Elementwise blocks: a vector port with the same shape as the widest input
        widest = max(
            (d for d in in_dims if d is not None), key=dims_width, default=[1, 1]
        )
        if dims_width(widest) == max(widths):
            return list(widest)
        return [1, max(widths)]
