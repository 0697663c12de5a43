"""Block lowering: one diagram block to its local polynomial constraint.

Each rule maps a block's operation and its resolved port widths to an
*expression* system ``(P, K)`` over the block's input scalars, one ``K`` row
per output scalar. ``BlockLowerer.lower`` then closes it over the output
columns, so every lowered block reads ``expression - output = 0`` with
columns ordered inputs first, outputs last.

Rules raise ``UnsupportedConstructError`` for operations without a
polynomial form; graph discovery records those and carries on.
"""

from typing import Any, Callable, Dict, List, Sequence

import numpy as np
import scipy.sparse as sp

from flatnlp.diagram import POLYBLOCK_REFERENCE, Diagram, DiagramBlock
from flatnlp.errors import UnsupportedConstructError
from flatnlp.polynomial import PolySystem

_LOWERING_RULES: Dict[str, Callable] = {}


def lowering_rule(*block_types: str):
    def register(fn: Callable[[Any, DiagramBlock], PolySystem]):
        for block_type in block_types:
            _LOWERING_RULES[block_type] = fn
        return fn

    return register


def rule_key(block: DiagramBlock) -> str:
    if block.reference == POLYBLOCK_REFERENCE:
        return POLYBLOCK_REFERENCE
    return block.block_type


def supported_block_types() -> List[str]:
    return sorted(_LOWERING_RULES)


def dispatch(lowerer: Any, block: DiagramBlock) -> PolySystem:
    fn = _LOWERING_RULES.get(rule_key(block))
    if fn is None:
        raise UnsupportedConstructError(
            f"Block type {rule_key(block)!r} is not supported by the lowering pass"
        )
    return fn(lowerer, block)


def parse_operators(spec, n_inputs: int, symbols: str) -> List[str]:
    """Per-input operator list from an ``Inputs`` parameter.

    ``spec`` is either a count (``"3"`` or ``3``: every input uses the first
    symbol) or a string of symbols where ``|`` marks a spacer.
    """
    if isinstance(spec, (int, np.integer)) or (isinstance(spec, str) and spec.isdigit()):
        ops = [symbols[0]] * int(spec)
    else:
        ops = [ch for ch in str(spec) if ch != "|"]
        unknown = [ch for ch in ops if ch not in symbols]
        if unknown:
            raise UnsupportedConstructError(f"Unknown operators {unknown} in Inputs {spec!r}")
    if len(ops) != n_inputs:
        raise UnsupportedConstructError(
            f"Inputs {spec!r} lists {len(ops)} operands for {n_inputs} inports"
        )
    return ops


def _vector_length(widths: Sequence[int]) -> int:
    """Common length of the non-scalar inputs, or 1 if every input is scalar."""
    vector_widths = {w for w in widths if w != 1}
    if len(vector_widths) > 1:
        raise UnsupportedConstructError(
            f"Elementwise inputs of different lengths {sorted(vector_widths)}"
        )
    return vector_widths.pop() if vector_widths else 1


def _broadcast_columns(widths: Sequence[int], scales: Sequence[float], length: int) -> sp.csr_matrix:
    """``length`` x ``sum(widths)`` block row: ``scale * I`` per vector input, a
    constant ``scale`` column per scalar input."""
    blocks = []
    for width, scale in zip(widths, scales):
        if width == 1:
            blocks.append(sp.csr_matrix(np.full((length, 1), float(scale))))
        else:
            blocks.append(float(scale) * sp.identity(width, format="csr"))
    return sp.hstack(blocks, format="csr")


class BlockLowerer:
    """Lowers primitive diagram blocks against a diagram's compiled widths."""

    def __init__(self, diagram: Diagram):
        self.diagram = diagram

    def input_widths(self, block: DiagramBlock) -> List[int]:
        return [self.diagram.port_width(p) for p in block.inports]

    def output_width(self, block: DiagramBlock) -> int:
        return sum(self.diagram.port_width(p) for p in block.outports)

    def param(self, block: DiagramBlock, name: str, default=None):
        return self.diagram.evaluate_param(block, name, default)

    def lower(self, block: DiagramBlock) -> PolySystem:
        """Closed local system of ``block`` over its inputs then outputs."""
        expression = dispatch(self, block)
        n_in = sum(self.input_widths(block))
        n_out = self.output_width(block)
        if expression.n_vars != n_in:
            raise UnsupportedConstructError(
                f"Expression uses {expression.n_vars} input columns, block has {n_in}"
            )
        if expression.n_constraints != n_out:
            raise UnsupportedConstructError(
                f"Expression defines {expression.n_constraints} values, block has {n_out} outputs"
            )
        return expression.append_outputs(n_out)

    @lowering_rule("Sum", "Add")
    def visit_sum(self, block: DiagramBlock) -> PolySystem:
        widths = self.input_widths(block)
        ops = parse_operators(self.param(block, "Inputs", "++"), len(widths), "+-")
        signs = [1.0 if op == "+" else -1.0 for op in ops]
        n_in = sum(widths)
        P = sp.identity(n_in, format="csr")

        # A single vector input collapses to the sum of its elements
        if len(widths) == 1 and self.output_width(block) == 1:
            return PolySystem(P, np.full((1, n_in), signs[0]))

        length = _vector_length(widths)
        return PolySystem(P, _broadcast_columns(widths, signs, length))

    @lowering_rule("Product")
    def visit_product(self, block: DiagramBlock) -> PolySystem:
        mult_type = self.param(block, "Multiplication", "Element-wise(.*)")
        if mult_type != "Element-wise(.*)":
            raise UnsupportedConstructError(f"Multiplication {mult_type!r} is not supported")
        widths = self.input_widths(block)
        ops = parse_operators(self.param(block, "Inputs", "2"), len(widths), "*/")
        exponents = [1.0 if op == "*" else -1.0 for op in ops]
        n_in = sum(widths)

        if len(widths) == 1 and self.output_width(block) == 1:
            return PolySystem(np.full((1, n_in), exponents[0]), [[1.0]])

        length = _vector_length(widths)
        P = _broadcast_columns(widths, exponents, length)
        return PolySystem(P, sp.identity(length, format="csr"))

    @lowering_rule("Constant")
    def visit_constant(self, block: DiagramBlock) -> PolySystem:
        value = np.atleast_1d(np.asarray(self.param(block, "Value", 1.0), dtype=float)).ravel()
        n_out = self.output_width(block)
        if value.size == 1:
            value = np.full(n_out, value[0])
        if value.size != n_out:
            raise UnsupportedConstructError(
                f"Constant with {value.size} values drives {n_out} outputs"
            )
        # Constant monomial only
        return PolySystem(sp.csr_matrix((1, 0)), value.reshape(-1, 1))

    @lowering_rule("Gain")
    def visit_gain(self, block: DiagramBlock) -> PolySystem:
        mult_type = self.param(block, "Multiplication", "Element-wise(K.*u)")
        if mult_type != "Element-wise(K.*u)":
            raise UnsupportedConstructError(f"Gain multiplication {mult_type!r} is not supported")
        gain = np.atleast_1d(np.asarray(self.param(block, "Gain", 1.0), dtype=float)).ravel()
        (n_in,) = self.input_widths(block)

        P = sp.identity(n_in, format="csr")
        if n_in == 1:
            return PolySystem(P, gain.reshape(-1, 1))
        if gain.size == 1:
            gain = np.full(n_in, gain[0])
        if gain.size != n_in:
            raise UnsupportedConstructError(f"Gain of length {gain.size} on input of width {n_in}")
        return PolySystem(P, sp.diags(gain, format="csr"))

    @lowering_rule("Bias")
    def visit_bias(self, block: DiagramBlock) -> PolySystem:
        bias = np.atleast_1d(np.asarray(self.param(block, "Bias", 0.0), dtype=float)).ravel()
        (n_in,) = self.input_widths(block)
        if bias.size == 1:
            bias = np.full(n_in, bias[0])
        if bias.size != n_in:
            raise UnsupportedConstructError(f"Bias of length {bias.size} on input of width {n_in}")
        # Linear monomial per input, then the constant monomial
        P = sp.vstack([sp.identity(n_in, format="csr"), sp.csr_matrix((1, n_in))], format="csr")
        K = sp.hstack([sp.identity(n_in, format="csr"), sp.csr_matrix(bias.reshape(-1, 1))], format="csr")
        return PolySystem(P, K)

    @lowering_rule(POLYBLOCK_REFERENCE)
    def visit_polyblock(self, block: DiagramBlock) -> PolySystem:
        P = self.param(block, "P")
        K = self.param(block, "K")
        if not sp.issparse(P):
            P = np.atleast_2d(np.asarray(P, dtype=float))
        if not sp.issparse(K):
            K = np.atleast_2d(np.asarray(K, dtype=float))
        return PolySystem(P, K)


def lower_block(diagram: Diagram, block: DiagramBlock) -> PolySystem:
    """Closed local ``(P, K)`` of a single block."""
    return BlockLowerer(diagram).lower(block)
