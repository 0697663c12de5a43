"""Phase propagation.

Marks, per canonical variable, the lifecycle phases it must exist in:
initial, intermediate and final (the major grid) and minor (integration
stages inside a major interval).

Each seed is swept backwards along input edges with one fixed phase set,
using a visited set per seed. Bound and cost sinks seed their flagged
phases. State blocks end a sweep and become seeds of their own:

- a delay needs its input at the initial and intermediate steps as soon as
  its output is live at any later point (intermediate, final or minor); it
  is re-seeded whenever its output liveness grows,
- an integrator seeds the minor phase on its input once, and its output is
  forced live on the whole major grid.

A delay reached by a minor sweep is held at its major values, so its output
is forced live on the major grid as well. Input and external blocks end
every sweep. Afterwards any minor-live input or external variable is made
live on the whole major grid so holds can anchor to it.
"""

from collections import deque
from typing import Deque, Dict, FrozenSet, List, Set, Tuple

from flatnlp.blocks import BOUNDARY_KINDS, SINK_KINDS, Block, BlockKind, BlockTable
from flatnlp.variables import MAJOR_PHASES, Phase, StepVarTable

_LATER = frozenset({Phase.INTERMEDIATE, Phase.FINAL, Phase.MINOR})
_DELAY_NEED = frozenset({Phase.INITIAL, Phase.INTERMEDIATE})


class PhasePropagation:
    def __init__(self, blocks: BlockTable, step_vars: StepVarTable, minor: bool = False):
        self.blocks = blocks
        self.step_vars = step_vars
        self.minor = minor
        self.live: List[Set[Phase]] = [set() for _ in range(step_vars.n_canonical)]

        # Non-reroute blocks producing each canonical variable
        self.producers: Dict[int, List[int]] = {}
        for block in blocks:
            if block.reroute:
                continue
            for i in block.outputs:
                c = step_vars[i].opt_var_idx
                owners = self.producers.setdefault(c, [])
                if block.index not in owners:
                    owners.append(block.index)

        self._seeded: Dict[int, FrozenSet[Phase]] = {}
        self._pending: Deque[Tuple[int, FrozenSet[Phase]]] = deque()

    def run(self) -> List[FrozenSet[Phase]]:
        for block in self.blocks:
            if block.kind in SINK_KINDS and block.sink_phases:
                self._seed(block, block.sink_phases)

        while self._pending:
            index, phases = self._pending.popleft()
            self._sweep(self.blocks[index], phases)

        self._anchor_boundary_variables()

        for var in self.step_vars:
            var.phases = set(self.live[var.opt_var_idx])
        return [frozenset(p) for p in self.live]

    def _seed(self, block: Block, phases: FrozenSet[Phase]) -> None:
        done = self._seeded.get(block.index, frozenset())
        if phases <= done:
            return
        self._seeded[block.index] = done | phases
        self._pending.append((block.index, frozenset(phases)))

    def _output_phases(self, block: Block) -> Set[Phase]:
        phases: Set[Phase] = set()
        for i in block.outputs:
            phases |= self.live[self.step_vars[i].opt_var_idx]
        return phases

    def _force_outputs_major(self, block: Block) -> None:
        for i in block.outputs:
            self.live[self.step_vars[i].opt_var_idx].update(MAJOR_PHASES)

    def _reach_state_block(self, block: Block, phases: FrozenSet[Phase]) -> None:
        """A sweep arrived at a delay or integrator: register it as a seed."""
        if block.kind == BlockKind.INTEGRATOR:
            self._force_outputs_major(block)
            if self.minor:
                self._seed(block, frozenset({Phase.MINOR}))
            return
        if Phase.MINOR in phases:
            self._force_outputs_major(block)
        if self._output_phases(block) & _LATER:
            self._seed(block, _DELAY_NEED)

    def _sweep(self, seed: Block, phases: FrozenSet[Phase]) -> None:
        visited = {seed.index}
        queue: Deque[Block] = deque([seed])
        while queue:
            block = queue.popleft()
            for i in block.inputs:
                c = self.step_vars[i].opt_var_idx
                self.live[c].update(phases)
                for owner in self.producers.get(c, []):
                    if owner in visited:
                        continue
                    visited.add(owner)
                    producer = self.blocks[owner]
                    if producer.kind in BOUNDARY_KINDS:
                        continue
                    if producer.kind in (BlockKind.DELAY, BlockKind.INTEGRATOR):
                        self._reach_state_block(producer, phases)
                        continue
                    queue.append(producer)

    def _anchor_boundary_variables(self) -> None:
        classes = self.step_vars.classes()
        for c, phases in enumerate(self.live):
            if Phase.MINOR not in phases:
                continue
            members = classes.get(c, [])
            if any(self.step_vars[i].input or self.step_vars[i].external for i in members):
                phases.update(MAJOR_PHASES)


def propagate_phases(
    blocks: BlockTable, step_vars: StepVarTable, minor: bool = False
) -> List[FrozenSet[Phase]]:
    """Live phases per canonical variable; also stored on every ``StepVar``."""
    return PhasePropagation(blocks, step_vars, minor).run()
