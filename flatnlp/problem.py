from typing import Optional

from flatnlp import io
from flatnlp.assembly import AssemblyResult, assemble
from flatnlp.canonicalize import canonicalize
from flatnlp.config import Config, DevConfig, HorizonConfig
from flatnlp.diagram import Diagram
from flatnlp.discovery import DiscoveryResult, discover
from flatnlp.errors import Diagnostics
from flatnlp.horizon import Horizon, expand_horizon
from flatnlp.integrators import ButcherTableau
from flatnlp.nlp import ModelSpec, build_model_spec
from flatnlp.phases import propagate_phases
from flatnlp.utils import StageTimer, profiled


class FlatteningProblem:
    def __init__(
        self,
        diagram: Diagram,
        horizon: int = 1,
        dt: float = 1.0,
        integ_method: str = "None",
        tableau: Optional[ButcherTableau] = None,
        default_hold: str = "ZOH",
        printing: bool = False,
        profiling: bool = False,
    ):
        """
        Flattens a block diagram into a polynomial NLP.

        Args:
            diagram (Diagram): The diagram to flatten. Sinks are the blocks referencing
                the Bound and DiscreteCost library blocks.
            horizon (int): Number of major time steps. Defaults to 1.
            dt (float): Step size used by integration coupling constraints. Defaults to 1.0.
            integ_method (str): "None", "Euler", "Trapez", "RK4" or "custom". Defaults to "None".
            tableau (ButcherTableau): Tableau for integ_method "custom".
            default_hold (str): "ZOH" or "FOH" for inputs without an interpType. Defaults to "ZOH".
            printing (bool): Print the banner, stage timings and model summary. Defaults to False.
            profiling (bool): Dump cProfile stats of the run. Defaults to False.

        Returns:
            None
        """
        self.diagram = diagram
        self.settings = Config(
            horizon=HorizonConfig(
                horizon=horizon,
                dt=dt,
                integ_method=integ_method,
                tableau=tableau,
                default_hold=default_hold,
            ),
            dev=DevConfig(profiling=profiling, printing=printing),
        )
        self.diagnostics = Diagnostics()
        self.timer = StageTimer()

        self.discovery: Optional[DiscoveryResult] = None
        self.expansion: Optional[Horizon] = None
        self.assembly: Optional[AssemblyResult] = None
        self.model: Optional[ModelSpec] = None

    def extract(self) -> ModelSpec:
        """Run every flattening stage and return the flattened model.

        Raises:
            ConnectivityError: An inport consumed during discovery has no driving line.
        """
        h = self.settings.horizon
        printing = self.settings.dev.printing
        if printing:
            io.intro()

        with profiled(self.settings.dev.profiling, "extract"):
            with self.timer.stage("Graph discovery"):
                self.discovery = discover(self.diagram, h.default_hold_kind, self.diagnostics)
            blocks = self.discovery.blocks
            step_vars = self.discovery.step_vars

            with self.timer.stage("Canonicalization"):
                canonicalize(step_vars, self.diagnostics)

            with self.timer.stage("Phase propagation"):
                live = propagate_phases(blocks, step_vars, minor=h.tableau is not None)

            with self.timer.stage("Horizon expansion"):
                self.expansion = expand_horizon(
                    blocks, step_vars, live, h.horizon, h.n_stages, self.diagnostics
                )

            with self.timer.stage("Polynomial assembly"):
                self.assembly = assemble(
                    blocks, step_vars, self.expansion, h.tableau, h.dt, self.diagnostics
                )

            with self.timer.stage("NLP assembly"):
                self.model = build_model_spec(
                    self.diagram.name,
                    step_vars,
                    self.expansion,
                    self.assembly,
                    integ_method=h.integ_method,
                    dt=h.dt,
                    diagnostics=self.diagnostics,
                    blocks=blocks,
                )

        if printing:
            for name, elapsed in self.timer.times.items():
                io.stage(name, elapsed)
            io.print_model_summary(self.model)
            io.footer(self.timer.total)
        return self.model


def extract_model(
    diagram: Diagram,
    horizon: int = 1,
    dt: float = 1.0,
    integ_method: str = "None",
    **kwargs,
) -> ModelSpec:
    """Flatten ``diagram`` into a ``ModelSpec`` in one call."""
    return FlatteningProblem(diagram, horizon, dt, integ_method, **kwargs).extract()
