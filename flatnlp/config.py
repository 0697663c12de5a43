from dataclasses import dataclass
from typing import Optional

from flatnlp.blocks import Hold
from flatnlp.integrators import ButcherTableau, get_tableau


@dataclass
class HorizonConfig:
    def __init__(
        self,
        horizon: int = 1,
        dt: float = 1.0,
        integ_method: str = "None",
        tableau: Optional[ButcherTableau] = None,
        default_hold: str = "ZOH",
    ):
        """
        Configuration class for horizon expansion settings.

        This class defines how the per-step system is replicated across the prediction
        horizon and whether continuous blocks are integrated with a multi-stage scheme.

        Main arguments:
        These are the arguments most commonly used day-to-day.

        Args:
            horizon (int): Number of major time steps in the prediction horizon. Defaults to 1.
            dt (float): Uniform step size used by the integration coupling constraints. Defaults to 1.0.
            integ_method (str): Integration method for integrator blocks, one of "None", "Euler",
                "Trapez", "RK4" or "custom". Defaults to "None" (no minor stages).

        Other arguments:
        These arguments are less frequently used, and for most purposes you shouldn't need to understand these.

        Args:
            tableau (ButcherTableau): Butcher tableau used when integ_method is "custom". Defaults to `None`.
            default_hold (str): Hold applied to input and external blocks without an interpType
                parameter, "ZOH" or "FOH". Defaults to "ZOH".
        """
        self.horizon = horizon
        self.dt = dt
        self.integ_method = integ_method
        self.tableau = tableau
        self.default_hold = default_hold

        self.__post_init__()

    def __post_init__(self):
        if int(self.horizon) != self.horizon or self.horizon < 1:
            raise ValueError(f"horizon must be a positive integer, got {self.horizon!r}")
        self.horizon = int(self.horizon)
        if not self.dt > 0:
            raise ValueError(f"dt must be positive, got {self.dt!r}")
        if self.default_hold not in ("ZOH", "FOH"):
            raise ValueError(f"default_hold must be 'ZOH' or 'FOH', got {self.default_hold!r}")
        # Unknown method names fall back to "None" with a warning
        self.tableau = get_tableau(self.integ_method, self.tableau)
        if self.tableau is None:
            self.integ_method = "None"

    @property
    def default_hold_kind(self) -> Hold:
        return Hold.ZERO_ORDER if self.default_hold == "ZOH" else Hold.FIRST_ORDER

    @property
    def n_stages(self) -> int:
        return 0 if self.tableau is None else self.tableau.n_stages


@dataclass
class DevConfig:
    def __init__(self, profiling: bool = False, printing: bool = True):
        """
        Configuration class for development settings.

        Args:
            profiling (bool): Whether to profile the flattening run and dump the stats file. Defaults to False.
            printing (bool): Whether to print the banner and model summary. Defaults to True.
        """
        self.profiling = profiling
        self.printing = printing


@dataclass
class Config:
    horizon: HorizonConfig
    dev: DevConfig

    def __post_init__(self):
        pass
