from flatnlp.blocks import Block, BlockKind, BlockTable, Hold
from flatnlp.config import Config, DevConfig, HorizonConfig
from flatnlp.diagram import Diagram, DiagramBlock, Port
from flatnlp.errors import (
    AliasCycleWarning,
    ConnectivityError,
    Diagnostic,
    Diagnostics,
    FlattenError,
    FlattenWarning,
    InfeasibleBoundWarning,
    StructureWarning,
    UnsupportedBlockWarning,
    UnsupportedConstructError,
)
from flatnlp.integrators import TABLEAU_MAP, ButcherTableau, get_tableau
from flatnlp.lowered import LoweredNLP, LoweredPolynomial, lower_model_spec, lower_polynomial
from flatnlp.nlp import ModelSpec
from flatnlp.polynomial import PolySystem
from flatnlp.problem import FlatteningProblem, extract_model
from flatnlp.variables import Phase, StepVar, StepVarTable

__all__ = [
    # Main flattening entrypoint
    "FlatteningProblem",
    "extract_model",
    "ModelSpec",
    # Diagram model
    "Diagram",
    "DiagramBlock",
    "Port",
    # Configuration
    "Config",
    "HorizonConfig",
    "DevConfig",
    "ButcherTableau",
    "TABLEAU_MAP",
    "get_tableau",
    # Intermediate representations
    "Block",
    "BlockKind",
    "BlockTable",
    "Hold",
    "Phase",
    "StepVar",
    "StepVarTable",
    "PolySystem",
    # JAX lowering
    "LoweredPolynomial",
    "LoweredNLP",
    "lower_polynomial",
    "lower_model_spec",
    # Errors and diagnostics
    "FlattenError",
    "ConnectivityError",
    "UnsupportedConstructError",
    "FlattenWarning",
    "UnsupportedBlockWarning",
    "AliasCycleWarning",
    "InfeasibleBoundWarning",
    "StructureWarning",
    "Diagnostic",
    "Diagnostics",
]
