import pytest

from flatnlp.blocks import Hold
from flatnlp.config import HorizonConfig
from flatnlp.integrators import TABLEAU_MAP


def test_defaults():
    config = HorizonConfig()
    assert config.horizon == 1
    assert config.dt == 1.0
    assert config.integ_method == "None"
    assert config.tableau is None
    assert config.n_stages == 0
    assert config.default_hold_kind == Hold.ZERO_ORDER


def test_named_method_resolves_tableau():
    config = HorizonConfig(horizon=10, dt=0.1, integ_method="RK4", default_hold="FOH")
    assert config.tableau is TABLEAU_MAP["RK4"]
    assert config.n_stages == 4
    assert config.default_hold_kind == Hold.FIRST_ORDER


def test_unknown_method_falls_back_to_none():
    with pytest.warns(UserWarning):
        config = HorizonConfig(horizon=3, integ_method="Implicit")
    assert config.integ_method == "None"
    assert config.n_stages == 0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"horizon": 0},
        {"horizon": 2.5},
        {"dt": 0.0},
        {"dt": -1.0},
        {"default_hold": "linear"},
        {"integ_method": "custom"},
    ],
)
def test_invalid_settings(kwargs):
    with pytest.raises(ValueError):
        HorizonConfig(**kwargs)


def test_hold_parse():
    assert Hold.parse("ZOH") == Hold.ZERO_ORDER
    assert Hold.parse("First-Order Hold") == Hold.FIRST_ORDER
    with pytest.raises(ValueError):
        Hold.parse("Cubic")
