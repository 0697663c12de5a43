import jax
import pytest


@pytest.fixture
def x64():
    """Run JAX in double precision for the duration of a test."""
    previous = jax.config.jax_enable_x64
    jax.config.update("jax_enable_x64", True)
    yield
    jax.config.update("jax_enable_x64", previous)
