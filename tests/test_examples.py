"""
Automatically discover and test all examples in the examples/ directory.

This test discovers all Python files in examples/ that define a 'problem' variable
and checks that they flatten into a consistent model.
"""

import importlib.util
import sys
from pathlib import Path

import jax
import numpy as np
import pytest

from flatnlp import lower_model_spec

IGNORED_FILES = ["__init__.py"]


def discover_examples():
    """Discover all runnable examples in the examples/ directory."""
    examples_dir = Path(__file__).parent.parent / "examples"
    discovered = {}

    for py_file in sorted(examples_dir.rglob("*.py")):
        if py_file.name in IGNORED_FILES:
            continue

        rel_path = py_file.relative_to(examples_dir)
        module_name = str(rel_path.with_suffix("")).replace("/", ".")

        try:
            spec = importlib.util.spec_from_file_location(f"examples.{module_name}", py_file)
            if spec is None or spec.loader is None:
                continue

            module = importlib.util.module_from_spec(spec)
            sys.modules[f"examples.{module_name}"] = module
            spec.loader.exec_module(module)

            # Only include if it has a 'problem' attribute
            if hasattr(module, "problem"):
                test_name = module_name.replace(".", "_")
                discovered[test_name] = {
                    "problem": module.problem,
                    "path": str(rel_path),
                }

        except Exception as e:
            # Skip files that can't be imported
            print(f"Warning: Could not import {rel_path}: {e}")
            continue

    return discovered


# Discover examples at module load time
DISCOVERED_EXAMPLES = discover_examples()


@pytest.mark.integration
@pytest.mark.parametrize(
    "name,metadata", DISCOVERED_EXAMPLES.items(), ids=list(DISCOVERED_EXAMPLES.keys())
)
def test_example(name, metadata, x64):
    """
    Test that a discovered example flattens cleanly.

    Each example is run through:
    1. problem.extract()
    2. lower_model_spec(spec)
    3. Assert no modelling problems were reported and the lowered residuals
       agree with the sparse ones
    """
    problem = metadata["problem"]

    # Disable printing for cleaner test output
    problem.settings.dev.printing = False

    spec = problem.extract()
    assert len(spec.diagnostics) == 0, f"Example {name} ({metadata['path']}) has diagnostics"
    assert spec.eq.n_constraints > 0
    assert spec.eq.n_vars == spec.n_vars

    nlp = lower_model_spec(spec)
    x = np.linspace(0.5, 1.5, spec.n_vars)
    np.testing.assert_allclose(np.asarray(nlp.eq(x)), spec.eq.residual(x), rtol=1e-10, atol=1e-10)

    # Clean up JAX caches
    jax.clear_caches()


def test_discovery_report():
    """Report discovered examples."""
    print(f"\nDiscovered {len(DISCOVERED_EXAMPLES)} examples for integration testing:")
    for name, metadata in sorted(DISCOVERED_EXAMPLES.items()):
        print(f"  - {name:40s} ({metadata['path']})")
    assert len(DISCOVERED_EXAMPLES) > 0, "No examples were discovered!"
