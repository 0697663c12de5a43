from termcolor import colored

RULE = "-" * 81


def intro():
    ascii_art = r'''
                 _____ _       _   _   _ _     ____
                |  ___| | __ _| |_| \ | | |   |  _ \
                | |_  | |/ _` | __|  \| | |   | |_) |
                |  _| | | (_| | |_| |\  | |___|  __/
                |_|   |_|\__,_|\__|_| \_|_____|_|
---------------------------------------------------------------------------------
                  Block diagram to polynomial NLP flattening
---------------------------------------------------------------------------------
'''
    print(ascii_art)


def stage(name: str, elapsed: float):
    print("{:<28} {:>10.2f} ms".format(name, elapsed * 1000.0))


def print_model_summary(spec):
    """Print block, variable and row counts of a flattened model and its diagnostics."""
    blocks = spec.blocks
    step_vars = spec.step_vars

    print(colored(RULE))
    print("{:<28} {:>10}".format("Model", spec.name))
    print("{:<28} {:>10}".format("Horizon", spec.horizon))
    print("{:<28} {:>10}".format("Integration", spec.integ_method))
    if blocks is not None:
        print("{:<28} {:>10}".format("Blocks", len(blocks)))
    if step_vars is not None:
        print("{:<28} {:>10}".format("Step variables", len(step_vars)))
        print("{:<28} {:>10}".format("Canonical variables", step_vars.n_canonical))
    print("{:<28} {:>10}".format("NLP variables", spec.n_vars))
    print("{:<28} {:>10}".format("Equality rows", spec.eq.n_constraints))
    print("{:<28} {:>10}".format("Inequality rows", spec.ineq.n_constraints))
    print("{:<28} {:>10}".format("Cost terms", spec.cost.n_monomials))
    print(colored(RULE))
    print_diagnostics(spec.diagnostics)


def print_diagnostics(diagnostics):
    if not diagnostics:
        print(colored("No modelling problems found", "green"))
        return
    print(colored(f"{len(diagnostics)} modelling problem(s):", "yellow", attrs=["bold"]))
    for entry in diagnostics:
        color = "red" if entry.kind == "infeasible-bound" else "yellow"
        print(colored(f"  {entry}", color))


def footer(computation_time: float):
    print(colored(RULE))
    print("Total Flattening Time: {:.2f} ms".format(computation_time * 1000.0))
