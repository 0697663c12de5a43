import numpy as np

from flatnlp import Diagram, FlatteningProblem

# x[k+1] = x[k] + u[k], with u held over windows of 3 steps
horizon = 12

diagram = Diagram("accumulator")

u = diagram.add_block(
    "u",
    reference="InputFromWorkspace",
    move_blocking_info=[3, 0],  # period, offset
)
x = diagram.add_block("x", "UnitDelay")
step = diagram.add_block("step", "Sum", Inputs="++")

diagram.connect(x, step, 1, 1)
diagram.connect(u, step, 1, 2)
diagram.connect(step, x)

# Keep the input small everywhere and drive the state to 5 at the end
u_limits = diagram.add_block("u_limits", reference="Bound", lb=-1.0, ub=1.0)
x_start = diagram.add_block(
    "x_start",
    reference="Bound",
    lb=0.0,
    ub=0.0,
    intermediate_step="off",
    final_step="off",
)
x_end = diagram.add_block(
    "x_end",
    reference="Bound",
    lb=5.0,
    ub=5.0,
    initial_step="off",
    intermediate_step="off",
)
effort = diagram.add_block("effort", "Product", Inputs="**")
cost = diagram.add_block("cost", reference="DiscreteCost")

diagram.connect(u, u_limits)
diagram.connect(x, x_start)
diagram.connect(x, x_end)
diagram.connect(u, effort, 1, 1)
diagram.connect(u, effort, 1, 2)
diagram.connect(effort, cost)

problem = FlatteningProblem(diagram, horizon=horizon, printing=True)

if __name__ == "__main__":
    spec = problem.extract()

    # Free variables left after move-blocking and delay unification
    print("Input windows:", int(spec.in_vars.sum()))
    print("Finite bounds:", int(np.isfinite(spec.lower_bounds).sum()))
