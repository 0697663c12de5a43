import numpy as np

from flatnlp import Diagram, FlatteningProblem, lower_model_spec

horizon = 20
dt = 0.1

diagram = Diagram("double_integrator")

a = diagram.add_block("a", reference="InputFromWorkspace", interpType="First-Order Hold")
v = diagram.add_block("v", "Integrator")
p = diagram.add_block("p", "Integrator")
diagram.connect(a, v)
diagram.connect(v, p)

a_max = diagram.add_block("a_max", reference="Bound", lb=-2.0, ub=2.0)
p_range = diagram.add_block("p_range", reference="Bound", lb=-1.0, ub=11.0)
rest = diagram.add_block("rest", reference="Bound", lb=0.0, ub=0.0, intermediate_step="off")
target = diagram.add_block(
    "target",
    reference="Bound",
    lb=10.0,
    ub=10.0,
    initial_step="off",
    intermediate_step="off",
)
a_squared = diagram.add_block("a_squared", "Product")
cost = diagram.add_block("cost", reference="DiscreteCost")

diagram.connect(a, a_max)
diagram.connect(p, p_range)
diagram.connect(v, rest)
diagram.connect(p, target)
diagram.connect(a, a_squared, 1, 1)
diagram.connect(a, a_squared, 1, 2)
diagram.connect(a_squared, cost)

problem = FlatteningProblem(
    diagram,
    horizon=horizon,
    dt=dt,
    integ_method="Trapez",
    printing=True,
)

if __name__ == "__main__":
    spec = problem.extract()
    nlp = lower_model_spec(spec)

    x = np.zeros(spec.n_vars)
    print("Objective at rest:", float(nlp.objective(x)))
    print("Max equality violation at rest:", float(np.abs(nlp.eq(x)).max()))
