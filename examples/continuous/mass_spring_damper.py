import numpy as np

from flatnlp import Diagram, FlatteningProblem

horizon = 15
dt = 0.05

# Plant parameters are looked up in the workspace by name
workspace = {
    "m": 2.0,
    "k_spring": 8.0,
    "c_damper": 0.4,
    "SpringDamperK": np.array([[-8.0, -0.4]]),
}

diagram = Diagram("mass_spring_damper", workspace=workspace)

force = diagram.add_block(
    "force",
    reference="InputFromWorkspace",
    interpType="FOH",
    move_blocking_info=[5, 0],
)
disturbance = diagram.add_block("disturbance", reference="ExternalFromWorkspace")

# Plant
plant = diagram.add_block("plant", inports=2, outports=2)
f_in = diagram.add_block("F", "Inport", parent=plant)
d_in = diagram.add_block("d", "Inport", parent=plant)
offset = diagram.add_block("preload", "Bias", parent=plant, Bias=-0.5)
vel = diagram.add_block("vel", "Integrator", parent=plant)
pos = diagram.add_block("pos", "Integrator", parent=plant)
vel_tag = diagram.add_block("vel_goto", "Goto", parent=plant, GotoTag="v")
vel_for_pos = diagram.add_block("vel_from", "From", parent=plant, GotoTag="v")
vel_for_out = diagram.add_block("vel_out_from", "From", parent=plant, GotoTag="v")
state = diagram.add_block("state", "Mux", parent=plant)
spring_damper = diagram.add_block(
    "spring_damper",
    reference="Polyblock",
    parent=plant,
    P=np.eye(2),
    K="SpringDamperK",
)
net = diagram.add_block("net", "Sum", parent=plant, inports=3, Inputs="++-")
inv_mass = diagram.add_block("inv_mass", "Product", parent=plant, Inputs="*/")
mass = diagram.add_block("mass", "Constant", parent=plant, Value="m")
pos_out = diagram.add_block("p", "Outport", parent=plant)
vel_out = diagram.add_block("v", "Outport", parent=plant)

diagram.connect(force, plant, 1, 1)
diagram.connect(disturbance, plant, 1, 2)

diagram.connect(f_in, offset)
diagram.connect(offset, net, 1, 1)
diagram.connect(spring_damper, net, 1, 2)
diagram.connect(d_in, net, 1, 3)
diagram.connect(net, inv_mass, 1, 1)
diagram.connect(mass, inv_mass, 1, 2)
diagram.connect(inv_mass, vel)
diagram.connect(vel, vel_tag)
diagram.connect(vel_for_pos, pos)
diagram.connect(pos, state, 1, 1)
diagram.connect(vel_for_out, state, 1, 2)
diagram.connect(state, spring_damper)
diagram.connect(pos, pos_out)
diagram.connect(vel_for_out, vel_out)

# Constraints and cost
settle = diagram.add_block(
    "settle",
    reference="Bound",
    lb=[0.95, -0.05],
    ub=[1.05, 0.05],
    initial_step="off",
    intermediate_step="off",
)
start = diagram.add_block(
    "start",
    reference="Bound",
    lb=0.0,
    ub=0.0,
    intermediate_step="off",
    final_step="off",
)
force_limits = diagram.add_block("force_limits", reference="Bound", lb=-20.0, ub=20.0)
no_disturbance = diagram.add_block("no_disturbance", reference="Bound", lb=0.0, ub=0.0)
outputs = diagram.add_block("outputs", "Mux")
effort = diagram.add_block("effort", "Product")
cost = diagram.add_block("cost", reference="DiscreteCost")

diagram.connect(plant, outputs, 1, 1)
diagram.connect(plant, outputs, 2, 2)
diagram.connect(outputs, settle)
diagram.connect(plant, start, 1, 1)
diagram.connect(force, force_limits)
diagram.connect(disturbance, no_disturbance)
diagram.connect(force, effort, 1, 1)
diagram.connect(force, effort, 1, 2)
diagram.connect(effort, cost)

problem = FlatteningProblem(
    diagram,
    horizon=horizon,
    dt=dt,
    integ_method="RK4",
    printing=True,
)

if __name__ == "__main__":
    spec = problem.extract()
    print("State variables at the first step:", int(spec.all_state_vars.sum()))
    print("Equality rows:", spec.eq.n_constraints)
