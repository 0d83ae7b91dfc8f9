"""Dialogue simulation: test a flow's replies turn by turn without going live."""
from simulation.engine import DialogueSimulator, SimulationState, TraversalMode
