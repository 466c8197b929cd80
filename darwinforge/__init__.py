"""
Darwin Forge
============

Pattern detection, proposal generation, automation gating and self-healing
for agent execution traces.
"""

__version__ = "0.1.0"
