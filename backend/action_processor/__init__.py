"""
Action processor.

Consumes actions from the broker, executes them against external platforms
and resolves every delivery into exactly one acknowledgement.
"""

__version__ = "1.0.0"
