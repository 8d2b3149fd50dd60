"""
nodeflow

Node-graph workflow engine: typed nodes joined by handle-named edges,
executed from a worklist with branching, loops, streaming output and
human-in-the-loop pauses.
"""

__version__ = "0.1.0"
