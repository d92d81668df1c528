"""nodeflow - workflow execution engine.

Runs directed graphs of typed nodes with dependency ordering, partial
failure handling, per-node timeouts and live progress events.
"""

__version__ = "0.1.0"
