"""Deterministic workflow core.

This package holds the pieces that do no I/O:
- Signals (validated external commands)
- Effects (what the runtime must carry out)
- Instance state and run-state transitions
- Reminder timing rules
- The engine that applies one event at a time
- The audit ledger model and replay
"""

__all__: list[str] = []
