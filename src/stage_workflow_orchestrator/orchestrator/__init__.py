"""Orchestrator components.

- Settings loaded from .env
- Structured logging
- Workflow templates and built-in presets
- The execution engine and its runtime (store, executor, scheduler, gateway)
- A small CLI surface
"""
