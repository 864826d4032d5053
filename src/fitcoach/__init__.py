"""
fitcoach — Agentic orchestration core for a fitness-coaching assistant.

Entry points:
    fitcoach.kernel.bootstrap.build_stack   wire everything from Settings
    fitcoach.main.run                       CLI REPL
"""

__version__ = "1.0.0"
