"""
stage-orchestrator — staged build pipeline engine.

Sequences build, test, scan, publish and deploy steps, holds progress behind a
quality gate, scopes credentials to the operations that need them and runs
outcome-dependent hooks once the pipeline concludes.

Importing the package has no side effects: no config loading, no logging
setup.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
