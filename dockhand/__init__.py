"""Dockhand: cache-aware layered builds and reconciled local deployments.

  - Stages with declared inputs and outputs, executed in throwaway snapshots
  - Content-addressed artifact cache keyed on environment, steps and inputs
  - Deterministic skeleton/payload bundles and immutable image tags
  - Image transfer into an isolated runtime store, no remote registry
  - Desired-state reconciliation with backoff and a retry budget
  - Fail-closed secret and layered config validation before listen
"""

__version__ = "0.1.0"
__description__ = "Layered build and deploy orchestrator"

from dockhand.core.orchestrator import Orchestrator
from dockhand.cli.app import app as cli

__all__ = ["Orchestrator", "cli", "__version__"]
