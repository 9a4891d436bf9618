"""
Count Kernel - cycle-count session engine core

A stateful, crash-safe store cycle count with:
- Dual counting semantics (identifier scan vs. aggregate quantity)
- Deterministic shortage / overage calculation
- Versioned, immutable session snapshots
- Durable recovery of the single active session
"""

__version__ = "0.1.0"
