"""
Timeweave - branch-aware temporal versioning and merge engine.

Independent timelines (branches) of a shared dataset can diverge, be
queried at arbitrary world times, and be reconciled through a three-way
merge with conflict detection.
"""

__version__ = "0.1.0"
