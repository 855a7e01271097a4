"""Converger engine for declarative infrastructure stacks.

Builds a dependency graph from resource declarations, diffs it against
the persisted observed state, and applies the resulting plan under an
exclusive state lock.
"""
