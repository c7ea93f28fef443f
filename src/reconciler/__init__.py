"""Reconciliation engine for declarative platform manifests.

Builds a dependency graph from a manifest, diffs it against recorded
live state, and drives a provider through create/update/delete calls
until live state matches the declaration.
"""
