"""Provisioning engine for declarative infrastructure stacks.

Builds a dependency graph from a stack document, diffs it against the
persisted state, and applies the resulting plan through a provider with
bounded concurrency.
"""
