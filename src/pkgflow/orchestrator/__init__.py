"""Execution engine, task invocation, dead letters and administrative operations."""
