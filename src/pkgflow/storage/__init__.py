"""SQLite persistence for pipeline executions, dead letters and the package catalog."""
