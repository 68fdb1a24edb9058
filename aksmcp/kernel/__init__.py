"""Lifecycle kernel — the state machine and the manager that drives it."""
