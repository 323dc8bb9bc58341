"""Operator CLI, configuration and runtime wiring."""
