"""Synthetic fleet telemetry and incident simulation.

This package contains the simulation engine and its domain models,
isolated from UI and transport concerns for easy testing and reasoning.
"""
