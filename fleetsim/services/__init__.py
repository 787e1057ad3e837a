"""Simulation services: state store, tick engine, overlay, alerts and incident detection."""
