"""Operator scripts for the simulation harness."""
