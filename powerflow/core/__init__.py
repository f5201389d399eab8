"""Logging setup and the error taxonomy shared by all solvers."""
