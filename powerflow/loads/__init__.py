"""Voltage-dependent static load models."""
