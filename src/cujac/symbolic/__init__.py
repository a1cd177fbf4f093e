"""Symbolic differentiation of vector functions built from SymPy
expressions."""
