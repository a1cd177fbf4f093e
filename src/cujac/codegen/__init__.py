"""CUDA C source generation from symbolic derivative subgraphs."""
