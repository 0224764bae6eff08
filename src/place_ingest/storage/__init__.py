"""Relational storage for places and batch checkpoints."""
