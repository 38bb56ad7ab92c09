"""
Operations Layer

Pure ranking and points logic used by the reconciliation services. Operations
read from the store but never write; persistence is scheduled by the service
layer.

Each operations module focuses on a specific concern:
- rank_calculator: group ranking with the pending-write overlay
- points: the points formula boundary and its default formula
"""
