"""
TensorTours client core.

Session lifecycle management and authenticated request orchestration for the
TensorTours backend.
"""
