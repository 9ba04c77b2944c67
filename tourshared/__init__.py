"""
Shared models, interfaces, exceptions and logging for the TensorTours client core.
"""
