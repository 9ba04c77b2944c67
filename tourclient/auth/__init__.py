"""
Authentication package for the TensorTours client.

This package contains secure credential storage, the identity provider client,
and the session manager that keeps ID tokens fresh.
"""
