"""Durable-run orchestration for the order lifecycle.

Kept free of imports: the workflow module in this package is loaded
inside the Temporal workflow sandbox.
"""
