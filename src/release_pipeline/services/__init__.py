"""Adapters for the external systems the pipeline drives.

Each module exposes a Protocol, a real implementation, and a lightweight
stand-in used for tests and dry runs.
"""
