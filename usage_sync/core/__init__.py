"""
Core modules for usage-sync.

This package contains aggregation, fingerprinting, diffing, payload
construction and submission validation. Nothing here does I/O except
loading the usage events file.
"""
