"""
usage-sync: incremental submission of token usage accounting.

Clients fingerprint their daily per-source usage, compare against the
fingerprints the server derives from stored data, and send only what changed.
"""

__version__ = "0.4.0"
