"""
YAML configuration for the client, the server and logging.
"""
