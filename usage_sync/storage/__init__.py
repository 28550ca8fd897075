"""
Server-side persistence: schema, records and the submission repository.
"""
