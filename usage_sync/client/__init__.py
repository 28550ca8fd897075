"""
Submission client: credentials, HTTP calls and the incremental sync workflow.
"""
