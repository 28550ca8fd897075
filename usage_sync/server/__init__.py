"""
Reconciliation server: the service layer and its HTTP surface.
"""
