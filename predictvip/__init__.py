"""
PredictVIP subscription lifecycle and payment reconciliation service.
"""
