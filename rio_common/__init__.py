"""Common utilities shared by the estimator and its front-ends.

This package hosts modules that are estimator-agnostic (KPI event logging
and per-stage timing).
"""
