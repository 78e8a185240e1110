"""
Security Gate: aggregates static, dependency and dynamic scan results into a
merge-blocking pass/blocked/indeterminate verdict with a compliance report.
"""
__version__ = "1.0.0"
