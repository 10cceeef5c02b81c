"""
Load-generation harness for HTTP health-check validation.

This package ramps virtual users up, holds and ramps them down against a health
endpoint, checks each response, aggregates latency and error rates, and
evaluates pass/fail thresholds once the stage schedule is exhausted.
"""

__version__ = "0.1.0"
