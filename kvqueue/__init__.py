"""
Serverless Job Queue Toolkit

Emulates a durable job queue, retry/dead-letter pipeline, rate limiter,
metrics/alerting layer and tagged cache on top of a remote Redis-compatible
REST store, driven by short-lived stateless invocations.
"""

__version__ = "1.0.0"
