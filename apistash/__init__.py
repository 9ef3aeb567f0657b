"""apistash: a resilience layer for outbound API calls.

Decides whether a call may proceed (rate limiting), whether it can be
skipped entirely (caching), and how to recover when it fails
(retry/backoff).
"""

__version__ = "1.0.0"
