"""API Resilience Implementations.

Contains the sliding window rate limiter and the retry executor with
configurable backoff.
Bounded Context: API Resilience
"""
