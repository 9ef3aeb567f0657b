"""Payload codecs for interpreting transport results."""
