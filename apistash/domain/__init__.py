"""Domain Layer: value objects, contracts and events.

Contains no I/O. Infrastructure adapters implement the interfaces
defined here.
"""
