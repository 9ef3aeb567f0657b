"""Domain Event definitions.

Represents significant occurrences during an orchestrated call that other
parts of the system might react to (metrics, audit trails, tests).
"""
