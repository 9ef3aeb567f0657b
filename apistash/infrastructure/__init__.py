"""Infrastructure Layer: Contains concrete implementations and adapters.

Connects the application to the outside world (HTTP, file system, redis,
console) by implementing the interfaces defined in the domain layer.
"""
