"""bus/ -- Fire-and-forget deletion notifications for other services.

Layer rule: bus/ imports only core/ + third-party libraries.
"""
