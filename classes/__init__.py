"""classes/ -- Classes, memberships and the ownership/role rules that govern them.

Layer rule: classes/ imports only core/ + third-party libraries.
"""
