"""
Hot reload capable application server.

This package implements a server that accepts deployment packages over
HTTP, hands them to a detached relaunch supervisor, and comes back up as a
new generation running the deployed code.
"""

__version__ = "0.1.0"
