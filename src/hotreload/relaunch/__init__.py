"""
Relaunch supervisor for hot reload sessions.

The supervisor runs as its own detached process (``python -m
hotreload.relaunch``) so it outlives the server that spawned it.
"""

from hotreload.relaunch.diagnostic import DiagnosticListener
from hotreload.relaunch.session import RelaunchSession, SessionState, SessionTracker
from hotreload.relaunch.supervisor import RelaunchSupervisor

__all__ = [
    "DiagnosticListener",
    "RelaunchSession",
    "RelaunchSupervisor",
    "SessionState",
    "SessionTracker",
]
