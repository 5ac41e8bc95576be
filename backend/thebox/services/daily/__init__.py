"""Daily challenge domain services: rotation, sessions, scoring, achievements.

This package contains the session and rotation engine. HTTP routes, socket
handlers and CLI commands import from here, keeping transport concerns
separated from core game mechanics.
"""
