"""Real-time job synchronization engine.

Turns Socket.IO job lifecycle notifications into a consistent local view of
job state, survives channel drops, and backstops missed notifications with
polling.
"""

__version__ = "0.1.0"
