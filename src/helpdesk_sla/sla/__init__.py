"""
SLA Module
==========

Bounded context for business-time SLA computation.

Responsibilities:
- Compute response/solution deadlines from contract rules and business calendars
- Keep an append-only history of calculations with a single current row per ticket
- Sweep in-flight calculations and emit escalation events exactly once per threshold
- Recompute deadlines when priority, contract or calendar change mid-flight
- Escalate via Slack notifications
"""

__version__ = "1.0.0"
