"""
SLA Interfaces Layer
====================

FastAPI route handlers for the SLA engine. This is the outermost layer -
it handles HTTP requests/responses and delegates to application services.
"""

from helpdesk_sla.sla.interfaces.controllers import sla_router

__all__ = ["sla_router"]
