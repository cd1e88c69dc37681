"""
Serverless entry point for the Helpdesk SLA Engine API
"""
import os

# Set environment variables for serverless
os.environ.setdefault("ENVIRONMENT", "production")
os.environ.setdefault("SLA_CONFIG_PATH", "sla_config.yaml")
os.environ.setdefault("SLA_EVALUATION_INTERVAL", "0")  # Sweeps are triggered via POST /sla/sweep

from mangum import Mangum

from helpdesk_sla.main import app

# Lambda handler for ASGI app (disable lifespan for serverless)
handler = Mangum(app, lifespan="off")
