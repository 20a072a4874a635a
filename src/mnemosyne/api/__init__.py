"""
FastAPI REST API for Mnemosyne.

Endpoints:
    GET  /health                    - Liveness and index status
    GET  /ready                     - Component readiness
    GET  /stats                     - Index, provider and agent statistics
    GET  /agents                    - List agents
    POST /agents/{agent_id}/execute - Run a query through an agent
    POST /query                     - Direct retrieval
    POST /session/unlock            - Set the master password
    POST /session/lock              - Clear the master password
    POST /index                     - Index the vault
"""

from mnemosyne.api.main import app, create_app

__all__ = ["app", "create_app"]
