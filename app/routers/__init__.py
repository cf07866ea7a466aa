"""HTTP routers for the orchestration service."""
