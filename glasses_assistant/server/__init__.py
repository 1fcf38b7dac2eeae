"""
FastAPI server: glasses bridge websocket and dashboard API.
"""

from glasses_assistant.server.app import create_app, run_server

__all__ = ["create_app", "run_server"]
