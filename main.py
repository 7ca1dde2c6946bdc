"""
Main Application Entry Point

FastAPI application exposing graph-backed question answering and knowledge
graph maintenance.
"""

from core.app_factory import create_app

app = create_app()
