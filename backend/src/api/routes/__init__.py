"""API route handlers for the follow-up engine."""

from src.api.routes import follow_ups as follow_ups

__all__ = ["follow_ups"]
