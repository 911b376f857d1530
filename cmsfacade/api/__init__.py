"""
HTTP surface for the content facade.
"""

from cmsfacade.api.server import ContentServer, create_app, error_response

__all__ = ["ContentServer", "create_app", "error_response"]
