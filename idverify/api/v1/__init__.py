"""
API v1 package.

Contains versioned API routes for the Identity Registration API.
"""

from idverify.api.v1.routes import router

__all__ = ["router"]
