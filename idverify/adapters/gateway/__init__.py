"""Gateway adapters - Remote OCR and face-enrollment clients."""

from .http import HttpVerificationGateway

__all__ = ["HttpVerificationGateway"]
