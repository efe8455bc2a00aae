"""idverify - Identity registration and verification pipeline."""

__version__ = "0.1.0"
