"""Repository adapters - Database implementations."""

from .postgres import PostgresIdentityRepository, PostgresOtpRepository, run_migrations

__all__ = ["PostgresIdentityRepository", "PostgresOtpRepository", "run_migrations"]
