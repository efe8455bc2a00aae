"""
Shared fixtures for integration tests.

Requires PostgreSQL (DATABASE_URL); every test in this directory is
skipped when the database cannot be reached.
"""

from collections.abc import Generator
from datetime import datetime, timezone
from uuid import uuid4

import bcrypt
import pytest
from psycopg_pool import ConnectionPool, PoolTimeout

from idverify.adapters.repository.postgres import (
    PostgresIdentityRepository,
    PostgresOtpRepository,
    run_migrations,
)
from idverify.config.settings import get_settings
from idverify.domain.models import (
    FaceEnrollmentStatus,
    Identity,
    IdVerification,
    IdVerificationStatus,
)


@pytest.fixture(scope="session")
def pool() -> Generator[ConnectionPool, None, None]:
    """Create connection pool for integration tests and apply migrations."""
    settings = get_settings()
    pool = ConnectionPool(
        conninfo=settings.database_url,
        min_size=1,
        max_size=10,
        open=False,
    )
    try:
        pool.open(wait=True, timeout=5.0)
    except PoolTimeout:
        pool.close()
        pytest.skip("PostgreSQL is not reachable")
    run_migrations(pool)
    yield pool
    pool.close()


@pytest.fixture(autouse=True)
def clean_database(pool: ConnectionPool) -> Generator[None, None, None]:
    """Clean identities before each test (verifications and OTPs cascade)."""
    with pool.connection() as conn:
        conn.execute("DELETE FROM identities")
        conn.commit()
    yield


@pytest.fixture
def repository(pool: ConnectionPool) -> PostgresIdentityRepository:
    return PostgresIdentityRepository(pool)


@pytest.fixture
def otp_repository(pool: ConnectionPool) -> PostgresOtpRepository:
    return PostgresOtpRepository(pool)


@pytest.fixture
def make_draft(repository: PostgresIdentityRepository):
    """Factory persisting a draft identity with a pending ID verification."""

    def create_draft(login: str = "alice", password: str = "secret123") -> Identity:
        identity = Identity(
            id=uuid4(),
            login=login,
            email=f"{login}@example.com",
            full_name=login.title(),
            password_hash=bcrypt.hashpw(password.encode(), bcrypt.gensalt(4)).decode(),
            registration_started=datetime.now(timezone.utc),
            id_verification_id=uuid4(),
        )
        repository.create_draft(
            identity,
            IdVerification(
                id=identity.id_verification_id,
                identity_id=identity.id,
                image_ref=f"sha256:{'0' * 64}/id.jpg",
            ),
        )
        return identity

    return create_draft


@pytest.fixture
def satisfy_gates(repository: PostgresIdentityRepository):
    """Mark every promotion gate as passed for an identity."""

    def satisfy(identity_id) -> None:
        repository.update_fields(
            identity_id,
            otp_verified=True,
            face_enrollment_status=FaceEnrollmentStatus.COMPLETED,
        )
        repository.update_verification(identity_id, status=IdVerificationStatus.APPROVED)

    return satisfy