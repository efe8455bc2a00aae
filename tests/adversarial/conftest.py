"""
Shared fixtures for adversarial tests.

Provides common test infrastructure for the concurrency tests.
Requires PostgreSQL; skipped when the database cannot be reached.
"""

from collections.abc import Callable, Generator
from datetime import datetime, timezone
from uuid import UUID, uuid4

import bcrypt
import pytest
from psycopg_pool import ConnectionPool, PoolTimeout

from idverify.adapters.repository.postgres import PostgresIdentityRepository, run_migrations
from idverify.config.settings import get_settings
from idverify.domain.models import (
    FaceEnrollmentStatus,
    Identity,
    IdVerification,
    IdVerificationStatus,
)


@pytest.fixture(scope="module")
def pool() -> Generator[ConnectionPool, None, None]:
    """Create connection pool for adversarial tests."""
    settings = get_settings()
    pool = ConnectionPool(
        conninfo=settings.database_url,
        min_size=1,
        max_size=20,
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


@pytest.fixture
def repository(pool: ConnectionPool) -> PostgresIdentityRepository:
    """Create repository instance for each test."""
    return PostgresIdentityRepository(pool)


@pytest.fixture(autouse=True)
def clean_database(pool: ConnectionPool) -> Generator[None, None, None]:
    """Clean identities before each test (verifications and OTPs cascade)."""
    with pool.connection() as conn:
        conn.execute("DELETE FROM identities")
        conn.commit()
    yield


@pytest.fixture
def ready_draft(repository: PostgresIdentityRepository) -> Callable[[str], UUID]:
    """Factory for a draft identity with every promotion gate satisfied."""
    password_hash = bcrypt.hashpw(b"secret123", bcrypt.gensalt(4)).decode()

    def create(login: str) -> UUID:
        identity = Identity(
            id=uuid4(),
            login=login,
            email=f"{login}@example.com",
            full_name=login,
            password_hash=password_hash,
            registration_started=datetime.now(timezone.utc),
            id_verification_id=uuid4(),
        )
        repository.create_draft(
            identity,
            IdVerification(
                id=identity.id_verification_id,
                identity_id=identity.id,
                image_ref="sha256:attack/id.jpg",
            ),
        )
        repository.update_fields(
            identity.id,
            otp_verified=True,
            face_enrollment_status=FaceEnrollmentStatus.COMPLETED,
        )
        repository.update_verification(identity.id, status=IdVerificationStatus.APPROVED)
        return identity.id

    return create
