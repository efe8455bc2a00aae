"""
PostgreSQL repository adapters - Implement IdentityRepository and OtpRepository.

This module provides the PostgreSQL implementation of the domain's
persistence ports using psycopg3 with raw SQL.

Consistency Design - Draft Identities and Promotion:
----------------------------------------------------
1. **Partial unique index**: identities_login_live_key enforces login
   uniqueness only over rows WHERE NOT is_draft. Drafts can collide with
   each other and with a verified identity; promotion cannot.

2. **Promotion**: promote() locks the identity row (SELECT ... FOR UPDATE),
   re-checks the gates and the login, and flips is_draft/is_verified/
   registration_completed in one transaction. Two concurrent promotions of
   the same row serialize on the lock; the second sees is_verified and
   reports ALREADY_VERIFIED. Two drafts with the same login serialize on
   the unique index; the loser gets a UniqueViolation -> LOGIN_TAKEN.

3. **Targeted updates**: every mutation names the columns it writes, so a
   slow background write never clobbers a concurrent one. is_draft,
   is_verified and registration_completed are only ever written by
   promote(). Targeted updates match draft rows only, so a verified
   identity stays in its terminal state.
"""

import logging
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from idverify.domain.models import (
    FaceEnrollmentStatus,
    Identity,
    IdVerification,
    IdVerificationStatus,
    OtpRecord,
    RegistrationStep,
    Role,
)
from idverify.domain.ports import PromotionResult

logger = logging.getLogger(__name__)

# Columns update_fields() may write. Promotion columns are written only by promote().
IDENTITY_UPDATABLE = frozenset(
    {
        "email",
        "full_name",
        "otp_verified",
        "registration_step",
        "face_enrollment_status",
        "face_enrollment_error",
        "face_enrollment_ref",
    }
)

VERIFICATION_UPDATABLE = frozenset(
    {"status", "full_name", "birth_date", "document_number", "review_note"}
)


def _db_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _assignments(fields: dict[str, Any], allowed: frozenset[str]) -> sql.Composed:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Columns not updatable: {', '.join(sorted(unknown))}")
    return sql.SQL(", ").join(
        sql.SQL("{} = {}").format(sql.Identifier(name), sql.Placeholder()) for name in fields
    )


def _identity_from_row(row: dict[str, Any]) -> Identity:
    return Identity(
        id=row["id"],
        login=row["login"],
        email=row["email"],
        full_name=row["full_name"],
        password_hash=row["password_hash"],
        role=Role(row["role"]),
        is_draft=row["is_draft"],
        is_verified=row["is_verified"],
        otp_verified=row["otp_verified"],
        registration_step=RegistrationStep(row["registration_step"]),
        face_enrollment_status=FaceEnrollmentStatus(row["face_enrollment_status"]),
        face_enrollment_error=row["face_enrollment_error"],
        face_enrollment_ref=row["face_enrollment_ref"],
        registration_started=row["registration_started"],
        registration_completed=row["registration_completed"],
        id_verification_id=row["id_verification_id"],
    )


class PostgresIdentityRepository:
    """
    Implements IdentityRepository protocol via psycopg3.

    Uses structural subtyping - no explicit inheritance from Protocol.
    All SQL uses parameterized queries; dynamic column names go through
    psycopg.sql.Identifier.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        """
        Initialize repository with connection pool.

        Args:
            pool: psycopg3 ConnectionPool for database connections
        """
        self._pool = pool

    def create_draft(self, identity: Identity, verification: IdVerification) -> None:
        """Insert the draft identity and its ID-verification record in one transaction."""
        identity_sql = """
            INSERT INTO identities (
                id, login, email, full_name, password_hash, role,
                is_draft, is_verified, otp_verified, registration_step,
                face_enrollment_status, registration_started, id_verification_id
            )
            VALUES (%s, %s, %s, %s, %s, %s, TRUE, FALSE, FALSE, %s, %s, %s, %s)
        """
        verification_sql = """
            INSERT INTO id_verifications (id, identity_id, image_ref, status)
            VALUES (%s, %s, %s, %s)
        """

        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(
                identity_sql,
                (
                    identity.id,
                    identity.login,
                    identity.email,
                    identity.full_name,
                    identity.password_hash,
                    identity.role.value,
                    identity.registration_step.value,
                    identity.face_enrollment_status.value,
                    identity.registration_started,
                    verification.id,
                ),
            )
            cursor.execute(
                verification_sql,
                (
                    verification.id,
                    verification.identity_id,
                    verification.image_ref,
                    verification.status.value,
                ),
            )
            conn.commit()

    def get(self, identity_id: UUID) -> Identity | None:
        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cursor:
            cursor.execute("SELECT * FROM identities WHERE id = %s", (identity_id,))
            row = cursor.fetchone()
        return _identity_from_row(row) if row is not None else None

    def get_verification(self, identity_id: UUID) -> IdVerification | None:
        select_sql = """
            SELECT id, identity_id, image_ref, status, full_name, birth_date,
                   document_number, review_note
            FROM id_verifications
            WHERE identity_id = %s
        """

        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cursor:
            cursor.execute(select_sql, (identity_id,))
            row = cursor.fetchone()

        if row is None:
            return None
        return IdVerification(
            id=row["id"],
            identity_id=row["identity_id"],
            image_ref=row["image_ref"],
            status=IdVerificationStatus(row["status"]),
            full_name=row["full_name"],
            birth_date=row["birth_date"],
            document_number=row["document_number"],
            review_note=row["review_note"],
        )

    def find_live_by_login(self, login: str) -> Identity | None:
        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cursor:
            cursor.execute(
                "SELECT * FROM identities WHERE login = %s AND NOT is_draft", (login,)
            )
            row = cursor.fetchone()
        return _identity_from_row(row) if row is not None else None

    def update_fields(self, identity_id: UUID, **fields: Any) -> bool:
        if not fields:
            identity = self.get(identity_id)
            return identity is not None and identity.is_draft

        query = sql.SQL("UPDATE identities SET {} WHERE id = %s AND is_draft").format(
            _assignments(fields, IDENTITY_UPDATABLE)
        )
        params = [_db_value(value) for value in fields.values()] + [identity_id]

        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(query, params)
            conn.commit()
            return cursor.rowcount == 1

    def update_verification(self, identity_id: UUID, **fields: Any) -> bool:
        if not fields:
            return self.get_verification(identity_id) is not None

        query = sql.SQL("UPDATE id_verifications SET {} WHERE identity_id = %s").format(
            _assignments(fields, VERIFICATION_UPDATABLE)
        )
        params = [_db_value(value) for value in fields.values()] + [identity_id]

        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(query, params)
            conn.commit()
            return cursor.rowcount == 1

    def mark_ready_if_gates_satisfied(self, identity_id: UUID) -> bool:
        """
        Advance a draft to step3 when all gates hold.

        Single conditional UPDATE: the row lock taken by UPDATE makes the
        gate re-check see the latest committed values, so whichever flow
        satisfies the last gate performs the transition.
        """
        ready_sql = """
            UPDATE identities AS i
            SET registration_step = %s
            FROM id_verifications AS v
            WHERE i.id = %s
              AND v.identity_id = i.id
              AND i.is_draft
              AND i.otp_verified
              AND i.face_enrollment_status = %s
              AND v.status = %s
        """

        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(
                ready_sql,
                (
                    RegistrationStep.STEP3.value,
                    identity_id,
                    FaceEnrollmentStatus.COMPLETED.value,
                    IdVerificationStatus.APPROVED.value,
                ),
            )
            conn.commit()
            return cursor.rowcount == 1

    def promote(self, identity_id: UUID) -> PromotionResult:
        """
        Promote a draft to a verified identity.

        Uses SELECT FOR UPDATE to lock the identity row during the gate and
        uniqueness checks. The partial unique index is the final arbiter
        between two different drafts sharing a login.
        """
        # Lock the identity row; the verification row is read, not locked
        select_sql = """
            SELECT i.login, i.is_draft, i.is_verified, i.otp_verified,
                   i.face_enrollment_status, v.status AS verification_status
            FROM identities AS i
            LEFT JOIN id_verifications AS v ON v.identity_id = i.id
            WHERE i.id = %s
            FOR UPDATE OF i
        """

        login_taken_sql = """
            SELECT 1 FROM identities
            WHERE login = %s AND NOT is_draft AND id <> %s
        """

        promote_sql = """
            UPDATE identities
            SET is_draft = FALSE,
                is_verified = TRUE,
                registration_step = %s,
                registration_completed = NOW()
            WHERE id = %s AND is_draft AND NOT is_verified
        """

        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cursor:
            cursor.execute(select_sql, (identity_id,))
            row = cursor.fetchone()

            if row is None:
                conn.commit()
                return PromotionResult.NOT_FOUND

            if row["is_verified"]:
                conn.commit()
                return PromotionResult.ALREADY_VERIFIED

            gates_satisfied = (
                row["otp_verified"]
                and row["face_enrollment_status"] == FaceEnrollmentStatus.COMPLETED.value
                and row["verification_status"] == IdVerificationStatus.APPROVED.value
            )
            if not gates_satisfied:
                conn.commit()
                return PromotionResult.GATES_UNSATISFIED

            cursor.execute(login_taken_sql, (row["login"], identity_id))
            if cursor.fetchone() is not None:
                conn.commit()
                return PromotionResult.LOGIN_TAKEN

            try:
                cursor.execute(promote_sql, (RegistrationStep.COMPLETED.value, identity_id))
            except errors.UniqueViolation:
                # Another draft with this login was promoted concurrently
                conn.rollback()
                logger.info(f"Promotion of {identity_id} lost login race for {row['login']}")
                return PromotionResult.LOGIN_TAKEN

            conn.commit()
            return PromotionResult.PROMOTED

    def count_live(self, role: Role | None = None) -> int:
        count_sql = "SELECT COUNT(*) FROM identities WHERE NOT is_draft"
        params: tuple[Any, ...] = ()
        if role is not None:
            count_sql += " AND role = %s"
            params = (role.value,)

        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(count_sql, params)
            return cursor.fetchone()[0]

    def delete_stale_drafts(self, older_than: timedelta) -> int:
        """Delete old drafts; OTP and ID-verification rows cascade."""
        delete_sql = """
            DELETE FROM identities
            WHERE is_draft AND registration_started < NOW() - %s
        """

        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(delete_sql, (older_than,))
            conn.commit()
            return cursor.rowcount


class PostgresOtpRepository:
    """
    Implements OtpRepository protocol via psycopg3.

    Uses structural subtyping - no explicit inheritance from Protocol.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def create(self, record: OtpRecord) -> None:
        insert_sql = """
            INSERT INTO otps (id, identity_id, code, email_sent, delivery_failed, created_at)
            VALUES (%s, %s, %s, %s, %s, COALESCE(%s, NOW()))
        """

        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(
                insert_sql,
                (
                    record.id,
                    record.identity_id,
                    record.code,
                    record.email_sent,
                    record.delivery_failed,
                    record.created_at,
                ),
            )
            conn.commit()

    def consume(self, identity_id: UUID, code: str) -> bool:
        """
        Delete the OTP matching (identity_id, code), then every other OTP
        of the identity in the same transaction.

        A concurrent second consume blocks on the row lock, then finds the
        row gone and deletes nothing, so a code is accepted at most once.
        """
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(
                "DELETE FROM otps WHERE identity_id = %s AND code = %s",
                (identity_id, code),
            )
            matched = cursor.rowcount > 0
            if matched:
                cursor.execute("DELETE FROM otps WHERE identity_id = %s", (identity_id,))
            conn.commit()
            return matched

    def mark_sent(self, otp_id: UUID) -> None:
        with self._pool.connection() as conn:
            conn.execute(
                "UPDATE otps SET email_sent = TRUE, sent_at = NOW() WHERE id = %s",
                (otp_id,),
            )
            conn.commit()

    def mark_delivery_failed(self, otp_id: UUID) -> None:
        with self._pool.connection() as conn:
            conn.execute(
                "UPDATE otps SET email_sent = FALSE, delivery_failed = TRUE WHERE id = %s",
                (otp_id,),
            )
            conn.commit()

    def list_for_identity(self, identity_id: UUID) -> list[OtpRecord]:
        select_sql = """
            SELECT id, identity_id, code, email_sent, sent_at, delivery_failed, created_at
            FROM otps
            WHERE identity_id = %s
            ORDER BY created_at
        """

        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cursor:
            cursor.execute(select_sql, (identity_id,))
            rows = cursor.fetchall()
        return [OtpRecord(**row) for row in rows]


def run_migrations(pool: ConnectionPool) -> None:
    """
    Execute all SQL migration files from the migrations directory.

    Migrations are executed in sorted order (alphabetically by filename).
    Each migration should be idempotent (use IF NOT EXISTS, etc.).

    Args:
        pool: psycopg3 ConnectionPool instance
    """
    # Structure: idverify/adapters/repository/postgres.py -> migrations/
    migrations_dir = Path(__file__).parent.parent.parent.parent / "migrations"

    if not migrations_dir.exists():
        logger.warning(f"Migrations directory not found: {migrations_dir}")
        return

    sql_files = sorted(migrations_dir.glob("*.sql"))

    if not sql_files:
        logger.info("No migration files found")
        return

    logger.info(f"Running {len(sql_files)} migration(s)")

    for sql_file in sql_files:
        logger.info(f"Executing migration: {sql_file.name}")
        try:
            sql_content = sql_file.read_text()

            with pool.connection() as conn:
                conn.execute(sql_content)

            logger.info(f"Migration complete: {sql_file.name}")
        except Exception as e:
            logger.error(f"Migration failed: {sql_file.name} - {e}")
            raise RuntimeError(f"Database migration failed: {sql_file.name}") from e
